"""TrueNAS appliance client and setup reconciliation."""
