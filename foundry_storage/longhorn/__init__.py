"""Raw disk provisioning for Longhorn storage nodes."""
