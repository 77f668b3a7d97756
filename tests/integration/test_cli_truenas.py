"""
Integration tests for CLI TrueNAS commands.
"""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from foundry_storage.cli.cli import app
from foundry_storage.cli.lib.config import FoundryStorageConfig, OpenBAOSettings, TrueNASSettings
from foundry_storage.truenas.client import TrueNASClient
from foundry_storage.truenas.csi import CSIConfig
from foundry_storage.truenas.exceptions import TrueNASConnectionError
from foundry_storage.truenas.integration import InstallResult, SecretStoreError
from foundry_storage.truenas.reconciler import SetupResult

CONFIGURED = FoundryStorageConfig(
    truenas=TrueNASSettings(api_url="https://192.168.1.100", api_key="1-abcdef", pool_name="tank")
)

CSI = CSIConfig(
    http_url="https://192.168.1.100",
    api_key="1-abcdef",
    pool_name="tank",
    dataset_parent="tank/k8s",
    nfs_share_host="192.168.1.100",
    iscsi_portal="192.168.1.100:3260",
    iscsi_target_portal_group=1,
    iscsi_initiator_group=1,
)


def _fake_client_factory(appliance):
    return lambda url, key, **kwargs: TrueNASClient(url, key, transport=appliance)


def _mock_client():
    client = MagicMock()
    client.__enter__.return_value = client
    client.list_pools.return_value = [MagicMock(), MagicMock()]
    return client


class TestTrueNASConfigure:
    """Tests for truenas configure command."""

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.save_config")
    @patch("foundry_storage.cli.commands.truenas.open_secret_store")
    @patch("foundry_storage.cli.commands.truenas.TrueNASClient")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_configure_success(self, mock_load, mock_client_cls, mock_open_store, mock_save):
        mock_load.return_value = FoundryStorageConfig()
        client = _mock_client()
        mock_client_cls.return_value = client
        mock_open_store.return_value = None
        mock_save.return_value = Path("/tmp/storage.conf")

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "configure", "--api-url", "https://nas.example.com/", "--api-key", "1-abc"])

        assert result.exit_code == 0
        assert "Connection successful, found 2 pool(s)" in result.output
        assert "Configuration saved to /tmp/storage.conf" in result.output
        client.ping.assert_called_once()
        saved, = mock_save.call_args[0]
        assert saved.truenas.api_url == "https://nas.example.com"
        assert saved.truenas.api_key == "1-abc"
        assert mock_save.call_args.kwargs["use_secret_ref"] is False

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.save_config")
    @patch("foundry_storage.cli.commands.truenas.store_api_key")
    @patch("foundry_storage.cli.commands.truenas.open_secret_store")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_configure_stores_key_in_openbao(self, mock_load, mock_open_store, mock_store_key, mock_save):
        mock_load.return_value = FoundryStorageConfig(openbao=OpenBAOSettings(addr="https://bao", token="t", mount="tenant-a"))
        store = MagicMock()
        mock_open_store.return_value = store
        mock_save.return_value = Path("/tmp/storage.conf")

        runner = CliRunner()
        result = runner.invoke(
            app, ["truenas", "configure", "--api-url", "https://nas", "--api-key", "1-abc", "--skip-test"]
        )

        assert result.exit_code == 0
        assert "API key stored in OpenBAO" in result.output
        mock_store_key.assert_called_once_with(store, "1-abc", "tenant-a")
        store.close.assert_called_once()
        assert mock_save.call_args.kwargs["use_secret_ref"] is True

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.save_config")
    @patch("foundry_storage.cli.commands.truenas.store_api_key")
    @patch("foundry_storage.cli.commands.truenas.open_secret_store")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_configure_store_failure_keeps_key_in_file(self, mock_load, mock_open_store, mock_store_key, mock_save):
        mock_load.return_value = FoundryStorageConfig()
        mock_open_store.return_value = MagicMock()
        mock_store_key.side_effect = SecretStoreError("HTTP 403")
        mock_save.return_value = Path("/tmp/storage.conf")

        runner = CliRunner()
        result = runner.invoke(
            app, ["truenas", "configure", "--api-url", "https://nas", "--api-key", "1-abc", "--skip-test"]
        )

        assert result.exit_code == 0
        assert "Warning: Failed to store API key in OpenBAO: HTTP 403" in result.output
        assert mock_save.call_args.kwargs["use_secret_ref"] is False

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.save_config")
    @patch("foundry_storage.cli.commands.truenas.open_secret_store")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_configure_prompts(self, mock_load, mock_open_store, mock_save):
        mock_load.return_value = FoundryStorageConfig()
        mock_open_store.return_value = None
        mock_save.return_value = Path("/tmp/storage.conf")

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "configure", "--skip-test"], input="https://nas\n1-typed\n")

        assert result.exit_code == 0
        assert "System -> API Keys -> Add" in result.output
        saved, = mock_save.call_args[0]
        assert saved.truenas.api_key == "1-typed"

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.save_config")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_configure_invalid_url(self, mock_load, mock_save):
        mock_load.return_value = FoundryStorageConfig()

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "configure", "--api-url", "nas.example.com", "--api-key", "k"])

        assert result.exit_code == 1
        assert "Error: API URL must start with http:// or https://" in result.output
        mock_save.assert_not_called()

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.save_config")
    @patch("foundry_storage.cli.commands.truenas.TrueNASClient")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_configure_connection_failure(self, mock_load, mock_client_cls, mock_save):
        mock_load.return_value = FoundryStorageConfig()
        client = _mock_client()
        client.ping.side_effect = TrueNASConnectionError("Failed to connect to TrueNAS API: refused")
        mock_client_cls.return_value = client

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "configure", "--api-url", "https://nas", "--api-key", "k"])

        assert result.exit_code == 1
        assert "Error: Failed to connect to TrueNAS API: refused" in result.output
        mock_save.assert_not_called()


class TestTrueNASTest:
    """Tests for truenas test command."""

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_not_configured(self, mock_load):
        mock_load.return_value = FoundryStorageConfig()

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "test"])

        assert result.exit_code == 1
        assert "TrueNAS not configured. Run 'foundry-storage truenas configure' first" in result.output

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.TrueNASClient")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_full_test(self, mock_load, mock_client_cls, appliance):
        mock_load.return_value = CONFIGURED
        mock_client_cls.side_effect = _fake_client_factory(appliance)
        appliance.add_pool("tank")

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "test", "--full-test"])

        assert result.exit_code == 0
        assert "Found 1 pool(s)" in result.output
        assert "tank: healthy, 2048.00 GB free" in result.output
        assert "Created and verified test dataset tank/foundry-test-" in result.output
        assert "Test dataset deleted" in result.output
        assert "All tests passed" in result.output
        assert appliance.datasets == {}

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.TrueNASClient")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_without_full_test(self, mock_load, mock_client_cls, appliance):
        mock_load.return_value = CONFIGURED
        mock_client_cls.side_effect = _fake_client_factory(appliance)
        appliance.add_pool("tank")

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "test"])

        assert result.exit_code == 0
        assert "Skipped dataset creation test (use --full-test)" in result.output
        assert appliance.requests("POST") == []

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.TrueNASClient")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_no_pools(self, mock_load, mock_client_cls, appliance):
        mock_load.return_value = CONFIGURED
        mock_client_cls.side_effect = _fake_client_factory(appliance)

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "test"])

        assert result.exit_code == 1
        assert "Error: No storage pools available" in result.output

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_key_only_in_unconfigured_openbao(self, mock_load):
        mock_load.return_value = FoundryStorageConfig(
            truenas=TrueNASSettings(api_url="https://nas", api_key_ref="${secret:foundry-core/truenas:api_key}")
        )

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "test"])

        assert result.exit_code == 1
        assert "OpenBAO is not configured" in result.output

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.TrueNASClient")
    @patch("foundry_storage.cli.commands.truenas.open_secret_store")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_secret_store_closed(self, mock_load, mock_open_store, mock_client_cls, appliance):
        mock_load.return_value = CONFIGURED
        store = MagicMock()
        mock_open_store.return_value = store
        mock_client_cls.side_effect = _fake_client_factory(appliance)
        appliance.add_pool("tank")

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "test"])

        assert result.exit_code == 0
        store.close.assert_called_once()


class TestTrueNASSetup:
    """Tests for truenas setup command."""

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.prepare_install")
    @patch("foundry_storage.cli.commands.truenas.open_secret_store")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_setup_success(self, mock_load, mock_open_store, mock_prepare):
        mock_load.return_value = CONFIGURED
        mock_open_store.return_value = None
        setup_result = SetupResult()
        setup_result.record("pool", ok=True, created=True, message="Created pool 'tank'")
        setup_result.warn("nfs", "Failed to enable NFS: boom")
        mock_prepare.return_value = InstallResult(csi_config=CSI, setup_result=setup_result, warnings=setup_result.warnings)

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "setup", "--dataset", "csi", "--no-nfs"])

        assert result.exit_code == 0
        assert "[ok] pool: Created pool 'tank'" in result.output
        assert "[!!] nfs: Failed to enable NFS: boom" in result.output
        assert "datasetParent: tank/k8s" in result.output
        assert "iscsiPortal: 192.168.1.100:3260" in result.output
        assert "TrueNAS setup complete" in result.output

        install_cfg = mock_prepare.call_args[0][0]
        assert install_cfg.api_url == "https://192.168.1.100"
        assert install_cfg.api_key == "1-abcdef"
        assert install_cfg.interactive is True
        assert install_cfg.setup_config.dataset_name == "csi"
        assert install_cfg.setup_config.enable_nfs is False
        assert install_cfg.setup_config.enable_iscsi is True

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.prepare_install")
    @patch("foundry_storage.cli.commands.truenas.open_secret_store")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_setup_closes_store_on_failure(self, mock_load, mock_open_store, mock_prepare):
        mock_load.return_value = CONFIGURED
        store = MagicMock()
        mock_open_store.return_value = store
        mock_prepare.side_effect = TrueNASConnectionError("Failed to connect to TrueNAS: refused")

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "setup", "--non-interactive"])

        assert result.exit_code == 1
        assert "Failed to connect to TrueNAS: refused" in result.output
        assert mock_prepare.call_args.kwargs["secret_store"] is store
        store.close.assert_called_once()

    @pytest.mark.integration
    @patch("foundry_storage.truenas.integration.TrueNASClient")
    @patch("foundry_storage.cli.commands.truenas.open_secret_store")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_setup_against_appliance(self, mock_load, mock_open_store, mock_client_cls, appliance):
        mock_load.return_value = CONFIGURED
        mock_open_store.return_value = None
        mock_client_cls.side_effect = _fake_client_factory(appliance)
        appliance.add_disk("sda")
        appliance.add_disk("sdb")

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "setup", "--non-interactive"])

        assert result.exit_code == 0
        assert "[ok] pool: Created pool 'tank'" in result.output
        assert "iscsiPortal: 192.168.1.100:3260" in result.output
        assert "targetPortalGroup: 1" in result.output
        assert appliance.pools[0]["topology"]["data"][0]["type"] == "MIRROR"

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_setup_non_interactive_missing_url(self, mock_load):
        mock_load.return_value = FoundryStorageConfig()

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "setup", "--non-interactive"])

        assert result.exit_code == 1
        assert "TrueNAS API URL is required (set truenas.api_url in config)" in result.output

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.prepare_install")
    @patch("foundry_storage.cli.commands.truenas.open_secret_store")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_setup_falls_back_to_prompt(self, mock_load, mock_open_store, mock_prepare):
        mock_load.return_value = FoundryStorageConfig(truenas=TrueNASSettings(api_url="https://nas"))
        store = MagicMock()
        store.read_secret.return_value = None
        mock_open_store.return_value = store
        mock_prepare.return_value = InstallResult(csi_config=CSI, api_key_stored=True)

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "setup", "--skip-setup"])

        assert result.exit_code == 0
        assert "Warning: TrueNAS API key not found in OpenBAO" in result.output
        assert "TrueNAS requirements validated" in result.output
        install_cfg = mock_prepare.call_args[0][0]
        assert install_cfg.api_key == ""
        assert install_cfg.skip_setup is True
        assert mock_prepare.call_args.kwargs["secret_store"] is store

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_setup_invalid_pool_name(self, mock_load):
        mock_load.return_value = CONFIGURED

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "setup", "--pool", "bad/pool"])

        assert result.exit_code == 1
        assert "Error: Name must start with alphanumeric" in result.output


class TestTrueNASValidate:
    """Tests for truenas validate command."""

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.TrueNASClient")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_validate_not_ready(self, mock_load, mock_client_cls, appliance):
        mock_load.return_value = CONFIGURED
        mock_client_cls.side_effect = _fake_client_factory(appliance)

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "validate"])

        assert result.exit_code == 1
        assert "Error: No storage pools found - run setup first" in result.output

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.TrueNASClient")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_validate_ready(self, mock_load, mock_client_cls, appliance):
        mock_load.return_value = CONFIGURED
        mock_client_cls.side_effect = _fake_client_factory(appliance)
        appliance.add_pool("tank")
        appliance.add_dataset("tank/k8s")
        for name in ("nfs", "iscsitarget"):
            appliance.service(name)["state"] = "RUNNING"
        appliance.portals.append({"id": 1, "tag": 1, "listen": [{"ip": "0.0.0.0", "port": 3260}]})
        appliance.initiators.append({"id": 1, "tag": 1, "initiators": []})

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "validate"])

        assert result.exit_code == 0
        assert "TrueNAS requirements validated" in result.output
        assert appliance.requests("POST") == []

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.TrueNASClient")
    @patch("foundry_storage.cli.commands.truenas.open_secret_store")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_validate_closes_store(self, mock_load, mock_open_store, mock_client_cls, appliance):
        mock_load.return_value = CONFIGURED
        store = MagicMock()
        mock_open_store.return_value = store
        mock_client_cls.side_effect = _fake_client_factory(appliance)

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "validate"])

        assert result.exit_code == 1
        store.close.assert_called_once()


class TestTrueNASList:
    """Tests for truenas list command."""

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_not_configured(self, mock_load):
        mock_load.return_value = FoundryStorageConfig()

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "list"])

        assert result.exit_code == 0
        assert "No storage backends configured" in result.output
        assert "foundry-storage truenas configure" in result.output

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.TrueNASClient")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_summary(self, mock_load, mock_client_cls, appliance):
        mock_load.return_value = CONFIGURED
        mock_client_cls.side_effect = _fake_client_factory(appliance)
        appliance.add_pool("tank")
        appliance.add_pool("backup").update(status="DEGRADED", healthy=False, free=512 * 1024 ** 3)

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "list"])

        assert result.exit_code == 0
        assert "API URL: https://192.168.1.100" in result.output
        assert "Status: connected" in result.output
        assert "Pools: 2" in result.output
        assert "- tank: healthy, 2048.00 GB free" in result.output
        assert "- backup: UNHEALTHY, 512.00 GB free" in result.output
        assert "Size:" not in result.output

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.TrueNASClient")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_detailed(self, mock_load, mock_client_cls, appliance):
        mock_load.return_value = CONFIGURED
        mock_client_cls.side_effect = _fake_client_factory(appliance)
        appliance.add_pool("tank").update(size=4 * 1024 ** 4, allocated=1024 ** 4, free=3 * 1024 ** 4)

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "list", "--detailed"])

        assert result.exit_code == 0
        assert "tank:" in result.output
        assert "Status: ONLINE (healthy)" in result.output
        assert "Size: 4096.00 GB" in result.output
        assert "Used: 1024.00 GB (25.0%)" in result.output
        assert "Free: 3072.00 GB" in result.output

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.TrueNASClient")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_unreachable_is_not_failure(self, mock_load, mock_client_cls, appliance):
        mock_load.return_value = CONFIGURED
        mock_client_cls.side_effect = _fake_client_factory(appliance)
        appliance.failures[("GET", "/system/info")] = (503, b"Service Unavailable")

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "list"])

        assert result.exit_code == 0
        assert "Status: unreachable" in result.output
        assert "Pools:" not in result.output

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_key_error_reported(self, mock_load):
        mock_load.return_value = FoundryStorageConfig(
            truenas=TrueNASSettings(api_url="https://nas", api_key_ref="${secret:foundry-core/truenas:api_key}")
        )

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "list"])

        assert result.exit_code == 0
        assert "Status: error: TrueNAS API key is kept in OpenBAO but OpenBAO is not configured" in result.output

    @pytest.mark.integration
    @patch("foundry_storage.cli.commands.truenas.TrueNASClient")
    @patch("foundry_storage.cli.commands.truenas.open_secret_store")
    @patch("foundry_storage.cli.commands.truenas.load_config")
    def test_secret_store_closed(self, mock_load, mock_open_store, mock_client_cls, appliance):
        mock_load.return_value = CONFIGURED
        store = MagicMock()
        mock_open_store.return_value = store
        mock_client_cls.side_effect = _fake_client_factory(appliance)

        runner = CliRunner()
        result = runner.invoke(app, ["truenas", "list"])

        assert result.exit_code == 0
        store.close.assert_called_once()
