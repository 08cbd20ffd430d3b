"""
Tests for settings parsing.
"""
import pytest
from pydantic import ValidationError

from portsync.core.config import Settings


class TestBaselinePorts:
    def test_comma_separated(self, monkeypatch):
        monkeypatch.setenv("BASELINE_PORTS", "22/tcp, 8080/tcp,53/udp")
        assert Settings(_env_file=None).BASELINE_PORTS == ["22/tcp", "8080/tcp", "53/udp"]

    def test_json_list(self, monkeypatch):
        monkeypatch.setenv("BASELINE_PORTS", '["443/tcp"]')
        assert Settings(_env_file=None).BASELINE_PORTS == ["443/tcp"]

    def test_default(self, monkeypatch):
        monkeypatch.delenv("BASELINE_PORTS", raising=False)
        assert Settings(_env_file=None).BASELINE_PORTS == ["22/tcp", "80/tcp", "443/tcp"]


class TestOciAuth:
    """--auth selection for the OCI CLI."""

    def test_explicit(self, tmp_path):
        config = Settings(_env_file=None, OCI_AUTH="security_token", OCI_CONFIG_FILE=str(tmp_path / "config"))
        assert config.oci_auth_args() == ["--auth", "security_token"]

    def test_config_file_present(self, tmp_path):
        path = tmp_path / "config"
        path.write_text("[DEFAULT]\n")
        assert Settings(_env_file=None, OCI_AUTH=None, OCI_CONFIG_FILE=str(path)).oci_auth_args() == []

    def test_instance_principal_fallback(self, tmp_path):
        config = Settings(_env_file=None, OCI_AUTH=None, OCI_CONFIG_FILE=str(tmp_path / "missing"))
        assert config.oci_auth_args() == ["--auth", "instance_principal"]


class TestLimits:
    @pytest.mark.parametrize("interval", [0, 60])
    def test_interval_bounds(self, interval):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, SYNC_INTERVAL_MINUTES=interval)

    def test_retry_bound(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, RETRY_COUNT=5)


class TestFields:
    def test_only_sync_settings(self):
        assert set(Settings.model_fields) == {
            "SECURITY_LIST_ID", "BASELINE_PORTS", "CHAIN_NAME", "PARENT_CHAIN", "IPTABLES_BIN",
            "PERSIST_COMMAND", "OCI_BIN", "OCI_AUTH", "OCI_CONFIG_FILE", "DOCKER_ENABLED",
            "GATEWAY_ENDPOINT", "GATEWAY_MANAGEMENT_URL_FILE", "GATEWAY_URL_FILE", "GATEWAY_ROUTES_PATH",
            "DISCOVER_LISTENING_SOCKETS", "COMMAND_TIMEOUT", "HTTP_TIMEOUT", "RETRY_COUNT",
            "SYNC_INTERVAL_MINUTES", "SERVICE_NAME", "SYSTEMD_DIR", "LOCK_FILE", "LAST_RUN_FILE",
            "LOG_LEVEL", "LOG_DIR",
        }
