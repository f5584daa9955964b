"""Tests for settings loading."""

from pathlib import Path

import pytest

from mcp_relay.config.settings import RelaySettings, load_settings
from mcp_relay.exceptions import ConfigurationError


class TestRelaySettings:
    """Test defaults, environment overrides and YAML loading."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("RELAY_PROTOCOL_ATTEMPT_BUDGET", raising=False)
        settings = RelaySettings()

        assert settings.protocol.attempt_budget == 20
        assert settings.protocol.line_wait == 0.3
        assert settings.protocol.initialize_timeout == 15.0
        assert settings.protocol.list_timeout == 10.0
        assert settings.protocol.call_timeout == 30.0
        assert settings.protocol.protocol_version == "2024-11-05"
        assert settings.secrets.policy == "fail_open"
        assert settings.process.stop_timeout == 5.0

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("RELAY_PROTOCOL_ATTEMPT_BUDGET", "7")
        monkeypatch.setenv("RELAY_SECRETS_POLICY", "fail_closed")

        settings = RelaySettings()

        assert settings.protocol.attempt_budget == 7
        assert settings.secrets.policy == "fail_closed"

    def test_database_path_relative_to_data_dir(self, tmp_path):
        settings = RelaySettings(data_dir=str(tmp_path))
        assert settings.get_database_path() == tmp_path / "relay.db"

    def test_absolute_database_path(self, tmp_path):
        settings = RelaySettings(data_dir="/elsewhere", storage={"path": str(tmp_path / "x.db")})
        assert settings.get_database_path() == tmp_path / "x.db"

    def test_pid_file_and_refresh_interval(self, tmp_path):
        settings = RelaySettings(data_dir=str(tmp_path))

        assert settings.get_pid_file_path() == tmp_path / "relay.pid"
        assert settings.process.refresh_interval == 5.0

    def test_log_file_path(self):
        assert RelaySettings().get_log_file_path() is None
        settings = RelaySettings(logging={"file_path": "/tmp/relay.log"})
        assert settings.get_log_file_path() == Path("/tmp/relay.log")


class TestLoadSettings:
    def test_no_file_gives_defaults(self):
        assert isinstance(load_settings(None), RelaySettings)

    def test_yaml_sections_override(self, tmp_path):
        config = tmp_path / "relay.yaml"
        config.write_text(
            "protocol:\n"
            "  call_timeout: 60\n"
            "secrets:\n"
            "  backend: memory\n"
            f"data_dir: {tmp_path}\n"
        )

        settings = load_settings(config)

        assert settings.protocol.call_timeout == 60
        assert settings.secrets.backend == "memory"
        assert settings.data_dir == str(tmp_path)

    def test_invalid_yaml(self, tmp_path):
        config = tmp_path / "relay.yaml"
        config.write_text("protocol: [unclosed\n")

        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(config)
        assert exc_info.value.suggestion

    def test_non_mapping_top_level(self, tmp_path):
        config = tmp_path / "relay.yaml"
        config.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError):
            load_settings(config)

    def test_validation_error(self, tmp_path):
        config = tmp_path / "relay.yaml"
        config.write_text("secrets:\n  policy: sometimes\n")

        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(config)
        assert "errors" in exc_info.value.details

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_settings(tmp_path / "absent.yaml")
