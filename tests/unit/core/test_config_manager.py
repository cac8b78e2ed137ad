"""
Tests for ConfigManager.
"""

import json

import pytest
import yaml
from pydantic import ValidationError

from tablebatch.core.config_manager import (
    ConfigManager,
    LogLevel,
    TableServiceConfig,
    deep_merge,
    env_overrides,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep TABLEBATCH_* variables from the outer environment out of the tests."""
    for name in (
        "TABLEBATCH_ENDPOINT",
        "TABLEBATCH_ACCOUNT",
        "TABLEBATCH_TIMEOUT",
        "TABLEBATCH_HOST",
        "TABLEBATCH_PORT",
        "TABLEBATCH_LOG_LEVEL",
        "TABLEBATCH_LOG_FILE",
    ):
        monkeypatch.delenv(name, raising=False)


class TestConfigManager:
    """Test suite for ConfigManager."""

    def test_load_defaults(self):
        """Test loading default configuration."""
        config = ConfigManager().load()

        assert config.version == "0.1.0"
        assert config.service.endpoint == "http://127.0.0.1:7071/table/devstoreaccount1"
        assert config.service.timeout == 30.0
        assert config.emulator.host == "127.0.0.1"
        assert config.emulator.port == 7071
        assert config.logging.level == LogLevel.INFO

    def test_load_from_yaml_file(self, tmp_path):
        """Test loading configuration from YAML file."""
        config_file = tmp_path / "tablebatch.yaml"
        config_file.write_text(yaml.dump({
            "version": "1.0.0",
            "service": {"endpoint": "https://acct.table.core.windows.net/", "timeout": 5},
            "logging": {"level": "DEBUG"},
        }))

        config = ConfigManager().load(config_file=str(config_file))

        assert config.version == "1.0.0"
        # Trailing slash is dropped so paths can be appended
        assert config.service.endpoint == "https://acct.table.core.windows.net"
        assert config.service.timeout == 5.0
        assert config.logging.level == LogLevel.DEBUG

    def test_load_from_json_file(self, tmp_path):
        """Test loading configuration from JSON file."""
        config_file = tmp_path / "tablebatch.json"
        config_file.write_text(json.dumps({"emulator": {"host": "0.0.0.0", "port": 9000}}))

        config = ConfigManager().load(config_file=str(config_file))

        assert config.emulator.host == "0.0.0.0"
        assert config.emulator.port == 9000

    def test_load_from_env_variables(self, monkeypatch):
        """Test loading configuration from environment variables."""
        monkeypatch.setenv("TABLEBATCH_ENDPOINT", "http://localhost:10002/devstoreaccount1")
        monkeypatch.setenv("TABLEBATCH_ACCOUNT", "myaccount")
        monkeypatch.setenv("TABLEBATCH_TIMEOUT", "12.5")
        monkeypatch.setenv("TABLEBATCH_PORT", "5000")
        monkeypatch.setenv("TABLEBATCH_LOG_LEVEL", "warning")

        config = ConfigManager().load()

        assert config.service.endpoint == "http://localhost:10002/devstoreaccount1"
        assert config.service.account_name == "myaccount"
        assert config.emulator.account_name == "myaccount"
        assert config.service.timeout == 12.5
        assert config.emulator.port == 5000
        assert config.logging.level == LogLevel.WARNING

    def test_configuration_precedence(self, tmp_path, monkeypatch):
        """CLI > ENV > FILE > DEFAULTS."""
        config_file = tmp_path / "tablebatch.yaml"
        config_file.write_text(yaml.dump({
            "emulator": {"host": "file-host", "port": 1111},
            "service": {"timeout": 1.0},
        }))
        monkeypatch.setenv("TABLEBATCH_HOST", "env-host")
        monkeypatch.setenv("TABLEBATCH_PORT", "3333")

        config = ConfigManager().load(
            config_file=str(config_file),
            cli_overrides={"emulator": {"port": 2222}},
        )

        assert config.emulator.port == 2222
        assert config.emulator.host == "env-host"
        assert config.service.timeout == 1.0

    def test_invalid_version_format(self):
        with pytest.raises(ValidationError) as exc_info:
            ConfigManager().load(cli_overrides={"version": "1.0"})

        assert "Version must be in format x.y.z" in str(exc_info.value)

    def test_invalid_endpoint(self):
        with pytest.raises(ValidationError) as exc_info:
            ConfigManager().load(cli_overrides={"service": {"endpoint": "ftp://example"}})

        assert "http:// or https://" in str(exc_info.value)

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            TableServiceConfig(timeout=0)

    def test_file_not_found(self):
        with pytest.raises(FileNotFoundError):
            ConfigManager().load(config_file="/nonexistent/config.yaml")

    def test_unsupported_file_format(self, tmp_path):
        config_file = tmp_path / "tablebatch.txt"
        config_file.write_text("invalid config")

        with pytest.raises(ValueError) as exc_info:
            ConfigManager().load(config_file=str(config_file))

        assert "Unsupported config file format" in str(exc_info.value)

    def test_get_config_before_load(self):
        with pytest.raises(RuntimeError) as exc_info:
            ConfigManager().get_config()

        assert "Configuration not loaded" in str(exc_info.value)

    def test_reload_reads_file_again(self, tmp_path):
        config_file = tmp_path / "tablebatch.yaml"
        config_file.write_text(yaml.dump({"service": {"timeout": 3}}))

        manager = ConfigManager()
        manager.load(config_file=str(config_file))
        config_file.write_text(yaml.dump({"service": {"timeout": 7}}))

        assert manager.reload().service.timeout == 7.0
        assert manager.get_config().service.timeout == 7.0

    def test_reload_keeps_cli_overrides(self, monkeypatch):
        manager = ConfigManager()
        manager.load(cli_overrides={"emulator": {"port": 2222}})
        monkeypatch.setenv("TABLEBATCH_HOST", "env-host")

        config = manager.reload()

        assert config.emulator.port == 2222
        assert config.emulator.host == "env-host"

    def test_invalid_env_value_names_variable(self, monkeypatch):
        monkeypatch.setenv("TABLEBATCH_PORT", "not-a-port")

        with pytest.raises(ValueError) as exc_info:
            ConfigManager().load()

        assert "TABLEBATCH_PORT" in str(exc_info.value)


class TestConfigHelpers:
    """Test suite for the merge and environment helpers."""

    def test_deep_merge_merges_sections(self):
        base = {"service": {"endpoint": "http://a", "timeout": 1.0}, "version": "0.1.0"}
        override = {"service": {"timeout": 2.0}, "emulator": {"port": 1}}

        merged = deep_merge(base, override)

        assert merged == {
            "service": {"endpoint": "http://a", "timeout": 2.0},
            "version": "0.1.0",
            "emulator": {"port": 1},
        }
        assert base["service"]["timeout"] == 1.0

    def test_env_overrides_from_mapping(self):
        found = env_overrides({
            "TABLEBATCH_ACCOUNT": "acct",
            "TABLEBATCH_LOG_LEVEL": "debug",
            "TABLEBATCH_HOST": "",
            "UNRELATED": "x",
        })

        assert found == {
            "service": {"account_name": "acct"},
            "emulator": {"account_name": "acct"},
            "logging": {"level": "DEBUG"},
        }

    def test_empty_yaml_file_uses_defaults(self, tmp_path):
        config_file = tmp_path / "empty.yml"
        config_file.write_text("")

        config = ConfigManager().load(config_file=str(config_file))

        assert config.emulator.port == 7071
