"""Tests for config_manager module."""

import pytest

from vmdeploy.config_manager import ConfigError, ConfigManager, VMDeployDefaults


class TestLoadConfig:
    """Test ConfigManager.load_config precedence."""

    def test_missing_file_uses_builtin_defaults(self, isolated_config):
        defaults = ConfigManager.load_config(str(isolated_config / "missing.toml"))

        assert defaults == VMDeployDefaults()
        assert defaults.default_location == "canadacentral"
        assert defaults.default_vm_size == "Standard_D8s_v5"
        assert defaults.default_data_disk_size == 64

    def test_reads_file(self, isolated_config):
        config_file = isolated_config / "config.toml"
        config_file.write_text(
            'default_location = "eastus2"\n'
            'default_vm_size = "Standard_D4s_v5"\n'
            "default_data_disk_size = 256\n"
            'unknown_key = "ignored"\n'
        )

        defaults = ConfigManager.load_config(str(config_file))

        assert defaults.default_location == "eastus2"
        assert defaults.default_vm_size == "Standard_D4s_v5"
        assert defaults.default_data_disk_size == 256
        assert defaults.default_admin_username == "azureuser"

    def test_env_path_used_when_no_custom_path(self, isolated_config, monkeypatch):
        config_file = isolated_config / "env.toml"
        config_file.write_text('default_admin_username = "opsadmin"\n')
        monkeypatch.setenv("VMDEPLOY_CONFIG", str(config_file))

        assert ConfigManager.load_config().default_admin_username == "opsadmin"

    def test_environment_overrides_file(self, isolated_config, monkeypatch):
        config_file = isolated_config / "config.toml"
        config_file.write_text('default_location = "eastus2"\n')
        monkeypatch.setenv("VMDEPLOY_LOCATION", "westeurope")
        monkeypatch.setenv("VMDEPLOY_DATA_DISK_SIZE", "128")

        defaults = ConfigManager.load_config(str(config_file))

        assert defaults.default_location == "westeurope"
        assert defaults.default_data_disk_size == 128

    def test_invalid_toml(self, isolated_config):
        config_file = isolated_config / "config.toml"
        config_file.write_text("default_location = \n")

        with pytest.raises(ConfigError, match="Invalid TOML"):
            ConfigManager.load_config(str(config_file))

    def test_non_integer_disk_size(self, isolated_config):
        config_file = isolated_config / "config.toml"
        config_file.write_text('default_data_disk_size = "big"\n')

        with pytest.raises(ConfigError, match="default_data_disk_size"):
            ConfigManager.load_config(str(config_file))


class TestDefaults:
    def test_round_trip_dict(self):
        defaults = VMDeployDefaults(default_location="eastus")
        assert VMDeployDefaults.from_dict(defaults.to_dict()) == defaults
