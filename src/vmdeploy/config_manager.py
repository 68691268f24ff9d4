"""User defaults configuration.

Reads optional per-user defaults from ~/.vmdeploy/config.toml so frequently
repeated flags (region, VM size, admin username, data disk size) need not
be typed on every run. Precedence is: CLI flag > environment variable >
config file > built-in default.

Example config.toml:

    default_location = "canadacentral"
    default_vm_size = "Standard_D4s_v5"
    default_admin_username = "azureuser"
    default_data_disk_size = 128
"""

import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

try:
    import tomli  # type: ignore[import]
except ImportError:
    # Python 3.11+ ships the same parser as tomllib
    try:
        import tomllib as tomli  # type: ignore[import]
    except ImportError as e:
        raise ImportError("toml library not available. Install with: pip install tomli") from e

from vmdeploy.exceptions import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_LOCATION = "canadacentral"
DEFAULT_VM_SIZE = "Standard_D8s_v5"
DEFAULT_ADMIN_USERNAME = "azureuser"
DEFAULT_DATA_DISK_SIZE = 64


class ConfigError(ValidationError):
    """Raised when the defaults file cannot be parsed."""

    pass


@dataclass(frozen=True)
class VMDeployDefaults:
    """User-level defaults applied to CLI options."""

    default_location: str = DEFAULT_LOCATION
    default_vm_size: str = DEFAULT_VM_SIZE
    default_admin_username: str = DEFAULT_ADMIN_USERNAME
    default_data_disk_size: int = DEFAULT_DATA_DISK_SIZE

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VMDeployDefaults":
        """Create from dictionary, ignoring unknown keys."""
        try:
            disk_size = int(data.get("default_data_disk_size", DEFAULT_DATA_DISK_SIZE))
        except (TypeError, ValueError) as e:
            raise ConfigError("default_data_disk_size must be an integer") from e
        return cls(
            default_location=str(data.get("default_location", DEFAULT_LOCATION)),
            default_vm_size=str(data.get("default_vm_size", DEFAULT_VM_SIZE)),
            default_admin_username=str(
                data.get("default_admin_username", DEFAULT_ADMIN_USERNAME)
            ),
            default_data_disk_size=disk_size,
        )


class ConfigManager:
    """Load vmdeploy user defaults.

    Configuration is read from ~/.vmdeploy/config.toml (or the path in
    VMDEPLOY_CONFIG). Environment variables VMDEPLOY_LOCATION,
    VMDEPLOY_VM_SIZE, VMDEPLOY_ADMIN_USERNAME and VMDEPLOY_DATA_DISK_SIZE
    override file values.
    """

    DEFAULT_CONFIG_DIR = Path.home() / ".vmdeploy"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"

    ENV_OVERRIDES = {
        "VMDEPLOY_LOCATION": "default_location",
        "VMDEPLOY_VM_SIZE": "default_vm_size",
        "VMDEPLOY_ADMIN_USERNAME": "default_admin_username",
        "VMDEPLOY_DATA_DISK_SIZE": "default_data_disk_size",
    }

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        if custom_path:
            return Path(custom_path).expanduser()
        env_path = os.getenv("VMDEPLOY_CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        return cls.DEFAULT_CONFIG_FILE

    @classmethod
    def load_config(cls, custom_path: str | None = None) -> VMDeployDefaults:
        """Load defaults from file and environment.

        A missing file is not an error: built-in defaults apply.

        Raises:
            ConfigError: If the file exists but is not valid TOML
        """
        config_path = cls.get_config_path(custom_path)
        data: dict[str, Any] = {}

        if config_path.exists():
            try:
                with open(config_path, "rb") as f:
                    data = tomli.load(f)
                logger.debug(f"Loaded config from {config_path}")
            except tomli.TOMLDecodeError as e:
                raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e
            except OSError as e:
                raise ConfigError(f"Cannot read {config_path}: {e}") from e

        for env_name, key in cls.ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value:
                data[key] = value

        return VMDeployDefaults.from_dict(data)


__all__ = ["ConfigError", "ConfigManager", "VMDeployDefaults"]
