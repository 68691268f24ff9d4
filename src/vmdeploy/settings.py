"""Immutable per-invocation settings.

The CLI resolves flags, the user defaults file and environment variables
once, freezes the result into one of these dataclasses and hands it to the
orchestrator. Nothing downstream mutates it.
"""

from dataclasses import dataclass, field
from pathlib import Path

TEMPLATES_DIR = Path(__file__).parent / "templates"
DEFAULT_BICEP_FILE = TEMPLATES_DIR / "main.bicep"
DEFAULT_CLOUD_INIT_FILE = TEMPLATES_DIR / "cloud-init.yaml"


@dataclass(frozen=True)
class DeployConfig:
    """Settings for ``vmdeploy deploy``."""

    resource_group: str
    vm_name: str | None = None
    alert_email: str | None = None
    location: str = "canadacentral"
    vm_size: str = "Standard_D8s_v5"
    data_disk_size: int = 64
    admin_username: str = "azureuser"
    entra_admins: tuple[str, ...] = field(default_factory=tuple)
    entra_users: tuple[str, ...] = field(default_factory=tuple)
    service_admins: tuple[str, ...] = field(default_factory=tuple)
    ssh_source: str | None = None
    dry_run: bool = False
    destroy: bool = False
    update: bool = False
    assume_yes: bool = False
    create_public_ip: bool = True
    enable_cmk: bool = True
    bicep_file: Path = DEFAULT_BICEP_FILE
    cloud_init_file: Path = DEFAULT_CLOUD_INIT_FILE
    parameters_file: Path | None = None
    role_definition_file: Path | None = None

    @property
    def enable_entra_login(self) -> bool:
        """Entra ID login is enabled as soon as any identity is granted access."""
        return bool(self.entra_admins or self.entra_users or self.service_admins)

    @property
    def enable_network_ssh(self) -> bool:
        return bool(self.ssh_source)

    @property
    def needs_minimal_role(self) -> bool:
        return bool(self.entra_users or self.service_admins)


@dataclass(frozen=True)
class TransferConfig:
    """Settings for ``vmdeploy transfer``."""

    resource_group: str
    vm_name: str
    transfers: tuple[str, ...]
    service_user: str | None = None
    parameters_file: Path | None = None
    quick: bool = False
    dry_run: bool = False
    assume_yes: bool = False


@dataclass(frozen=True)
class PostDeployConfig:
    """Settings for ``vmdeploy post-deploy``."""

    resource_group: str
    vm_name: str
    reset_password: bool = False
    admin_username: str | None = None
    assign_roles: bool = False
    service_admins: tuple[str, ...] = field(default_factory=tuple)
    service_user: str | None = None
    parameters_file: Path | None = None
    ssh_users: tuple[str, ...] = field(default_factory=tuple)

    @property
    def configure_ssh(self) -> bool:
        return bool(self.ssh_users)


__all__ = [
    "DEFAULT_BICEP_FILE",
    "DEFAULT_CLOUD_INIT_FILE",
    "TEMPLATES_DIR",
    "DeployConfig",
    "PostDeployConfig",
    "TransferConfig",
]
