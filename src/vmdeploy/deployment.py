"""Infrastructure submission.

Builds the template parameter set, submits the deployment and parses its
outputs. Deployment failures are fatal: the platform's diagnostic is
surfaced verbatim and nothing is retried or rolled back. A failed
deployment leaves the resource group as-is for teardown or manual repair.
"""

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

import click
from pydantic import BaseModel, ConfigDict, Field, field_validator

from vmdeploy.azure_platform import AzurePlatform
from vmdeploy.exceptions import (
    AuthenticationExpiredError,
    AzureCLIError,
    DeploymentError,
    FeatureNotRegisteredError,
    ValidationError,
)
from vmdeploy.interaction_handler import InteractionHandler
from vmdeploy.log_sanitizer import LogSanitizer
from vmdeploy.parameters import ProjectParameters
from vmdeploy.retry_config import get_retry_config
from vmdeploy.retry_handler import RetryPolicy, fixed_backoff
from vmdeploy.settings import DeployConfig

logger = logging.getLogger(__name__)

COMPUTE_NAMESPACE = "Microsoft.Compute"
ENCRYPTION_AT_HOST_FEATURE = "EncryptionAtHost"
REGISTERED = "Registered"

QUOTA_MARKERS = ("QuotaExceeded", "OperationNotAllowed", "SkuNotAvailable")

# Secrets and bootstrap data only sent when the VM is created
CREATE_ONLY_PARAMETERS = ("adminPassword", "customData")

# Fixed at creation; an update resubmits the live values so the template
# defaults never apply to an existing VM
PRESERVED_PARAMETERS = ("adminUsername", "dataDiskSizeGB")

BOOTSTRAP_WAIT_COMMAND = "cloud-init status --wait"


def generate_key_vault_name(project_name: str, now: datetime | None = None) -> str:
    """Vault name unique per creation, at most 24 characters.

    A deleted vault stays reserved under purge protection, so reusing a
    deterministic name would block recreating the group until the
    retention period ends.
    """
    now = now or datetime.now()
    prefix = re.sub(r"[^a-z0-9]", "", project_name.lower())[:8]
    return f"kv{prefix}{now:%y%m%d%H%M%S}"


def read_preserved_parameters(
    platform: AzurePlatform, config: DeployConfig, interaction: InteractionHandler
) -> dict[str, Any]:
    """Read the creation-time values of an existing deployment.

    Falls back to the configured values when the VM or a value is missing,
    which happens after a partially failed create.
    """
    vm = platform.show_vm(config.resource_group, config.vm_name)
    if vm is None:
        interaction.show_warning(
            f"VM {config.vm_name} not found; it will be created with admin user "
            f"{config.admin_username} and a {config.data_disk_size}GB data disk"
        )
        vm = {}

    username = (vm.get("osProfile") or {}).get("adminUsername") or config.admin_username
    data_disks = (vm.get("storageProfile") or {}).get("dataDisks") or []
    disk_size = next(
        (disk.get("diskSizeGb") for disk in data_disks if disk.get("lun") == 0), None
    ) or config.data_disk_size
    if disk_size != config.data_disk_size:
        click.echo(
            f"Keeping existing data disk size {disk_size}GB "
            f"(configured {config.data_disk_size}GB)"
        )

    preserved: dict[str, Any] = {"adminUsername": username, "dataDiskSizeGB": disk_size}
    vaults = platform.list_key_vaults(config.resource_group)
    if vaults:
        preserved["keyVaultName"] = vaults[0]
    logger.debug(f"Preserved parameters: {preserved}")
    return preserved


def build_deployment_parameters(
    config: DeployConfig,
    parameters: ProjectParameters,
    *,
    update: bool,
    admin_password: str | None = None,
    custom_data: str | None = None,
    preserved: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Assemble the template parameters for a create or an update.

    Args:
        config: Frozen deploy settings
        parameters: Project parameters (project name, inbound ports)
        update: True for an in-place update of an existing deployment
        admin_password: Local admin password (create only)
        custom_data: Base64 cloud-init document (create only)
        preserved: Live creation-time values, see read_preserved_parameters (update only)

    Returns:
        Mapping of template parameter name to value

    Raises:
        ValidationError: If a create is missing the password or bootstrap
            document, or an update is missing the preserved values
    """
    values: dict[str, Any] = {
        "vmName": config.vm_name,
        "vmSize": config.vm_size,
        "alertEmail": config.alert_email,
        "enableEntraLogin": config.enable_entra_login,
        "enableNetworkSSH": config.enable_network_ssh,
        "sshSourceAddressPrefix": config.ssh_source or "",
        "projectName": parameters.project_name,
        "inboundPorts": parameters.inbound_ports_template(),
        "createPublicIp": config.create_public_ip,
        "enableCMK": config.enable_cmk,
    }
    if update:
        if not preserved or any(key not in preserved for key in PRESERVED_PARAMETERS):
            raise ValidationError("An update needs the existing admin username and disk size")
        values.update(preserved)
        values.setdefault("keyVaultName", generate_key_vault_name(parameters.project_name))
        return values

    if not admin_password:
        raise ValidationError("An admin password is required for a new deployment")
    if not custom_data:
        raise ValidationError("A rendered cloud-init document is required for a new deployment")
    values.update(
        {
            "adminUsername": config.admin_username,
            "adminPassword": admin_password,
            "dataDiskSizeGB": config.data_disk_size,
            "customData": custom_data,
            "keyVaultName": generate_key_vault_name(parameters.project_name),
        }
    )
    return values


class DeploymentOutputs(BaseModel):
    """Structured outputs of the template deployment."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    public_ip: str | None = Field(default=None, alias="vmPublicIp")
    fqdn: str | None = Field(default=None, alias="vmFqdn")
    private_ip: str | None = Field(default=None, alias="vmPrivateIp")
    has_public_ip: bool = Field(default=True, alias="hasPublicIp")
    serial_console_url: str | None = Field(default=None, alias="serialConsoleUrl")
    run_command_url: str | None = Field(default=None, alias="runCommandUrl")
    vm_resource_id: str | None = Field(default=None, alias="vmResourceId")
    storage_account_name: str | None = Field(default=None, alias="storageAccountName")
    entra_login_enabled: bool = Field(default=False, alias="entraLoginEnabled")
    network_ssh_enabled: bool = Field(default=False, alias="networkSSHEnabled")
    cmk_enabled: bool = Field(default=False, alias="cmkEnabled")
    key_vault_name: str | None = Field(default=None, alias="keyVaultName")
    disk_encryption_set_name: str | None = Field(default=None, alias="diskEncryptionSetName")

    @field_validator(
        "public_ip",
        "fqdn",
        "private_ip",
        "serial_console_url",
        "run_command_url",
        "vm_resource_id",
        "storage_account_name",
        "key_vault_name",
        "disk_encryption_set_name",
        mode="before",
    )
    @classmethod
    def _empty_to_none(cls, value: Any) -> Any:
        if value == "":
            return None
        return value

    @classmethod
    def from_deployment(cls, payload: dict[str, Any]) -> "DeploymentOutputs":
        """Parse ``properties.outputs`` of an ``az deployment group create`` result.

        Unknown outputs are ignored; missing ones keep their defaults.
        """
        outputs = (payload.get("properties") or {}).get("outputs") or {}
        values = {
            key: entry.get("value")
            for key, entry in outputs.items()
            if isinstance(entry, dict) and entry.get("value") is not None
        }
        return cls.model_validate(values)


def _is_quota_error(stderr: str) -> bool:
    return any(marker in stderr for marker in QUOTA_MARKERS)


def submit_deployment(
    platform: AzurePlatform,
    resource_group: str,
    template_file: Path,
    parameters: dict[str, Any],
) -> DeploymentOutputs:
    """Submit the template and wait for the deployment to finish.

    Raises:
        AuthenticationExpiredError: If the CLI session needs re-authentication
        DeploymentError: With the platform's stderr on any other failure
    """
    logger.debug(f"Submitting {template_file} to {resource_group}")
    logger.debug(f"Template parameters: {LogSanitizer.sanitize_dict(parameters)}")
    try:
        payload = platform.create_deployment(resource_group, template_file, parameters)
    except AuthenticationExpiredError:
        raise
    except AzureCLIError as e:
        quota = _is_quota_error(e.stderr)
        message = str(e)
        if quota:
            message = f"Quota or capacity limit reached: {message}"
        raise DeploymentError(
            message,
            cmd=e.cmd,
            returncode=e.returncode,
            stderr=e.stderr,
            quota_exceeded=quota,
        ) from e
    return DeploymentOutputs.from_deployment(payload)


def default_feature_poll_policy() -> RetryPolicy:
    """Provider registration poll: fixed interval, no deadline unless configured."""
    config = get_retry_config()
    return RetryPolicy(
        max_attempts=None,
        backoff=fixed_backoff(config.feature_poll_interval),
        timeout=config.feature_poll_timeout,
    )


def encryption_at_host_state(platform: AzurePlatform) -> str:
    return platform.feature_state(COMPUTE_NAMESPACE, ENCRYPTION_AT_HOST_FEATURE)


def ensure_encryption_at_host(
    platform: AzurePlatform,
    interaction: InteractionHandler,
    policy: RetryPolicy | None = None,
) -> bool:
    """Make sure the EncryptionAtHost feature is registered.

    Offers to register the feature when it is not, then waits for the
    Microsoft.Compute provider registration to complete.

    Returns:
        True if the feature had to be registered, False if it already was

    Raises:
        FeatureNotRegisteredError: If the operator declines, or the optional
            poll timeout expires
    """
    state = encryption_at_host_state(platform)
    if state == REGISTERED:
        return False

    interaction.show_warning(
        f"CMK encryption requires the '{ENCRYPTION_AT_HOST_FEATURE}' feature. "
        f"Current status: {state}"
    )
    if not interaction.confirm(f"Register the {ENCRYPTION_AT_HOST_FEATURE} feature now?"):
        raise FeatureNotRegisteredError(
            f"{ENCRYPTION_AT_HOST_FEATURE} is not registered. Either run with --no-cmk "
            "to disable encryption at host, or register it manually: "
            f"az feature register --namespace {COMPUTE_NAMESPACE} "
            f"--name {ENCRYPTION_AT_HOST_FEATURE}"
        )

    click.echo(f"Registering {ENCRYPTION_AT_HOST_FEATURE} feature...")
    platform.register_feature(COMPUTE_NAMESPACE, ENCRYPTION_AT_HOST_FEATURE)
    click.echo("Propagating provider registration...")
    platform.register_provider(COMPUTE_NAMESPACE)

    policy = policy or default_feature_poll_policy()
    click.echo("Waiting for registration to complete", nl=False)
    registered = policy.poll(
        lambda: platform.provider_state(COMPUTE_NAMESPACE) == REGISTERED,
        on_wait=lambda attempt: click.echo(".", nl=False),
    )
    if not registered:
        click.echo()
        raise FeatureNotRegisteredError(
            f"Timed out waiting for {COMPUTE_NAMESPACE} provider registration"
        )
    click.echo(" Done!")
    return True


def confirm_bootstrap(platform: AzurePlatform, resource_group: str, vm_name: str) -> bool:
    """Wait for cloud-init to finish on a freshly created VM.

    Both steps are best effort: failures are logged and the deployment
    carries on, since the VM itself exists at this point.

    Returns:
        True if both the extension and the run-command wait succeeded
    """
    ok = True
    try:
        platform.set_vm_extension(
            resource_group,
            vm_name,
            "customScript",
            "Microsoft.Azure.Extensions",
            {"commandToExecute": BOOTSTRAP_WAIT_COMMAND},
        )
    except AzureCLIError as e:
        logger.warning(f"Cloud-init extension did not complete: {e}")
        ok = False

    try:
        message = platform.run_shell_script(
            resource_group,
            vm_name,
            f"{BOOTSTRAP_WAIT_COMMAND} && echo 'Cloud-init complete'",
        )
        logger.debug(message)
    except AzureCLIError as e:
        logger.warning(f"Cloud-init wait via run-command failed: {e}")
        ok = False
    return ok


__all__ = [
    "CREATE_ONLY_PARAMETERS",
    "PRESERVED_PARAMETERS",
    "QUOTA_MARKERS",
    "DeploymentOutputs",
    "build_deployment_parameters",
    "confirm_bootstrap",
    "default_feature_poll_policy",
    "encryption_at_host_state",
    "ensure_encryption_at_host",
    "generate_key_vault_name",
    "read_preserved_parameters",
    "submit_deployment",
]
