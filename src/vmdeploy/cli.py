"""CLI entry point for vmdeploy.

Commands:
    vmdeploy deploy              # Create, update or destroy the VM deployment
    vmdeploy transfer            # Copy local files or directories onto the VM
    vmdeploy post-deploy         # Reset password, grant roles, restrict SSH
    vmdeploy security-contacts   # Configure Defender for Cloud alert contacts
    vmdeploy move-subscription   # Move the resource group to another subscription

Every command validates its inputs before touching Azure, and runs
``az login`` only when there is no active CLI session.
"""

import functools
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from vmdeploy import __version__
from vmdeploy.azure_platform import AzurePlatform, ensure_logged_in
from vmdeploy.config_manager import ConfigManager
from vmdeploy.deploy import DeployOrchestrator, validate_deploy_config
from vmdeploy.exceptions import DeploymentError, VMDeployError
from vmdeploy.interaction_handler import CLIInteractionHandler
from vmdeploy.post_deploy import PostDeployOrchestrator, validate_post_deploy_config
from vmdeploy.security_contacts import SecurityContactConfig, configure_security_contacts
from vmdeploy.settings import (
    DEFAULT_BICEP_FILE,
    DEFAULT_CLOUD_INIT_FILE,
    DeployConfig,
    PostDeployConfig,
    TransferConfig,
)
from vmdeploy.subscription_move import MoveConfig, SubscriptionMover
from vmdeploy.transfer import TransferOrchestrator, plan_transfer

logger = logging.getLogger(__name__)

file_type = click.Path(exists=False, dir_okay=False, path_type=Path)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(message)s")
    logging.getLogger("vmdeploy").setLevel(level)


def _handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Map vmdeploy errors to a red ``Error:`` line and exit status 1.

    A declined prompt (click.Abort) is a clean cancellation, exit status 0.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except click.Abort:
            click.echo("Cancelled.")
            sys.exit(0)
        except VMDeployError as e:
            click.secho(f"Error: {e}", fg="red", err=True)
            if isinstance(e, DeploymentError) and e.quota_exceeded:
                click.echo(
                    "Hint: request a quota increase or choose a smaller size with -s/--size",
                    err=True,
                )
            logger.debug("Command failed", exc_info=True)
            sys.exit(1)

    return wrapper


@click.group(context_settings={"help_option_names": ["--help", "-h"]})
@click.version_option(version=__version__)
def main() -> None:
    """vmdeploy - provision and manage a single hardened Azure Linux VM.

    \b
    COMMANDS:
        deploy             Create, update in place, or destroy the deployment
        transfer           Upload files to the VM via temporary blob storage
        post-deploy        Reset admin password, assign roles, restrict SSH
        security-contacts  Configure security alert contacts
        move-subscription  Move the resource group to another subscription

    \b
    CONFIGURATION:
        Config file: ~/.vmdeploy/config.toml (or VMDEPLOY_CONFIG)
        Set defaults: default_location, default_vm_size,
                      default_admin_username, default_data_disk_size

    For help on any command: vmdeploy <command> --help
    """


@main.command()
@click.option("-g", "--resource-group", required=True, help="Azure resource group name")
@click.option("-n", "--name", "vm_name", help="VM name (required unless --destroy)")
@click.option("-e", "--email", "alert_email", help="Alert email (required unless --destroy)")
@click.option("-l", "--location", help="Azure region (default: canadacentral)")
@click.option("-s", "--size", "vm_size", help="VM size (default: Standard_D8s_v5)")
@click.option("-d", "--disk-size", type=click.IntRange(min=1), help="Data disk size in GB")
@click.option("-u", "--admin-user", "admin_username", help="Local admin username")
@click.option("--entra-admin", multiple=True, help="Entra ID user with sudo (repeatable)")
@click.option("--entra-user", multiple=True, help="Entra ID user without sudo (repeatable)")
@click.option(
    "--service-admin",
    multiple=True,
    help="Entra ID user who can act as the service user (repeatable)",
)
@click.option(
    "--ssh-source",
    "--enable-ssh",
    "ssh_source",
    metavar="CIDR",
    help="Allow network SSH from this source range (blocked by default)",
)
@click.option("--dry-run", is_flag=True, help="Show what would happen without making changes")
@click.option("--destroy", is_flag=True, help="Delete the resource group and purge key vaults")
@click.option("--update", is_flag=True, help="Update an existing deployment in place")
@click.option("-y", "--yes", "assume_yes", is_flag=True, help="Skip confirmation prompts")
@click.option("--no-public-ip", is_flag=True, help="Private network access only")
@click.option("--no-cmk", is_flag=True, help="Use platform-managed keys instead of CMK")
@click.option("--bicep", "bicep_file", type=file_type, help="Bicep template file")
@click.option("--cloud-init", "cloud_init_file", type=file_type, help="Cloud-init file")
@click.option("--parameters", "parameters_file", type=file_type, help="Parameters JSON")
@click.option(
    "--role-definition", "role_definition_file", type=file_type, help="Custom role JSON"
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@_handle_errors
def deploy(
    resource_group: str,
    vm_name: str | None,
    alert_email: str | None,
    location: str | None,
    vm_size: str | None,
    disk_size: int | None,
    admin_username: str | None,
    entra_admin: tuple[str, ...],
    entra_user: tuple[str, ...],
    service_admin: tuple[str, ...],
    ssh_source: str | None,
    dry_run: bool,
    destroy: bool,
    update: bool,
    assume_yes: bool,
    no_public_ip: bool,
    no_cmk: bool,
    bicep_file: Path | None,
    cloud_init_file: Path | None,
    parameters_file: Path | None,
    role_definition_file: Path | None,
    verbose: bool,
) -> None:
    """Deploy a VM with NSG rules, alerts and Entra ID console access.

    \b
    Examples:
        vmdeploy deploy -g myapp-rg -n myapp-vm -e alerts@example.com
        vmdeploy deploy -g myapp-rg -n myapp-vm -e alerts@example.com --dry-run
        vmdeploy deploy -g myapp-rg -n myapp-vm -e alerts@example.com --update
        vmdeploy deploy -g myapp-rg --destroy
    """
    _configure_logging(verbose)
    defaults = ConfigManager.load_config()
    config = DeployConfig(
        resource_group=resource_group,
        vm_name=vm_name,
        alert_email=alert_email,
        location=location or defaults.default_location,
        vm_size=vm_size or defaults.default_vm_size,
        data_disk_size=disk_size or defaults.default_data_disk_size,
        admin_username=admin_username or defaults.default_admin_username,
        entra_admins=entra_admin,
        entra_users=entra_user,
        service_admins=service_admin,
        ssh_source=ssh_source or None,
        dry_run=dry_run,
        destroy=destroy,
        update=update,
        assume_yes=assume_yes,
        create_public_ip=not no_public_ip,
        enable_cmk=not no_cmk,
        bicep_file=bicep_file or DEFAULT_BICEP_FILE,
        cloud_init_file=cloud_init_file or DEFAULT_CLOUD_INIT_FILE,
        parameters_file=parameters_file,
        role_definition_file=role_definition_file,
    )
    if not config.destroy:
        validate_deploy_config(config)

    platform = AzurePlatform()
    ensure_logged_in(platform)
    DeployOrchestrator(platform, CLIInteractionHandler()).run(config)


@main.command()
@click.option("-g", "--resource-group", required=True, help="Azure resource group name")
@click.option("-n", "--name", "vm_name", required=True, help="VM name")
@click.option(
    "-t",
    "--transfer",
    "transfers",
    multiple=True,
    required=True,
    metavar="LOCAL:REMOTE",
    help="Local path and absolute VM path (repeatable)",
)
@click.option("--parameters", "parameters_file", type=file_type, help="Parameters JSON")
@click.option(
    "--service-user",
    help="Owner of transferred files when the parameters file sets none (default: appuser)",
)
@click.option("--quick", is_flag=True, help="Inline a single small file via Run Command")
@click.option("--dry-run", is_flag=True, help="Show what would happen without making changes")
@click.option("-y", "--yes", "assume_yes", is_flag=True, help="Skip confirmation prompt")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@_handle_errors
def transfer(
    resource_group: str,
    vm_name: str,
    transfers: tuple[str, ...],
    parameters_file: Path | None,
    service_user: str | None,
    quick: bool,
    dry_run: bool,
    assume_yes: bool,
    verbose: bool,
) -> None:
    """Transfer files or directories to the VM.

    Files are staged in a temporary blob container using a user delegation
    SAS (Entra ID, no storage keys) and the container is always deleted.

    \b
    Examples:
        vmdeploy transfer -g myapp-rg -n myapp-vm -t ./app:/home/appuser/app
        vmdeploy transfer -g myapp-rg -n myapp-vm -t ./.env:/home/appuser/.env --quick
    """
    _configure_logging(verbose)
    plan = plan_transfer(
        TransferConfig(
            resource_group=resource_group,
            vm_name=vm_name,
            transfers=transfers,
            service_user=service_user,
            parameters_file=parameters_file,
            quick=quick,
            dry_run=dry_run,
            assume_yes=assume_yes,
        )
    )

    platform = AzurePlatform()
    ensure_logged_in(platform)
    TransferOrchestrator(platform, CLIInteractionHandler()).run(plan)


@main.command(name="post-deploy")
@click.option("-g", "--resource-group", required=True, help="Azure resource group name")
@click.option("-n", "--name", "vm_name", required=True, help="VM name")
@click.option("--reset-password", is_flag=True, help="Reset the local admin password")
@click.option("-u", "--admin-user", "admin_username", help="Admin username to reset")
@click.option("--assign-roles", is_flag=True, help="Assign Entra ID roles and sudoers")
@click.option("--service-admin", multiple=True, help="Entra ID service admin (repeatable)")
@click.option(
    "--service-user",
    help="Sudoers service user when the parameters file sets none (default: appuser)",
)
@click.option("--parameters", "parameters_file", type=file_type, help="Parameters JSON")
@click.option("--ssh-user", multiple=True, help="Restrict SSH to this user (repeatable)")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@_handle_errors
def post_deploy(
    resource_group: str,
    vm_name: str,
    reset_password: bool,
    admin_username: str | None,
    assign_roles: bool,
    service_admin: tuple[str, ...],
    service_user: str | None,
    parameters_file: Path | None,
    ssh_user: tuple[str, ...],
    verbose: bool,
) -> None:
    """Reset the admin password, grant roles, or restrict SSH on a deployed VM.

    \b
    Examples:
        vmdeploy post-deploy -g myapp-rg -n myapp-vm --reset-password -u myadmin
        vmdeploy post-deploy -g myapp-rg -n myapp-vm --assign-roles \\
            --service-admin user@example.com
        vmdeploy post-deploy -g myapp-rg -n myapp-vm --ssh-user user@example.com
    """
    _configure_logging(verbose)
    config = PostDeployConfig(
        resource_group=resource_group,
        vm_name=vm_name,
        reset_password=reset_password,
        admin_username=admin_username,
        assign_roles=assign_roles,
        service_admins=service_admin,
        service_user=service_user,
        parameters_file=parameters_file,
        ssh_users=ssh_user,
    )
    validate_post_deploy_config(config)

    platform = AzurePlatform()
    ensure_logged_in(platform)
    PostDeployOrchestrator(platform, CLIInteractionHandler()).run(config)


@main.command(name="security-contacts")
@click.option("-e", "--email", required=True, help="Security contact email address")
@click.option("--phone", help="Security contact phone number")
@click.option(
    "--notify-admins/--no-notify-admins",
    default=True,
    help="Also notify subscription owners (default: on)",
)
@click.option("--dry-run", is_flag=True, help="Show what would happen without making changes")
@click.option("-y", "--yes", "assume_yes", is_flag=True, help="Skip confirmation prompt")
@_handle_errors
def security_contacts(
    email: str, phone: str | None, notify_admins: bool, dry_run: bool, assume_yes: bool
) -> None:
    """Configure security contacts for high severity alerts."""
    _configure_logging(False)
    config = SecurityContactConfig(
        email=email,
        phone=phone,
        notify_admins=notify_admins,
        dry_run=dry_run,
        assume_yes=assume_yes,
    )
    platform = AzurePlatform()
    ensure_logged_in(platform)
    configure_security_contacts(platform, CLIInteractionHandler(), config)


@main.command(name="move-subscription")
@click.option("-g", "--resource-group", required=True, help="Resource group to move")
@click.option(
    "-t",
    "--target-subscription",
    required=True,
    help="Target subscription name or id (same tenant)",
)
@click.option("--dry-run", is_flag=True, help="Validate only, make no changes")
@click.option("-y", "--yes", "assume_yes", is_flag=True, help="Skip confirmation prompt")
@_handle_errors
def move_subscription(
    resource_group: str, target_subscription: str, dry_run: bool, assume_yes: bool
) -> None:
    """Move all resources in a resource group to another subscription."""
    _configure_logging(False)
    platform = AzurePlatform()
    ensure_logged_in(platform)
    SubscriptionMover(platform, CLIInteractionHandler()).move(
        MoveConfig(
            resource_group=resource_group,
            target_subscription=target_subscription,
            dry_run=dry_run,
            assume_yes=assume_yes,
        )
    )


if __name__ == "__main__":
    main()
