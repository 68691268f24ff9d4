"""Post-deployment configuration of an existing VM.

Three independent actions, any combination of which can run in one call:

- reset the local admin password (VMAccess extension via ``az vm user update``)
- grant service admins Entra ID login plus the per-VM Serial Console role,
  and install a sudoers file letting them act as the service user
- restrict SSH to a list of Entra ID users with ``AllowUsers``

VM-side changes go through Run Command and are best effort: a failure is a
warning, not an abort, because the role assignments already applied remain
useful on their own.
"""

import logging
import shlex
from dataclasses import dataclass, field

import click

from vmdeploy.access_grants import (
    AccessGrantOrchestrator,
    GrantPolicies,
    GrantReport,
    GrantRequest,
    storage_account_id,
)
from vmdeploy.azure_platform import AzurePlatform
from vmdeploy.exceptions import (
    AuthenticationExpiredError,
    AzureCLIError,
    PreconditionError,
    ValidationError,
    VMNotFoundError,
)
from vmdeploy.interaction_handler import InteractionHandler
from vmdeploy.parameters import DEFAULT_SERVICE_USER, read_service_user
from vmdeploy.settings import PostDeployConfig

logger = logging.getLogger(__name__)

SUDOERS_PATH = "/etc/sudoers.d/service-admins"
SSHD_CONFIG_PATH = "/etc/ssh/sshd_config"
SEPARATOR = "=" * 40


def validate_post_deploy_config(config: PostDeployConfig) -> None:
    """Raises ValidationError unless the requested actions are complete."""
    if not (config.reset_password or config.assign_roles or config.configure_ssh):
        raise ValidationError(
            "Must specify --reset-password, --assign-roles, and/or --ssh-user"
        )
    if config.reset_password and not config.admin_username:
        raise ValidationError("--admin-user is required with --reset-password")
    if config.assign_roles and not config.service_admins:
        raise ValidationError("--service-admin is required with --assign-roles")


def resolve_service_user(config: PostDeployConfig) -> str:
    """The parameters file, then --service-user, then the default."""
    if config.parameters_file is not None:
        service_user = read_service_user(config.parameters_file)
        if service_user:
            click.echo(f"Loaded service user from parameters: {service_user}")
            return service_user
    return config.service_user or DEFAULT_SERVICE_USER


def vm_resource_id(subscription_id: str, resource_group: str, vm_name: str) -> str:
    return (
        f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        f"/providers/Microsoft.Compute/virtualMachines/{vm_name}"
    )


def build_sudoers_content(service_admins: tuple[str, ...], service_user: str) -> str:
    """Sudoers rules letting each service admin act as ``service_user``.

    ``machinectl shell`` gives the admin a proper login session (with a
    dbus user bus) so ``systemctl --user`` works for the service user.
    """
    lines = [
        "# Service admin users can act as the service user",
        "# Entra ID users use email as username",
        "# Uses machinectl for proper dbus session",
        "# Generated by vmdeploy post-deploy",
    ]
    for user in service_admins:
        lines.append(f"{user} ALL=(root) NOPASSWD: /bin/machinectl shell {service_user}@")
        lines.append(
            f"{user} ALL=(root) NOPASSWD: "
            + ", ".join(
                f"/bin/systemctl {verb} {service_user}*"
                for verb in ("start", "stop", "restart", "status")
            )
        )
    return "\n".join(lines) + "\n"


def build_sudoers_script(content: str) -> str:
    return (
        f"printf '%s' {shlex.quote(content)} > {SUDOERS_PATH} && chmod 440 {SUDOERS_PATH}"
    )


def build_allow_users_script(ssh_users: tuple[str, ...]) -> str:
    allow = " ".join(ssh_users)
    directive = shlex.quote(f"AllowUsers {allow}")
    return "\n".join(
        [
            f"sed -i '/^AllowUsers/d' {SSHD_CONFIG_PATH}",
            f"echo {directive} >> {SSHD_CONFIG_PATH}",
            "systemctl restart sshd",
            f"echo {shlex.quote('SSH access restricted to: ' + allow)}",
        ]
    )


@dataclass
class PostDeployResult:
    password_reset: bool = False
    grants: GrantReport | None = None
    unresolved_users: list[str] = field(default_factory=list)
    sudoers_configured: bool = False
    ssh_configured: bool = False


class PostDeployOrchestrator:
    """Apply post-deployment actions to an existing VM."""

    def __init__(
        self,
        platform: AzurePlatform,
        interaction: InteractionHandler,
        grant_policies: GrantPolicies | None = None,
    ):
        self.platform = platform
        self.interaction = interaction
        self.grant_policies = grant_policies

    def _print_header(self, config: PostDeployConfig) -> None:
        click.echo(SEPARATOR)
        click.echo("Post-Deployment Configuration")
        click.echo(SEPARATOR)
        click.echo(f"Resource Group: {config.resource_group}")
        click.echo(f"VM Name: {config.vm_name}")
        if config.reset_password:
            click.echo(f"Action: Reset password for {config.admin_username}")
        if config.assign_roles:
            click.echo("Action: Assign Entra ID roles")
            for user in config.service_admins:
                click.echo(f"  - {user}")
        if config.configure_ssh:
            click.echo("Action: Configure SSH access")
            for user in config.ssh_users:
                click.echo(f"  - {user}")
        click.echo(SEPARATOR)
        click.echo()

    def run(self, config: PostDeployConfig) -> PostDeployResult:
        """Run every requested action against the VM.

        Raises:
            ValidationError: If the requested actions are incomplete
            VMNotFoundError: If the VM does not exist in the resource group
            AuthenticationExpiredError: If the CLI token must be refreshed
        """
        validate_post_deploy_config(config)
        service_user = resolve_service_user(config)

        if not self.platform.vm_exists(config.resource_group, config.vm_name):
            raise VMNotFoundError(
                f"VM '{config.vm_name}' not found in resource group '{config.resource_group}'"
            )

        self._print_header(config)
        result = PostDeployResult()

        if config.reset_password:
            self.reset_password(config)
            result.password_reset = True

        if config.assign_roles:
            self.assign_roles(config, service_user, result)

        if config.configure_ssh:
            result.ssh_configured = self.configure_ssh(config)

        self._print_summary(config)
        return result

    def reset_password(self, config: PostDeployConfig) -> None:
        click.echo(f"Resetting password for {config.admin_username}...")
        password = self.interaction.prompt_password("New password")
        click.echo()
        click.echo("Applying password reset via VMAccessForLinux extension...")
        self.platform.update_vm_user(
            config.resource_group, config.vm_name, config.admin_username, password
        )
        click.echo(f"Password reset complete for {config.admin_username}")
        click.echo()

    def _resolve_object_ids(self, emails: tuple[str, ...], result: PostDeployResult) -> list[str]:
        object_ids = []
        for email in emails:
            try:
                object_ids.append(self.platform.resolve_user_object_id(email))
            except AuthenticationExpiredError as e:
                raise AuthenticationExpiredError(
                    "Azure CLI token has expired or requires re-authentication. "
                    "Run 'az account clear && az login', then re-run this command.",
                    cmd=e.cmd,
                    returncode=e.returncode,
                    stderr=e.stderr,
                ) from e
            except AzureCLIError as e:
                self.interaction.show_warning(f"Could not find user {email}; skipping ({e})")
                result.unresolved_users.append(email)
        return object_ids

    def assign_roles(
        self, config: PostDeployConfig, service_user: str, result: PostDeployResult
    ) -> None:
        click.echo("Configuring Entra ID access...")
        account = self.platform.show_account()
        if not account or not account.get("id"):
            raise PreconditionError(
                "Could not determine the active subscription (az account show)"
            )

        vm_id = vm_resource_id(account["id"], config.resource_group, config.vm_name)
        accounts = self.platform.list_storage_accounts(config.resource_group)
        storage_id = storage_account_id(vm_id, accounts[0]) if accounts else None

        object_ids = self._resolve_object_ids(config.service_admins, result)
        request = GrantRequest(
            vm_name=config.vm_name,
            vm_resource_id=vm_id,
            storage_account_id=storage_id,
            service_admins=tuple(object_ids),
            object_ids=True,
        )
        result.grants = AccessGrantOrchestrator(self.platform, self.grant_policies).grant(request)
        click.echo()
        click.echo("Entra ID role assignments complete.")

        click.echo("Configuring sudoers for service admins on VM...")
        script = build_sudoers_script(build_sudoers_content(config.service_admins, service_user))
        try:
            self.platform.run_shell_script(config.resource_group, config.vm_name, script)
        except AzureCLIError as e:
            logger.debug(f"Sudoers run-command failed: {e}")
            self.interaction.show_warning("Could not configure sudoers via Run Command")
        else:
            result.sudoers_configured = True
            click.echo(f"  Sudoers configured for service user: {service_user}")
        click.echo()

    def configure_ssh(self, config: PostDeployConfig) -> bool:
        click.echo("Configuring SSH access restrictions...")
        script = build_allow_users_script(config.ssh_users)
        try:
            self.platform.run_shell_script(config.resource_group, config.vm_name, script)
        except AzureCLIError as e:
            logger.debug(f"AllowUsers run-command failed: {e}")
            self.interaction.show_warning("Could not configure SSH restrictions via Run Command")
            return False
        click.echo(f"  SSH access restricted to: {' '.join(config.ssh_users)}")
        click.echo()
        return True

    def _print_summary(self, config: PostDeployConfig) -> None:
        click.echo(SEPARATOR)
        click.echo("Post-Deployment Complete")
        click.echo(SEPARATOR)
        click.echo()
        click.echo("Serial Console access:")
        click.echo(f"  az serial-console connect -n {config.vm_name} -g {config.resource_group}")
        click.echo()
        if config.reset_password:
            click.echo("Local admin login:")
            click.echo(f"  Username: {config.admin_username}")
            click.echo("  Password: (as entered above)")
            click.echo()
        if config.assign_roles:
            click.echo("Entra ID login (at Serial Console prompt):")
            for user in config.service_admins:
                click.echo(f"  - {user}")
            click.echo()
        if config.configure_ssh:
            click.echo("SSH access allowed for:")
            for user in config.ssh_users:
                click.echo(f"  - {user}")
            click.echo()


__all__ = [
    "PostDeployOrchestrator",
    "PostDeployResult",
    "build_allow_users_script",
    "build_sudoers_content",
    "build_sudoers_script",
    "resolve_service_user",
    "validate_post_deploy_config",
    "vm_resource_id",
]
