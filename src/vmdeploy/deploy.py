"""Deploy orchestrator.

Top-level control flow for ``vmdeploy deploy``:

    validate -> (destroy | deploy)
    deploy: EncryptionAtHost check -> probe resource group -> plan
            -> (dry-run: stop) -> update-in-place or delete-and-recreate
            -> render cloud-init -> submit template
            -> (new VM: wait for cloud-init) -> grant access -> summary

Dry-run stops after the plan and issues no mutating call. The update path
never renders or submits cloud-init or the admin password; it resubmits
the live admin username, data disk size and vault name read from Azure.
"""

import logging
import os
from dataclasses import dataclass

import click
from rich.console import Console

from vmdeploy.access_grants import (
    ADMIN_LOGIN_ROLE,
    AccessGrantOrchestrator,
    GrantPolicies,
    GrantReport,
    GrantRequest,
    custom_role_name,
    report_table,
    storage_account_id,
)
from vmdeploy.azure_platform import AzurePlatform
from vmdeploy.cloud_init import build_bootstrap_values, render_custom_data
from vmdeploy.deployment import (
    DeploymentOutputs,
    build_deployment_parameters,
    confirm_bootstrap,
    encryption_at_host_state,
    ensure_encryption_at_host,
    read_preserved_parameters,
    submit_deployment,
)
from vmdeploy.exceptions import ConfigNotFoundError, ValidationError
from vmdeploy.interaction_handler import MIN_PASSWORD_LENGTH, InteractionHandler
from vmdeploy.network_rules import build_security_rules, rules_table
from vmdeploy.parameters import ProjectParameters, load_parameters
from vmdeploy.resource_group import ResourceGroupState, probe_resource_group, resources_table
from vmdeploy.retry_handler import RetryPolicy
from vmdeploy.settings import DeployConfig
from vmdeploy.teardown import TeardownOrchestrator, TeardownResult

logger = logging.getLogger(__name__)

ADMIN_PASSWORD_ENV = "VMDEPLOY_ADMIN_PASSWORD"

UPDATE_CHOICES = [
    ("u", "Update in-place - preserve public IP/DNS, update VM config (recommended)"),
    ("d", "Delete and recreate - destroys everything including data disk"),
    ("c", "Cancel"),
]

SEPARATOR = "=" * 40


@dataclass
class DeployResult:
    """Outcome of one ``deploy`` invocation.

    ``action`` is one of: create, update, destroy, dry-run, cancelled.
    """

    action: str
    outputs: DeploymentOutputs | None = None
    grants: GrantReport | None = None
    teardown: TeardownResult | None = None


def validate_deploy_config(config: DeployConfig) -> None:
    """Fail fast on missing inputs, before any Azure call.

    Raises:
        ValidationError: If the VM name or alert email is missing
        ConfigNotFoundError: If a referenced template or file does not exist
    """
    if not config.vm_name:
        raise ValidationError("VM name is required (-n/--name)")
    if not config.alert_email:
        raise ValidationError("Alert email is required (-e/--email)")
    if not config.bicep_file.is_file():
        raise ConfigNotFoundError(f"Bicep template not found: {config.bicep_file}")
    if not config.cloud_init_file.is_file():
        raise ConfigNotFoundError(f"Cloud-init file not found: {config.cloud_init_file}")
    if config.role_definition_file is not None and not config.role_definition_file.is_file():
        raise ConfigNotFoundError(
            f"Custom role definition not found: {config.role_definition_file}"
        )


def resolve_admin_password(interaction: InteractionHandler) -> str:
    """Read the admin password from the environment or prompt for it.

    Raises:
        ValidationError: If the environment password is too short
    """
    password = os.environ.get(ADMIN_PASSWORD_ENV)
    if password:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"{ADMIN_PASSWORD_ENV} must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        logger.debug(f"Using admin password from {ADMIN_PASSWORD_ENV}")
        return password
    return interaction.prompt_password("Enter admin password for Serial Console access")


class DeployOrchestrator:
    """Deploy, update or destroy one VM deployment target."""

    def __init__(
        self,
        platform: AzurePlatform,
        interaction: InteractionHandler,
        console: Console | None = None,
        grant_policies: GrantPolicies | None = None,
        feature_poll_policy: RetryPolicy | None = None,
    ):
        self.platform = platform
        self.interaction = interaction
        self.console = console or Console()
        self.grant_policies = grant_policies
        self.feature_poll_policy = feature_poll_policy

    def run(self, config: DeployConfig) -> DeployResult:
        if config.destroy:
            teardown = TeardownOrchestrator(self.platform, self.interaction).destroy(
                config.resource_group, dry_run=config.dry_run, assume_yes=config.assume_yes
            )
            return DeployResult(action="destroy", teardown=teardown)
        return self.deploy(config)

    # ------------------------------------------------------------------
    # Plan display
    # ------------------------------------------------------------------

    def _print_plan(
        self,
        config: DeployConfig,
        parameters: ProjectParameters,
        state: ResourceGroupState,
        feature_state: str | None,
    ) -> None:
        click.echo(SEPARATOR)
        click.echo("Azure VM Deployment (DRY RUN)" if config.dry_run else "Azure VM Deployment")
        click.echo(SEPARATOR)
        click.echo(f"Resource Group: {config.resource_group}")
        click.echo(f"Location: {config.location}")
        click.echo(f"VM Name: {config.vm_name}")
        click.echo(f"VM Size: {config.vm_size}")
        click.echo(f"Alert Email: {config.alert_email}")
        click.echo(f"Data Disk: {config.data_disk_size}GB")
        if config.create_public_ip:
            click.echo("Public IP: Yes")
        else:
            click.echo("Public IP: No (private network only)")
        click.echo(f"Local Admin: {config.admin_username}")
        click.echo()
        click.echo("Templates:")
        click.echo(f"  Bicep: {config.bicep_file}")
        click.echo(f"  Cloud-init: {config.cloud_init_file}")
        if config.parameters_file:
            click.echo(f"  Parameters: {config.parameters_file}")
        if config.role_definition_file:
            click.echo(f"  Role definition: {config.role_definition_file}")
        click.echo()
        click.echo("Project Settings:")
        click.echo(f"  Project Name: {parameters.project_name}")
        click.echo(f"  Service User: {parameters.service_user}")
        if parameters.service_ports:
            click.echo(f"  Service Ports: {parameters.service_ports}")
        click.echo()
        click.echo("Security:")
        if config.enable_cmk:
            click.echo("  - Encryption: Customer-Managed Keys (CMK) enabled")
            click.echo("    - Disk encryption at host")
            click.echo("    - OS and data disks encrypted with CMK")
            if feature_state is not None:
                click.echo(f"    - EncryptionAtHost feature: {feature_state}")
        else:
            click.echo("  - Encryption: Platform-managed keys only")
        if config.enable_network_ssh:
            click.echo(f"  - SSH: allowed from {config.ssh_source}")
        else:
            click.echo("  - SSH: BLOCKED")
        click.echo("  - Console: Azure Portal Serial Console / Run Command")

        rules = build_security_rules(
            parameters.inbound_ports,
            enable_ssh=config.enable_network_ssh,
            ssh_source=config.ssh_source,
        )
        self.console.print(rules_table(rules))

        if config.enable_entra_login:
            click.echo("Entra ID Access:")
            for identity in config.entra_admins:
                click.echo(f"  - Admin (sudo): {identity}")
            for identity in config.entra_users:
                click.echo(f"  - User: {identity}")
            for identity in config.service_admins:
                click.echo(
                    f"  - Service Admin: {identity} (can act as {parameters.service_user})"
                )
        if state.exists:
            click.echo()
            click.echo(f"Resource group '{config.resource_group}' already exists.")
            if state.resources:
                self.console.print(resources_table(state))
        click.echo(SEPARATOR)

    def _print_dry_run_actions(
        self, config: DeployConfig, parameters: ProjectParameters, state: ResourceGroupState
    ) -> None:
        click.echo()
        click.echo("Actions that would be performed:")
        click.echo()
        step = 1
        if state.exists and config.update:
            click.echo(
                f"  {step}. UPDATE existing resource group '{config.resource_group}' in place"
            )
        elif state.exists:
            click.echo(
                f"  {step}. DELETE existing resource group '{config.resource_group}' "
                "(or update in place with --update)"
            )
            step += 1
            click.echo(
                f"  {step}. CREATE new resource group '{config.resource_group}' "
                f"in {config.location}"
            )
        else:
            click.echo(
                f"  {step}. CREATE resource group '{config.resource_group}' in {config.location}"
            )
        step += 1

        click.echo(f"  {step}. DEPLOY infrastructure via Bicep ({config.bicep_file}):")
        click.echo(f"       - Virtual Machine: {config.vm_name} ({config.vm_size})")
        click.echo("       - OS: Ubuntu 22.04 LTS")
        click.echo(f"       - Data Disk: {config.data_disk_size}GB Premium SSD")
        if config.create_public_ip:
            click.echo("       - Network: VNet, Subnet, NSG, Public IP")
        else:
            click.echo("       - Network: VNet, Subnet, NSG (no public IP)")
        click.echo("       - Storage Account (for diagnostics)")
        click.echo("       - Metric Alerts (availability, CPU, memory)")
        if config.enable_cmk:
            click.echo("       - Key Vault (for encryption keys)")
            click.echo("       - Disk Encryption Set (CMK)")
            click.echo("       - Encryption at host enabled")
        if config.enable_entra_login:
            click.echo("       - AADSSHLoginForLinux extension")
        step += 1

        if not (state.exists and config.update):
            click.echo(f"  {step}. CONFIGURE cloud-init ({config.cloud_init_file})")
            step += 1

        if config.enable_entra_login:
            click.echo(f"  {step}. ASSIGN Azure RBAC roles:")
            for identity in config.entra_admins:
                click.echo(f"       - {identity}: {ADMIN_LOGIN_ROLE} (sudo)")
            if config.needs_minimal_role:
                click.echo(f"       - CREATE custom role: '{custom_role_name(config.vm_name)}'")
                if config.role_definition_file:
                    click.echo(
                        f"         (using custom definition: {config.role_definition_file})"
                    )
                else:
                    click.echo("         (scoped to this VM and its storage account only)")
            for identity in config.entra_users:
                click.echo(
                    f"       - {identity}: Serial Console User "
                    "(no sudo, no Run Command, no other VMs)"
                )
            for identity in config.service_admins:
                click.echo(
                    f"       - {identity}: can sudo as {parameters.service_user}, "
                    "control systemd"
                )
        click.echo()
        click.echo("No changes were made.")

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    def _choose_existing_group_action(self, config: DeployConfig) -> str:
        """Return "update", "recreate" or "cancel" for an existing group."""
        if config.update:
            click.echo()
            click.echo("In-place update mode (--update flag).")
            self._print_update_notes()
            return "update"

        choice = self.interaction.prompt_choice("Options:", UPDATE_CHOICES)
        if choice == "u":
            click.echo()
            click.echo("In-place update mode selected.")
            self._print_update_notes()
            return "update"
        if choice == "d":
            self.interaction.show_warning(
                "This will delete ALL data including the data disk!"
            )
            if config.assume_yes or self.interaction.confirm("Are you sure?"):
                return "recreate"
        return "cancel"

    def _print_update_notes(self) -> None:
        click.echo("  - Public IP and DNS name will be preserved")
        click.echo("  - Data disk, its size and the admin username will be preserved")
        click.echo("  - VM size, NSG rules, and alerts can be updated")
        click.echo("  - Cloud-init will NOT re-run (use 'vmdeploy transfer' for file updates)")
        click.echo()

    def deploy(self, config: DeployConfig) -> DeployResult:
        """Create or update the deployment described by ``config``.

        Raises:
            ValidationError: Missing inputs or invalid parameters file
            FeatureNotRegisteredError: EncryptionAtHost declined
            DeploymentError: The template deployment failed
        """
        validate_deploy_config(config)
        parameters = load_parameters(config.parameters_file)
        # Validates rule names and priorities against the SSH rule
        build_security_rules(
            parameters.inbound_ports,
            enable_ssh=config.enable_network_ssh,
            ssh_source=config.ssh_source,
        )

        feature_state = None
        if config.enable_cmk:
            if config.dry_run:
                feature_state = encryption_at_host_state(self.platform)
            else:
                ensure_encryption_at_host(
                    self.platform, self.interaction, self.feature_poll_policy
                )

        state = probe_resource_group(self.platform, config.resource_group)
        self._print_plan(config, parameters, state, feature_state)

        if config.dry_run:
            self._print_dry_run_actions(config, parameters, state)
            return DeployResult(action="dry-run")

        update = False
        if state.exists:
            action = self._choose_existing_group_action(config)
            if action == "cancel":
                click.echo("Deployment cancelled")
                return DeployResult(action="cancelled")
            if action == "update":
                update = True
            else:
                click.echo("Deleting existing resource group (this may take a few minutes)...")
                self.platform.delete_group(config.resource_group)
                click.echo("Resource group deleted.")

        admin_password = None
        preserved = None
        if update:
            preserved = read_preserved_parameters(self.platform, config, self.interaction)
        else:
            admin_password = resolve_admin_password(self.interaction)

        if config.assume_yes:
            click.echo("Proceeding with deployment (--yes flag)...")
        elif not self.interaction.confirm("Continue with deployment?"):
            click.echo("Deployment cancelled")
            return DeployResult(action="cancelled")

        custom_data = None
        if not update:
            values = build_bootstrap_values(
                config.alert_email, parameters.service_user, config.service_admins
            )
            custom_data = render_custom_data(config.cloud_init_file, values)

        total = (2 if update else 4) + (1 if config.enable_entra_login else 0)
        step = 1

        click.echo()
        click.echo(
            f"Step {step}/{total}: "
            + ("Updating resource group..." if update else "Creating resource group...")
        )
        self.platform.create_group(config.resource_group, config.location)
        step += 1

        template_parameters = build_deployment_parameters(
            config,
            parameters,
            update=update,
            admin_password=admin_password,
            custom_data=custom_data,
            preserved=preserved,
        )
        if update:
            click.echo(f"Step {step}/{total}: Updating infrastructure...")
        else:
            click.echo(
                f"Step {step}/{total}: Deploying infrastructure (this takes 3-5 minutes)..."
            )
            if config.enable_cmk:
                click.echo("  (CMK encryption adds ~2 minutes for Key Vault and encryption setup)")
        outputs = submit_deployment(
            self.platform, config.resource_group, config.bicep_file, template_parameters
        )
        step += 1

        if not update:
            click.echo(f"Step {step}/{total}: Applying cloud-init configuration...")
            click.echo(f"Step {step + 1}/{total}: Running cloud-init setup...")
            confirm_bootstrap(self.platform, config.resource_group, config.vm_name)
            step += 2

        grants = None
        if config.enable_entra_login:
            click.echo()
            click.echo(f"Step {step}/{total}: Configuring Entra ID access...")
            grants = self._grant_access(config, outputs)

        self._print_summary(config, parameters, outputs, grants, update)
        return DeployResult(
            action="update" if update else "create", outputs=outputs, grants=grants
        )

    def _grant_access(self, config: DeployConfig, outputs: DeploymentOutputs) -> GrantReport:
        if not outputs.vm_resource_id:
            self.interaction.show_warning(
                "Deployment did not return the VM resource id; skipping role assignments"
            )
            return GrantReport()

        storage_name = outputs.storage_account_name
        if not storage_name:
            accounts = self.platform.list_storage_accounts(config.resource_group)
            storage_name = accounts[0] if accounts else None
        storage_id = None
        if storage_name:
            storage_id = storage_account_id(outputs.vm_resource_id, storage_name)

        request = GrantRequest(
            vm_name=config.vm_name,
            vm_resource_id=outputs.vm_resource_id,
            storage_account_id=storage_id,
            admins=config.entra_admins,
            users=config.entra_users,
            service_admins=config.service_admins,
        )
        orchestrator = AccessGrantOrchestrator(
            self.platform, self.grant_policies, config.role_definition_file
        )
        return orchestrator.grant(request)

    def _print_summary(
        self,
        config: DeployConfig,
        parameters: ProjectParameters,
        outputs: DeploymentOutputs,
        grants: GrantReport | None,
        update: bool,
    ) -> None:
        click.echo()
        click.echo(SEPARATOR)
        click.echo("Update Complete!" if update else "Deployment Complete!")
        click.echo(SEPARATOR)
        click.echo()
        if outputs.has_public_ip and outputs.public_ip:
            click.echo(f"VM Public IP: {outputs.public_ip}")
            click.echo(f"VM FQDN: {outputs.fqdn}")
        else:
            click.echo(f"VM Private IP: {outputs.private_ip}")
            click.echo("(No public IP - access via VPN/private network only)")
        if not update:
            click.echo()
            click.echo("Local Admin (has sudo):")
            click.echo(f"  Username: {config.admin_username}")
            click.echo("  Password: (as entered during setup)")

        if grants is not None and grants.outcomes:
            click.echo()
            self.console.print(report_table(grants))
            if grants.failed:
                self.interaction.show_warning(
                    f"{len(grants.failed)} role assignment(s) failed; rerun with --update "
                    "to retry them"
                )
            click.echo("  Login at Serial Console with Entra email and password.")

        if parameters.service_ports:
            click.echo()
            click.echo("Service Connection:")
            if outputs.has_public_ip and outputs.fqdn:
                click.echo(f"  Host: {outputs.fqdn}")
            else:
                click.echo(f"  Host: {outputs.private_ip} (via VPN/private network)")
            click.echo(f"  Ports: {parameters.service_ports}")

        click.echo()
        click.echo("Console Access (Azure Portal):")
        click.echo(f"  Serial Console: {outputs.serial_console_url}")
        click.echo(f"  Run Command: {outputs.run_command_url}")
        if outputs.cmk_enabled:
            click.echo()
            click.echo("Encryption (CMK):")
            click.echo(f"  Key Vault: {outputs.key_vault_name}")
            click.echo("  Disks: Encrypted with customer-managed keys")
            click.echo("  Encryption at Host: Enabled")

        click.echo()
        click.echo(SEPARATOR)
        transfer_hint = (
            f"vmdeploy transfer -g {config.resource_group} -n {config.vm_name} "
            f"-t ./app:/home/{parameters.service_user}"
        )
        if update:
            click.echo("Update Summary")
            click.echo(SEPARATOR)
            click.echo("The following were updated (if changed):")
            click.echo(f"  - VM size: {config.vm_size}")
            click.echo("  - NSG inbound port rules")
            click.echo("  - Alert configurations")
            click.echo("  - Entra ID role assignments")
            click.echo()
            click.echo("NOT changed:")
            if outputs.has_public_ip:
                click.echo("  - Public IP and DNS (preserved)")
            click.echo("  - Data disk contents")
            click.echo("  - Admin password")
            click.echo("  - Cloud-init configuration")
            click.echo()
            click.echo("To update application files:")
            click.echo(f"  {transfer_hint}")
        else:
            click.echo("Next Steps")
            click.echo(SEPARATOR)
            click.echo("1. Upload your application files:")
            click.echo(f"   {transfer_hint}")
            click.echo("2. Configure and start your service via Run Command.")
        click.echo(SEPARATOR)


__all__ = [
    "ADMIN_PASSWORD_ENV",
    "DeployOrchestrator",
    "DeployResult",
    "resolve_admin_password",
    "validate_deploy_config",
]
