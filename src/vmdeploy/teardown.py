"""Resource group teardown.

Deletes the whole resource group, then tries to purge the soft-deleted key
vaults that were in it. The template enables purge protection, so Azure
normally refuses the purge and keeps the vault name reserved for the
retention period; deployments therefore give every new vault a fresh name.
No snapshot or backup is taken; transfer data off the VM first.
"""

import logging
from dataclasses import dataclass, field

import click

from vmdeploy.azure_platform import AzurePlatform
from vmdeploy.exceptions import AzureCLIError
from vmdeploy.interaction_handler import InteractionHandler
from vmdeploy.resource_group import probe_resource_group

logger = logging.getLogger(__name__)

DELETED_RESOURCE_KINDS = (
    "Virtual Machine",
    "Disks (OS and data)",
    "Network resources",
    "Storage account",
    "Key Vault (if CMK enabled)",
    "Alerts and action groups",
)


def _purge_protected(error: AzureCLIError) -> bool:
    text = f"{error} {error.stderr}".lower()
    return "purge protection" in text or "purgeprotection" in text


@dataclass
class TeardownResult:
    """What a destroy run did."""

    resource_group: str
    existed: bool
    dry_run: bool = False
    cancelled: bool = False
    deleted: bool = False
    purged_vaults: list[str] = field(default_factory=list)
    purge_failures: list[str] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.existed


class TeardownOrchestrator:
    """Delete a deployment target and purge its key vaults."""

    def __init__(self, platform: AzurePlatform, interaction: InteractionHandler):
        self.platform = platform
        self.interaction = interaction

    def _print_header(self, resource_group: str, exists: bool, dry_run: bool) -> None:
        click.echo("=" * 40)
        click.echo("Azure VM Tear Down (DRY RUN)" if dry_run else "Azure VM Tear Down")
        click.echo("=" * 40)
        click.echo(f"Resource Group: {resource_group}")
        click.echo(f"Resource Group Exists: {str(exists).lower()}")
        click.echo()
        click.echo("This will DELETE all resources in the group:")
        for kind in DELETED_RESOURCE_KINDS:
            click.echo(f"  - {kind}")
        click.echo("=" * 40)

    def destroy(
        self, resource_group: str, *, dry_run: bool = False, assume_yes: bool = False
    ) -> TeardownResult:
        """Tear down ``resource_group``.

        A missing group is a successful no-op. Dry-run only reads.

        Raises:
            AzureCLIError: If the group deletion itself fails
        """
        state = probe_resource_group(self.platform, resource_group)
        result = TeardownResult(
            resource_group=resource_group, existed=state.exists, dry_run=dry_run
        )
        self._print_header(resource_group, state.exists, dry_run)

        if dry_run:
            click.echo()
            if state.exists:
                click.echo(f"DRY RUN: Would delete resource group '{resource_group}'")
            else:
                click.echo(
                    f"DRY RUN: Resource group '{resource_group}' does not exist, nothing to delete"
                )
            return result

        if not state.exists:
            click.echo()
            click.echo(f"Resource group '{resource_group}' does not exist.")
            return result

        if not assume_yes and not self.interaction.confirm(
            "Are you sure you want to destroy all resources?"
        ):
            click.echo("Destroy cancelled")
            result.cancelled = True
            return result

        # Vault names must be captured before the group (and its listing) is gone
        vaults = self.platform.list_key_vaults(resource_group)

        click.echo()
        click.echo(f"Deleting resource group '{resource_group}'...")
        click.echo("(This may take a few minutes)")
        self.platform.delete_group(resource_group)
        result.deleted = True

        if vaults:
            click.echo()
            click.echo("Purging soft-deleted Key Vault(s) to allow redeployment...")
        for vault in vaults:
            click.echo(f"  Purging: {vault}")
            try:
                self.platform.purge_key_vault(vault)
                result.purged_vaults.append(vault)
            except AzureCLIError as e:
                logger.debug(f"Purge of {vault} failed: {e}")
                if _purge_protected(e):
                    click.echo(
                        "    (purge protection is enabled; the name stays reserved until the "
                        "soft-delete retention period ends)"
                    )
                else:
                    click.echo("    (already purged or not found)")
                result.purge_failures.append(vault)

        click.echo()
        click.echo("=" * 40)
        click.echo("Tear down complete!")
        click.echo("=" * 40)
        return result


__all__ = ["TeardownOrchestrator", "TeardownResult"]
