"""Move a deployment target to another subscription in the same tenant.

Resources are moved with ``az resource move`` into a freshly created group
of the same name in the target subscription; the then-empty source group
is deleted without waiting. Cross-tenant moves are refused.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any

import click
from rich.console import Console

from vmdeploy.azure_platform import AzurePlatform
from vmdeploy.exceptions import (
    AzureCLIError,
    PreconditionError,
    ResourceGroupNotFoundError,
    SubscriptionError,
    ValidationError,
)
from vmdeploy.interaction_handler import InteractionHandler
from vmdeploy.resource_group import probe_resource_group, resources_table

logger = logging.getLogger(__name__)

SUBSCRIPTION_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
)
SEPARATOR = "=" * 40


def group_id(subscription_id: str, resource_group: str) -> str:
    return f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"


def resolve_subscription(platform: AzurePlatform, name_or_id: str) -> dict[str, Any]:
    """Look up a subscription by id or display name.

    Raises:
        SubscriptionError: If no accessible subscription matches
    """
    if SUBSCRIPTION_ID_PATTERN.match(name_or_id):
        account = platform.show_account(name_or_id)
        if not account:
            raise SubscriptionError(
                f"Cannot access target subscription '{name_or_id}'. "
                "Make sure you have access to this subscription."
            )
        return account

    click.echo(f"Resolving subscription name '{name_or_id}'...")
    subscriptions = platform.list_subscriptions()
    for subscription in subscriptions:
        if subscription.get("name") == name_or_id:
            return subscription
    available = ", ".join(
        f"{s.get('name')} ({s.get('id')})" for s in subscriptions
    ) or "none"
    raise SubscriptionError(
        f"Could not find subscription with name '{name_or_id}'. Available: {available}"
    )


@dataclass(frozen=True)
class MoveConfig:
    resource_group: str
    target_subscription: str
    dry_run: bool = False
    assume_yes: bool = False


@dataclass
class MoveResult:
    source_subscription: str
    target_subscription: str
    resource_ids: tuple[str, ...]
    validated: bool = False
    moved: bool = False
    cancelled: bool = False


class SubscriptionMover:
    """Move every resource in a group to another subscription."""

    def __init__(
        self,
        platform: AzurePlatform,
        interaction: InteractionHandler,
        console: Console | None = None,
    ):
        self.platform = platform
        self.interaction = interaction
        self.console = console or Console()

    def move(self, config: MoveConfig) -> MoveResult:
        """Move ``config.resource_group`` to the target subscription.

        Raises:
            ValidationError: If the target is the current subscription
            SubscriptionError: If the target is missing or in another tenant
            ResourceGroupNotFoundError: If the group is missing at the source
            PreconditionError: If the group already exists at the target
        """
        current = self.platform.show_account()
        if not current:
            raise SubscriptionError("Could not read the current subscription (az account show)")
        target = resolve_subscription(self.platform, config.target_subscription)
        if target.get("id") == current.get("id"):
            raise ValidationError("Target subscription is the current subscription")
        if target.get("tenantId") != current.get("tenantId"):
            raise SubscriptionError(
                "Target subscription is in a different tenant "
                f"(current: {current.get('tenantId')}, target: {target.get('tenantId')}). "
                "Cross-tenant moves are not supported; redeploy instead."
            )

        state = probe_resource_group(self.platform, config.resource_group)
        if not state.exists:
            raise ResourceGroupNotFoundError(
                f"Resource group '{config.resource_group}' does not exist "
                "in current subscription"
            )
        if self.platform.show_group(config.resource_group, subscription=target["id"]):
            raise PreconditionError(
                f"Resource group '{config.resource_group}' already exists in target "
                "subscription. Delete it first or choose a different resource group name."
            )

        result = MoveResult(
            source_subscription=current["id"],
            target_subscription=target["id"],
            resource_ids=state.resource_ids,
        )

        click.echo()
        click.echo(SEPARATOR)
        click.echo(
            "Azure Subscription Move (DRY RUN)" if config.dry_run else "Azure Subscription Move"
        )
        click.echo(SEPARATOR)
        click.echo()
        click.echo("Source:")
        click.echo(f"  Subscription: {current.get('name')}")
        click.echo(f"  ID: {current['id']}")
        click.echo()
        click.echo("Target:")
        click.echo(f"  Subscription: {target.get('name')}")
        click.echo(f"  ID: {target['id']}")
        click.echo()
        click.echo(f"Resource Group: {config.resource_group}")
        click.echo(f"Resources to move: {len(state.resource_ids)}")
        if state.resources:
            self.console.print(resources_table(state))
        click.echo(SEPARATOR)

        click.echo()
        click.echo("Validating move operation...")
        try:
            self.platform.validate_move(
                group_id(current["id"], config.resource_group),
                list(state.resource_ids),
                group_id(target["id"], config.resource_group),
            )
            result.validated = True
        except AzureCLIError as e:
            self.interaction.show_warning(
                "Move validation returned an error (this may be expected for some "
                f"resource types): {e.stderr or e}"
            )

        if config.dry_run:
            click.echo()
            click.echo("DRY RUN: Would perform the following actions:")
            click.echo()
            click.echo(
                f"  1. Create resource group '{config.resource_group}' in target subscription"
            )
            click.echo(f"  2. Move {len(state.resource_ids)} resources to target subscription")
            click.echo("  3. Delete empty resource group from source subscription")
            click.echo()
            click.echo("Estimated time: 5-15 minutes (varies by resource types)")
            click.echo()
            click.echo("No changes were made.")
            return result

        if not config.assume_yes and not self.interaction.confirm("Proceed with move?"):
            click.echo("Move cancelled")
            result.cancelled = True
            return result

        click.echo()
        click.echo("Step 1/3: Creating resource group in target subscription...")
        self.platform.create_group(
            config.resource_group, state.location or "", subscription=target["id"]
        )
        if state.resource_ids:
            click.echo("Step 2/3: Moving resources (this may take 5-15 minutes)...")
            self.platform.move_resources(
                list(state.resource_ids), config.resource_group, target["id"]
            )
        else:
            click.echo("Step 2/3: No resources to move")
        click.echo("Step 3/3: Cleaning up source resource group...")
        self.platform.delete_group(config.resource_group, wait=False)
        result.moved = True
        logger.debug(
            f"Moved {len(state.resource_ids)} resources from {current['id']} to {target['id']}"
        )

        click.echo()
        click.echo(SEPARATOR)
        click.echo("Move Complete!")
        click.echo(SEPARATOR)
        click.echo()
        click.echo("Resources have been moved to:")
        click.echo(f"  Subscription: {target.get('name')}")
        click.echo(f"  Resource Group: {config.resource_group}")
        click.echo()
        click.echo("To work with these resources, switch subscriptions:")
        click.echo(f'  az account set --subscription "{target["id"]}"')
        click.echo()
        click.echo("Note: It may take a few minutes for all resources to be fully available.")
        click.echo(SEPARATOR)
        return result


__all__ = [
    "MoveConfig",
    "MoveResult",
    "SubscriptionMover",
    "group_id",
    "resolve_subscription",
]
