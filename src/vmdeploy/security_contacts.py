"""Defender for Cloud security contact configuration.

Sets the subscription's ``default`` security contact so high severity
alerts are e-mailed, optionally to subscription owners as well.
"""

import json
import logging
import shlex
from dataclasses import dataclass
from typing import Any

import click

from vmdeploy.azure_platform import AzurePlatform
from vmdeploy.exceptions import ValidationError
from vmdeploy.interaction_handler import InteractionHandler

logger = logging.getLogger(__name__)

ALERT_NOTIFICATIONS = {"state": "On", "minimalSeverity": "High"}
NOTIFIED_ROLES = ["Owner", "ServiceAdmin"]
PORTAL_URL = (
    "https://portal.azure.com/#blade/Microsoft_Azure_Security/SecurityMenuBlade/SecurityContacts"
)
SEPARATOR = "=" * 40


def notifications_by_role(notify_admins: bool) -> dict[str, Any]:
    if notify_admins:
        return {"state": "On", "roles": list(NOTIFIED_ROLES)}
    return {"state": "Off", "roles": []}


@dataclass(frozen=True)
class SecurityContactConfig:
    email: str
    phone: str | None = None
    notify_admins: bool = True
    dry_run: bool = False
    assume_yes: bool = False

    def command(self) -> list[str]:
        """The equivalent az command line, for display."""
        cmd = ["az", "security", "contact", "create", "--name", "default", "--emails", self.email]
        if self.phone:
            cmd += ["--phone", self.phone]
        cmd += [
            "--alert-notifications",
            json.dumps(ALERT_NOTIFICATIONS, separators=(",", ":")),
            "--notifications-by-role",
            json.dumps(notifications_by_role(self.notify_admins), separators=(",", ":")),
        ]
        return cmd


def configure_security_contacts(
    platform: AzurePlatform, interaction: InteractionHandler, config: SecurityContactConfig
) -> bool:
    """Create or replace the default security contact.

    Returns True when the contact was written, False for dry-run or a
    declined confirmation.

    Raises:
        ValidationError: If no email is given
        AzureCLIError: If the contact cannot be created
    """
    if not config.email:
        raise ValidationError("Security contact email is required (-e/--email)")

    account = platform.show_account() or {}
    click.echo()
    click.echo(SEPARATOR)
    if config.dry_run:
        click.echo("Security Contact Configuration (DRY RUN)")
    else:
        click.echo("Security Contact Configuration")
    click.echo(SEPARATOR)
    click.echo()
    click.echo(f"Subscription: {account.get('name', 'unknown')}")
    click.echo(f"Subscription ID: {account.get('id', 'unknown')}")
    click.echo()
    click.echo("Settings:")
    click.echo(f"  Email: {config.email}")
    if config.phone:
        click.echo(f"  Phone: {config.phone}")
    click.echo(f"  Notify Admins: {str(config.notify_admins).lower()}")
    click.echo()
    click.echo("This will configure:")
    click.echo("  - Security contact email for alerts")
    click.echo("  - High severity alert notifications enabled")
    if config.notify_admins:
        click.echo("  - Subscription owner notifications enabled")
    click.echo()
    click.echo(SEPARATOR)

    if config.dry_run:
        click.echo()
        click.echo("Command that would be executed:")
        click.echo()
        click.echo(f"  {shlex.join(config.command())}")
        click.echo()
        click.echo("No changes were made.")
        return False

    if not config.assume_yes and not interaction.confirm("Continue with configuration?"):
        click.echo("Configuration cancelled")
        return False

    click.echo()
    click.echo("Configuring security contacts...")
    platform.create_security_contact(
        config.email,
        ALERT_NOTIFICATIONS,
        notifications_by_role(config.notify_admins),
        phone=config.phone,
    )
    logger.debug(f"Security contact set to {config.email}")

    click.echo()
    click.echo(SEPARATOR)
    click.echo("Configuration Complete!")
    click.echo(SEPARATOR)
    click.echo()
    click.echo("You can verify the settings in Azure Portal:")
    click.echo(f"  {PORTAL_URL}")
    click.echo()
    click.echo("Or via CLI:")
    click.echo("  az security contact list -o table")
    return True


__all__ = [
    "ALERT_NOTIFICATIONS",
    "SecurityContactConfig",
    "configure_security_contacts",
    "notifications_by_role",
]
