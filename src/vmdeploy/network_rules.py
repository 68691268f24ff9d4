"""Network security rule rendering.

Builds the NSG rule set the template will create from the parameters
file's inbound port rules plus the SSH posture. The template performs the
same translation; rendering it here lets the deploy plan show the exact
rule set and reject conflicts before anything is submitted.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from rich.table import Table

from vmdeploy.exceptions import ValidationError
from vmdeploy.parameters import SSH_RULE_PRIORITY, InboundPortRule

SSH_PORT = "22"


@dataclass(frozen=True)
class SecurityRule:
    """One inbound NSG security rule."""

    name: str
    priority: int
    access: str
    port_range: str
    source_address_prefixes: tuple[str, ...]
    protocol: str = "Tcp"
    direction: str = "Inbound"

    @property
    def is_allow(self) -> bool:
        return self.access == "Allow"


def ssh_rule(enable_ssh: bool, ssh_source: str | None) -> SecurityRule:
    """SSH is allowed only when explicitly enabled with a source range."""
    if enable_ssh and ssh_source:
        return SecurityRule(
            name="AllowSSH",
            priority=SSH_RULE_PRIORITY,
            access="Allow",
            port_range=SSH_PORT,
            source_address_prefixes=(ssh_source,),
        )
    return SecurityRule(
        name="DenySSH",
        priority=SSH_RULE_PRIORITY,
        access="Deny",
        port_range=SSH_PORT,
        source_address_prefixes=("*",),
    )


def build_security_rules(
    inbound_ports: Iterable[InboundPortRule],
    *,
    enable_ssh: bool = False,
    ssh_source: str | None = None,
) -> list[SecurityRule]:
    """Translate inbound port rules 1:1 and append the SSH rule.

    Returns:
        Rules sorted by priority (evaluation order)

    Raises:
        ValidationError: If a rule name or priority collides with the SSH rule
    """
    ssh = ssh_rule(enable_ssh, ssh_source)
    rules = []
    for port in inbound_ports:
        if port.name in ("AllowSSH", "DenySSH"):
            raise ValidationError(f"Inbound rule name '{port.name}' is reserved")
        if port.priority == ssh.priority:
            raise ValidationError(
                f"Inbound rule '{port.name}' uses priority {ssh.priority}, reserved for SSH"
            )
        rules.append(
            SecurityRule(
                name=port.name,
                priority=port.priority,
                access="Allow",
                port_range=port.port_range,
                source_address_prefixes=tuple(port.source_address_prefixes),
            )
        )
    rules.append(ssh)
    return sorted(rules, key=lambda r: r.priority)


def rules_table(rules: list[SecurityRule]) -> Table:
    table = Table(title="Inbound Security Rules", show_header=True, header_style="bold")
    table.add_column("Priority", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Access")
    table.add_column("Ports")
    table.add_column("Sources")
    for rule in rules:
        access = "[green]Allow[/green]" if rule.is_allow else "[red]Deny[/red]"
        table.add_row(
            str(rule.priority),
            rule.name,
            access,
            rule.port_range,
            ", ".join(rule.source_address_prefixes),
        )
    return table


__all__ = ["SSH_PORT", "SecurityRule", "build_security_rules", "rules_table", "ssh_rule"]
