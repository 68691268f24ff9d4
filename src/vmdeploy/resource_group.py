"""Resource group state probing."""

import logging
from dataclasses import dataclass, field

from rich.table import Table

from vmdeploy.azure_platform import AzurePlatform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceGroupState:
    """Result of probing a resource group.

    ``resources`` holds (type, name) pairs and is empty when the group
    does not exist.
    """

    name: str
    exists: bool
    location: str | None = None
    resources: tuple[tuple[str, str], ...] = field(default_factory=tuple)
    resource_ids: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.resources

    def resource_names(self, resource_type: str) -> list[str]:
        wanted = resource_type.lower()
        return [name for rtype, name in self.resources if rtype.lower() == wanted]


def probe_resource_group(platform: AzurePlatform, name: str) -> ResourceGroupState:
    """Return whether ``name`` exists and what it contains. Read-only."""
    group = platform.show_group(name)
    if not group:
        logger.debug(f"Resource group {name} not found")
        return ResourceGroupState(name=name, exists=False)

    listed = platform.list_resources(name)
    resources = tuple((r.get("type", ""), r.get("name", "")) for r in listed)
    logger.debug(f"Resource group {name} exists with {len(resources)} resources")
    return ResourceGroupState(
        name=name,
        exists=True,
        location=group.get("location"),
        resources=resources,
        resource_ids=tuple(r["id"] for r in listed if r.get("id")),
    )


def resources_table(state: ResourceGroupState) -> Table:
    table = Table(
        title=f"Resources in {state.name}", show_header=True, header_style="bold"
    )
    table.add_column("Type", style="cyan")
    table.add_column("Name", style="yellow")
    for rtype, name in state.resources:
        table.add_row(rtype, name)
    return table


__all__ = ["ResourceGroupState", "probe_resource_group", "resources_table"]
