"""Entra ID access grants for the deployed VM.

Three access levels exist:

- admin: built-in "Virtual Machine Administrator Login" at VM scope (sudo)
- user: custom "Serial Console User - <vm>" role at VM and storage scope
- service admin: "Virtual Machine User Login" at VM scope plus the custom
  role at VM and storage scope (sudoers rules come from cloud-init)

The custom role is created once per VM, scoped to exactly the VM and its
boot diagnostics storage account. Role definitions are eventually
consistent, so creation is followed by a bounded existence poll.

Grants are best effort. Every assignment is retried with linear backoff;
when the retries run out the failure is logged and the batch continues, so
one bad identity never blocks the others. The outcome of every
(identity, role, scope) triple is returned in a GrantReport.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from rich.table import Table

from vmdeploy.azure_platform import AzurePlatform
from vmdeploy.exceptions import AzureCLIError, ConfigNotFoundError, ParametersError
from vmdeploy.retry_config import RetryConfig, get_retry_config
from vmdeploy.retry_handler import RetryPolicy, fixed_backoff, linear_backoff

logger = logging.getLogger(__name__)

ADMIN_LOGIN_ROLE = "Virtual Machine Administrator Login"
USER_LOGIN_ROLE = "Virtual Machine User Login"
CUSTOM_ROLE_PREFIX = "Serial Console User - "

DEFAULT_ACTIONS = (
    "Microsoft.Compute/virtualMachines/read",
    "Microsoft.Compute/virtualMachines/retrieveBootDiagnosticsData/action",
    "Microsoft.Storage/storageAccounts/read",
    "Microsoft.Storage/storageAccounts/listKeys/action",
    "Microsoft.SerialConsole/serialPorts/connect/action",
    "Microsoft.Resources/subscriptions/resourceGroups/read",
)
DEFAULT_DATA_ACTIONS = ("Microsoft.Compute/virtualMachines/login/action",)

ASSIGNMENT_EXISTS_MARKERS = ("RoleAssignmentExists", "role assignment already exists")


def custom_role_name(vm_name: str) -> str:
    return f"{CUSTOM_ROLE_PREFIX}{vm_name}"


def storage_account_id(vm_resource_id: str, storage_account_name: str) -> str:
    """Build a storage account id in the same subscription and group as the VM.

    Example:
        >>> vm = "/subscriptions/s1/resourceGroups/rg1/providers/Microsoft.Compute/vms/vm1"
        >>> storage_account_id(vm, "diag1").split("/providers/")[1]
        'Microsoft.Storage/storageAccounts/diag1'
    """
    group_scope = vm_resource_id.split("/providers/", 1)[0]
    return f"{group_scope}/providers/Microsoft.Storage/storageAccounts/{storage_account_name}"


class RoleDefinition(BaseModel):
    """Azure custom role definition document.

    Serialized by alias to the field names ``az role definition create``
    expects. Extra fields from a caller-supplied file are kept as-is.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = Field(alias="Name")
    description: str = Field(default="", alias="Description")
    actions: list[str] = Field(default_factory=list, alias="Actions")
    not_actions: list[str] = Field(default_factory=list, alias="NotActions")
    data_actions: list[str] = Field(default_factory=list, alias="DataActions")
    not_data_actions: list[str] = Field(default_factory=list, alias="NotDataActions")
    assignable_scopes: list[str] = Field(default_factory=list, alias="AssignableScopes")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


def default_role_definition(vm_name: str, scopes: list[str]) -> RoleDefinition:
    return RoleDefinition(
        name=custom_role_name(vm_name),
        description=(
            "Minimum permissions for Serial Console access with Entra ID login "
            f"to {vm_name} only"
        ),
        actions=list(DEFAULT_ACTIONS),
        data_actions=list(DEFAULT_DATA_ACTIONS),
        assignable_scopes=list(scopes),
    )


def load_role_definition(path: Path, vm_name: str, scopes: list[str]) -> RoleDefinition:
    """Load a custom role file, rewriting its Name and AssignableScopes.

    Raises:
        ConfigNotFoundError: If the file does not exist
        ParametersError: If the file is not a valid role definition
    """
    if not path.is_file():
        raise ConfigNotFoundError(f"Custom role definition not found: {path}")
    try:
        data: dict[str, Any] = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ParametersError(f"Invalid JSON in role definition {path}: {e}") from e
    if not isinstance(data, dict):
        raise ParametersError(f"Role definition {path} must contain a JSON object")

    data["Name"] = custom_role_name(vm_name)
    data["AssignableScopes"] = list(scopes)
    try:
        return RoleDefinition.model_validate(data)
    except ValidationError as e:
        raise ParametersError(f"Invalid role definition {path}: {e}") from e


@dataclass(frozen=True)
class GrantRequest:
    """Identities to grant, and the VM they get access to."""

    vm_name: str
    vm_resource_id: str
    storage_account_id: str | None
    admins: tuple[str, ...] = ()
    users: tuple[str, ...] = ()
    service_admins: tuple[str, ...] = ()
    # Identities are Entra object ids rather than sign-in names
    object_ids: bool = False

    @property
    def needs_custom_role(self) -> bool:
        return bool(self.users or self.service_admins)

    @property
    def is_empty(self) -> bool:
        return not (self.admins or self.users or self.service_admins)

    @property
    def minimal_scopes(self) -> list[str]:
        """Scopes for the custom role: the VM, plus its storage account when known."""
        return [s for s in (self.vm_resource_id, self.storage_account_id) if s]


@dataclass(frozen=True)
class GrantOutcome:
    identity: str
    role: str
    scope: str
    granted: bool
    attempts: int
    error: str | None = None


@dataclass
class GrantReport:
    """Per-assignment outcomes of one grant run."""

    outcomes: list[GrantOutcome] = field(default_factory=list)
    role_created: bool = False
    role_propagated: bool = True

    @property
    def granted(self) -> list[GrantOutcome]:
        return [o for o in self.outcomes if o.granted]

    @property
    def failed(self) -> list[GrantOutcome]:
        return [o for o in self.outcomes if not o.granted]

    @property
    def all_granted(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class GrantPolicies:
    """Retry policy per assignment and poll policy for role propagation."""

    assignment: RetryPolicy
    propagation: RetryPolicy

    @classmethod
    def from_retry_config(cls, config: RetryConfig | None = None) -> "GrantPolicies":
        config = config or get_retry_config()
        return cls(
            assignment=RetryPolicy(
                max_attempts=config.role_assignment_max_attempts,
                backoff=linear_backoff(config.role_assignment_backoff_step),
            ),
            propagation=RetryPolicy(
                max_attempts=config.role_propagation_attempts,
                backoff=fixed_backoff(config.role_propagation_interval),
            ),
        )


def _assignment_exists(error: AzureCLIError) -> bool:
    text = f"{error} {error.stderr}"
    return any(marker in text for marker in ASSIGNMENT_EXISTS_MARKERS)


class AccessGrantOrchestrator:
    """Create the custom role if needed and assign roles to identities."""

    def __init__(
        self,
        platform: AzurePlatform,
        policies: GrantPolicies | None = None,
        role_definition_file: Path | None = None,
    ):
        self.platform = platform
        self.policies = policies or GrantPolicies.from_retry_config()
        self.role_definition_file = role_definition_file

    def ensure_custom_role(self, request: GrantRequest, report: GrantReport) -> None:
        """Create the per-VM custom role unless it already exists.

        Creation failures (including a concurrent create) are warnings; the
        propagation poll then decides whether the role is usable.
        """
        name = custom_role_name(request.vm_name)
        if self.platform.role_definition_exists(name):
            logger.debug(f"Custom role '{name}' already exists")
            return

        click.echo(f"  Creating custom role '{name}'...")
        if self.role_definition_file is not None:
            definition = load_role_definition(
                self.role_definition_file, request.vm_name, request.minimal_scopes
            )
        else:
            definition = default_role_definition(request.vm_name, request.minimal_scopes)

        try:
            self.platform.create_role_definition(definition.to_json())
            report.role_created = True
        except AzureCLIError as e:
            logger.warning(f"Could not create custom role (may already exist): {e}")

        click.echo("  Waiting for role to propagate...")
        report.role_propagated = self.policies.propagation.poll(
            lambda: self.platform.role_definition_exists(name)
        )
        if report.role_propagated:
            click.echo("  Role is now available.")
        else:
            logger.warning("Role propagation timeout, continuing anyway...")

    def assign(
        self, identity: str, role: str, scope: str, *, object_id: bool = False
    ) -> GrantOutcome:
        """Assign one role, retrying with backoff. Never raises AzureCLIError."""
        attempts = 0

        def attempt() -> None:
            nonlocal attempts
            attempts += 1
            try:
                self.platform.create_role_assignment(identity, role, scope, object_id=object_id)
            except AzureCLIError as e:
                if _assignment_exists(e):
                    logger.debug(f"{role} already assigned to {identity}")
                    return
                raise

        try:
            self.policies.assignment.call(attempt, retry_on=(AzureCLIError,))
        except AzureCLIError as e:
            logger.warning(
                f"Could not assign '{role}' to {identity} after {attempts} attempts "
                f"(user may not exist): {e}"
            )
            return GrantOutcome(
                identity, role, scope, granted=False, attempts=attempts, error=str(e)
            )
        return GrantOutcome(identity, role, scope, granted=True, attempts=attempts)

    def grant(self, request: GrantRequest) -> GrantReport:
        """Apply every grant in ``request`` and report per-assignment outcomes."""
        report = GrantReport()
        if request.is_empty:
            return report

        if request.needs_custom_role:
            self.ensure_custom_role(request, report)
        role = custom_role_name(request.vm_name)
        vm_scope = request.vm_resource_id
        if request.needs_custom_role and not request.storage_account_id:
            logger.warning("No storage account scope; Serial Console boot diagnostics may fail")

        def assign(identity: str, role_name: str, scope: str) -> None:
            report.outcomes.append(
                self.assign(identity, role_name, scope, object_id=request.object_ids)
            )

        for identity in request.admins:
            click.echo(f"  Granting admin access to {identity}...")
            assign(identity, ADMIN_LOGIN_ROLE, vm_scope)

        for identity in request.users:
            click.echo(
                f"  Granting Serial Console access to {identity} "
                f"(scoped to {request.vm_name} only)..."
            )
            for scope in request.minimal_scopes:
                assign(identity, role, scope)

        for identity in request.service_admins:
            click.echo(
                f"  Granting Serial Console access to {identity} "
                f"(service admin, scoped to {request.vm_name} only)..."
            )
            assign(identity, USER_LOGIN_ROLE, vm_scope)
            for scope in request.minimal_scopes:
                assign(identity, role, scope)

        return report


def report_table(report: GrantReport) -> Table:
    table = Table(title="Role Assignments", show_header=True, header_style="bold")
    table.add_column("Identity", style="cyan")
    table.add_column("Role")
    table.add_column("Scope")
    table.add_column("Result")
    for outcome in report.outcomes:
        scope = "/".join(outcome.scope.split("/")[-2:])
        result = "[green]granted[/green]" if outcome.granted else "[red]failed[/red]"
        table.add_row(outcome.identity, outcome.role, scope, result)
    return table


__all__ = [
    "ADMIN_LOGIN_ROLE",
    "DEFAULT_ACTIONS",
    "DEFAULT_DATA_ACTIONS",
    "USER_LOGIN_ROLE",
    "AccessGrantOrchestrator",
    "GrantOutcome",
    "GrantPolicies",
    "GrantReport",
    "GrantRequest",
    "RoleDefinition",
    "custom_role_name",
    "default_role_definition",
    "load_role_definition",
    "report_table",
    "storage_account_id",
]
