"""Parameters file loader.

The parameters file uses the ARM deployment parameters layout so the same
file can be handed to ``az deployment group create`` directly:

    {
      "parameters": {
        "projectName":  {"value": "hfm"},
        "serviceUser":  {"value": "hfm"},
        "servicePorts": {"value": "8080 (HTTP), 8443 (HTTPS)"},
        "inboundPorts": {"value": [
          {"name": "AllowHTTP", "portRange": "8080",
           "sourceAddressPrefixes": ["10.0.0.0/8"], "priority": 1010}
        ]}
      }
    }

Missing keys (or JSON nulls) fall back to defaults; only a missing file or
malformed content is an error.
"""

import ipaddress
import json
import logging
import re
from pathlib import Path
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from vmdeploy.exceptions import ConfigNotFoundError, ParametersError

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_USER = "appuser"
DEFAULT_PROJECT_NAME = "vm"

# Priority used by the template's own SSH rule
SSH_RULE_PRIORITY = 1000

_PORT_RANGE = re.compile(r"^(\*|\d{1,5}(-\d{1,5})?)$")
# Azure service tags such as VirtualNetwork, AzureLoadBalancer, Internet, Storage.CanadaCentral
_SERVICE_TAG = re.compile(r"^(\*|[A-Za-z][A-Za-z0-9]*(\.[A-Za-z0-9]+)?)$")


class InboundPortRule(BaseModel):
    """One inbound allow rule, translated 1:1 into an NSG security rule."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str = Field(min_length=1, max_length=80)
    port_range: str = Field(alias="portRange")
    source_address_prefixes: list[str] = Field(alias="sourceAddressPrefixes", min_length=1)
    priority: int = Field(ge=100, le=4096)

    @field_validator("port_range", mode="before")
    @classmethod
    def _coerce_port_range(cls, value: Any) -> str:
        if isinstance(value, int):
            value = str(value)
        if not isinstance(value, str) or not _PORT_RANGE.match(value.strip()):
            raise ValueError(f"invalid port range: {value!r}")
        value = value.strip()
        if value != "*":
            bounds = [int(p) for p in value.split("-")]
            if any(not 1 <= p <= 65535 for p in bounds) or bounds != sorted(bounds):
                raise ValueError(f"invalid port range: {value!r}")
        return value

    @field_validator("source_address_prefixes")
    @classmethod
    def _validate_prefixes(cls, prefixes: list[str]) -> list[str]:
        for prefix in prefixes:
            if _SERVICE_TAG.match(prefix):
                continue
            try:
                ipaddress.ip_network(prefix, strict=False)
            except ValueError as e:
                raise ValueError(f"invalid source address prefix: {prefix!r}") from e
        return prefixes

    def to_template(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class ProjectParameters(BaseModel):
    """Project-level settings resolved from the parameters file."""

    model_config = ConfigDict(frozen=True)

    service_user: str = DEFAULT_SERVICE_USER
    project_name: str = DEFAULT_PROJECT_NAME
    service_ports: str = ""
    inbound_ports: list[InboundPortRule] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_rules(self) -> "ProjectParameters":
        names = [rule.name for rule in self.inbound_ports]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"duplicate inbound port rule names: {sorted(duplicates)}")
        priorities = [rule.priority for rule in self.inbound_ports]
        if SSH_RULE_PRIORITY in priorities:
            raise ValueError(f"priority {SSH_RULE_PRIORITY} is reserved for the SSH rule")
        if len(set(priorities)) != len(priorities):
            raise ValueError("inbound port rule priorities must be unique")
        return self

    def inbound_ports_template(self) -> list[dict[str, Any]]:
        return [rule.to_template() for rule in self.inbound_ports]


def _read_document(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigNotFoundError(f"Parameters file not found: {path}")
    try:
        document = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ParametersError(f"Invalid JSON in parameters file {path}: {e}") from e
    if not isinstance(document, dict):
        raise ParametersError(f"Parameters file {path} must contain a JSON object")
    return document


def _value(parameters: dict[str, Any], key: str) -> Any:
    entry = parameters.get(key)
    if isinstance(entry, dict):
        return entry.get("value")
    return None


def load_parameters(path: Path | None) -> ProjectParameters:
    """Load project parameters, applying defaults for missing values.

    Args:
        path: Parameters file, or None for pure defaults

    Returns:
        ProjectParameters

    Raises:
        ConfigNotFoundError: If ``path`` is given but does not exist
        ParametersError: If the file or a port rule record is malformed
    """
    if path is None:
        return ProjectParameters()

    document = _read_document(path)
    parameters = document.get("parameters") or {}

    values: dict[str, Any] = {}
    for field_name, key in (
        ("project_name", "projectName"),
        ("service_user", "serviceUser"),
        ("service_ports", "servicePorts"),
        ("inbound_ports", "inboundPorts"),
    ):
        value = _value(parameters, key)
        if value is not None:
            values[field_name] = value

    try:
        loaded = ProjectParameters(**values)
    except ValidationError as e:
        raise ParametersError(f"Invalid parameters in {path}: {e}") from e

    logger.debug(
        f"Loaded parameters from {path}: project={loaded.project_name} "
        f"service_user={loaded.service_user} inbound_rules={len(loaded.inbound_ports)}"
    )
    return loaded


def read_service_user(path: Path) -> str | None:
    """Return serviceUser from a parameters file, or None if it is not set.

    Raises:
        ConfigNotFoundError: If the file does not exist
    """
    document = _read_document(path)
    value = _value(document.get("parameters") or {}, "serviceUser")
    return str(value) if value else None


__all__ = [
    "DEFAULT_PROJECT_NAME",
    "DEFAULT_SERVICE_USER",
    "SSH_RULE_PRIORITY",
    "InboundPortRule",
    "ProjectParameters",
    "load_parameters",
    "read_service_user",
]
