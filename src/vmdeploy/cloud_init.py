"""Cloud-init bootstrap document rendering.

The bootstrap document is a cloud-init YAML with ``${NAME}`` placeholders.
Substitution is literal text replacement: no conditionals, no escaping.
The rendered document is base64 encoded and passed to the template as
``customData``, which Azure only honors when the VM is created.
"""

import base64
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path

from vmdeploy.exceptions import ConfigNotFoundError

logger = logging.getLogger(__name__)

ALERT_EMAIL = "ALERT_EMAIL"
SERVICE_USER = "SERVICE_USER"
SERVICE_ADMIN_USERS = "SERVICE_ADMIN_USERS"


def placeholder(name: str) -> str:
    return "${" + name + "}"


def render_bootstrap(template: str, values: Mapping[str, str]) -> str:
    """Replace every ``${NAME}`` in ``template`` with ``values[NAME]``.

    Placeholders without a value are left untouched.

    Example:
        >>> render_bootstrap("user: ${SERVICE_USER}", {"SERVICE_USER": "hfm"})
        'user: hfm'
    """
    rendered = template
    for name, value in values.items():
        rendered = rendered.replace(placeholder(name), value)
    return rendered


def encode_bootstrap(document: str) -> str:
    """Base64 encode the rendered document as a single line."""
    return base64.b64encode(document.encode("utf-8")).decode("ascii")


def build_bootstrap_values(
    alert_email: str, service_user: str, service_admins: Iterable[str]
) -> dict[str, str]:
    """Assemble the placeholder mapping.

    Entra ID login uses the full email as the Linux username, so service
    admins are passed through as a comma-joined list of emails.
    """
    return {
        ALERT_EMAIL: alert_email,
        SERVICE_USER: service_user,
        SERVICE_ADMIN_USERS: ",".join(service_admins),
    }


def load_bootstrap_template(path: Path) -> str:
    if not path.is_file():
        raise ConfigNotFoundError(f"Cloud-init file not found: {path}")
    return path.read_text()


def render_custom_data(path: Path, values: Mapping[str, str]) -> str:
    """Load, render and encode the bootstrap document in one step."""
    document = render_bootstrap(load_bootstrap_template(path), values)
    logger.debug(f"Rendered cloud-init from {path} ({len(document)} bytes)")
    return encode_bootstrap(document)


__all__ = [
    "ALERT_EMAIL",
    "SERVICE_ADMIN_USERS",
    "SERVICE_USER",
    "build_bootstrap_values",
    "encode_bootstrap",
    "load_bootstrap_template",
    "placeholder",
    "render_bootstrap",
    "render_custom_data",
]
