"""Log sanitization module for preventing secret leakage.

Commands issued by vmdeploy routinely carry secrets: the VM admin password
on first deployment, user delegation SAS tokens in azcopy URLs and in the
run-command download script, and the base64 cloud-init payload. This module
redacts them before anything is logged or echoed.
"""

import re
from re import Pattern
from typing import Any


class LogSanitizer:
    """Sanitize sensitive data from logs, error messages and command lines.

    All methods are class methods and can be called without instantiation.
    """

    REDACTED = "[REDACTED]"

    # Order matters: more specific patterns first
    SECRET_PATTERNS: dict[str, Pattern] = {
        # adminPassword=... in template parameter lists
        "admin_password": re.compile(r"(adminPassword=)([^\s\"']+)", re.IGNORECASE),
        "password": re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^\s"\'&,\)]+)', re.IGNORECASE),
        # SAS signature inside URLs or bare tokens
        "sas_signature": re.compile(r"([?&]?sig=)([^&\s\"']+)", re.IGNORECASE),
        "sas_token_assignment": re.compile(
            r"(SAS_TOKEN\s*=\s*['\"]?)([^'\"\s]+)", re.IGNORECASE
        ),
        "authorization_bearer": re.compile(r"(Authorization:\s*Bearer\s+)([^\s]+)", re.IGNORECASE),
        "access_token": re.compile(
            r'(access[_-]?token["\']?\s*[:=]\s*["\']?)([^\s"\'&,\)]+)', re.IGNORECASE
        ),
        # Base64 cloud-init payload is large and may embed secrets
        "custom_data": re.compile(r"(customData=)([A-Za-z0-9+/=]{16,})"),
    }

    # CLI flags whose following argument is always a secret
    SENSITIVE_FLAGS: frozenset[str] = frozenset({"--password", "--sas-token"})

    @classmethod
    def sanitize(cls, message: str) -> str:
        """Sanitize message by redacting sensitive patterns.

        Examples:
            >>> LogSanitizer.sanitize("adminPassword=Hunter2Hunter2!")
            'adminPassword=[REDACTED]'
            >>> LogSanitizer.sanitize("https://a.blob.core.windows.net/c?sv=2022&sig=abc%3D")
            'https://a.blob.core.windows.net/c?sv=2022&sig=[REDACTED]'
        """
        if not isinstance(message, str):
            message = str(message)

        result = message
        for pattern in cls.SECRET_PATTERNS.values():
            result = pattern.sub(r"\1" + cls.REDACTED, result)
        return result

    @classmethod
    def sanitize_command(cls, cmd: list[str]) -> str:
        """Render a command list as a single loggable string with secrets masked.

        Examples:
            >>> LogSanitizer.sanitize_command(["az", "vm", "user", "update", "--password", "x"])
            'az vm user update --password [REDACTED]'
        """
        rendered: list[str] = []
        mask_next = False
        for arg in cmd:
            if mask_next:
                rendered.append(cls.REDACTED)
                mask_next = False
                continue
            if arg in cls.SENSITIVE_FLAGS:
                mask_next = True
            rendered.append(cls.sanitize(arg))
        return " ".join(rendered)

    @classmethod
    def sanitize_dict(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Sanitize dictionary values recursively.

        Keys containing password, token, secret or customData are redacted.
        """
        sensitive_words = ("password", "token", "secret", "customdata", "sas")

        result: dict[str, Any] = {}
        for key, value in data.items():
            key_lower = key.lower()
            if any(word in key_lower for word in sensitive_words):
                result[key] = cls.REDACTED
            elif isinstance(value, dict):
                result[key] = cls.sanitize_dict(value)
            elif isinstance(value, str):
                result[key] = cls.sanitize(value)
            else:
                result[key] = value
        return result


__all__ = ["LogSanitizer"]
