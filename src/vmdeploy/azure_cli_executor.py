"""Standardized Azure CLI subprocess execution with retry logic.

Provides run_az_command(), a thin wrapper around subprocess.run that adds
automatic retry with exponential backoff for transient Azure CLI failures
(CalledProcessError, TimeoutExpired). With check=False a nonzero exit is
retried only when stderr carries a throttling, server-side or network
marker; a NotFound or validation error comes straight back to the caller.
Read-only callers get the retries; mutating callers pass max_attempts=1 so
a create or delete is never issued twice behind their back.

Usage:
    from vmdeploy.azure_cli_executor import run_az_command

    result = run_az_command(["az", "group", "show", "--name", "rg1"], check=False)

    result = run_az_command(
        ["az", "deployment", "group", "create", ...], timeout=3600, max_attempts=1
    )
"""

import logging
import subprocess

from vmdeploy.log_sanitizer import LogSanitizer
from vmdeploy.retry_config import get_retry_config
from vmdeploy.retry_handler import retry_with_exponential_backoff

logger = logging.getLogger(__name__)

# HTTP 408/429/5xx as the Azure CLI reports them, plus requests' network errors
TRANSIENT_ERROR_MARKERS = (
    "TooManyRequests",
    "(429)",
    "throttl",
    "RequestTimeout",
    "InternalServerError",
    "BadGateway",
    "ServiceUnavailable",
    "GatewayTimeout",
    "Connection aborted",
    "Connection reset",
    "ConnectionError",
    "Max retries exceeded",
)


class _TransientFailure(Exception):
    """Nonzero exit with a transient marker; carries the result for the last attempt."""

    def __init__(self, result: subprocess.CompletedProcess[str]):
        super().__init__(result.stderr)
        self.result = result


def is_transient_failure(stderr: str | None) -> bool:
    """True if az stderr looks like throttling, a 5xx or a dropped connection."""
    if not stderr:
        return False
    lowered = stderr.lower()
    return any(marker.lower() in lowered for marker in TRANSIENT_ERROR_MARKERS)


def run_az_command(
    cmd: list[str],
    *,
    timeout: int | None = 60,
    max_attempts: int | None = None,
    check: bool = True,
    input_text: str | None = None,
) -> subprocess.CompletedProcess[str]:
    """Execute an Azure CLI command with retry logic.

    Args:
        cmd: Command list starting with "az", e.g. ["az", "vm", "list"]
        timeout: Subprocess timeout in seconds (default: 60, None for no limit)
        max_attempts: Number of attempts (default: from RetryConfig)
        check: If True, raise CalledProcessError on non-zero exit (default: True)
        input_text: Optional text passed on stdin (e.g. ``@-`` payloads)

    Returns:
        subprocess.CompletedProcess with stdout/stderr. With check=False this
        is the last attempt's result when transient failures ran out of retries.

    Raises:
        subprocess.CalledProcessError: After retries exhausted (when check=True)
        subprocess.TimeoutExpired: After retries exhausted
        FileNotFoundError: If the executable is not installed
    """
    config = get_retry_config()
    attempts = max_attempts or config.azure_cli_max_attempts

    @retry_with_exponential_backoff(
        max_attempts=attempts,
        initial_delay=config.azure_cli_initial_delay,
        max_delay=config.azure_cli_max_delay,
        retryable_exceptions=(
            subprocess.CalledProcessError,
            subprocess.TimeoutExpired,
            _TransientFailure,
        ),
    )
    def _run() -> subprocess.CompletedProcess[str]:
        logger.debug(f"Running: {LogSanitizer.sanitize_command(cmd)}")
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=check,
            timeout=timeout,
            input=input_text,
        )
        if result.returncode != 0 and is_transient_failure(result.stderr):
            raise _TransientFailure(result)
        return result

    try:
        return _run()
    except _TransientFailure as e:
        return e.result


def run_streaming(cmd: list[str], *, env: dict[str, str] | None = None) -> int:
    """Run a command with output streamed to the terminal (azcopy progress).

    Returns:
        Process exit code
    """
    logger.debug(f"Running: {LogSanitizer.sanitize_command(cmd)}")
    result = subprocess.run(cmd, check=False, env=env)
    return result.returncode


__all__ = ["TRANSIENT_ERROR_MARKERS", "is_transient_failure", "run_az_command", "run_streaming"]
