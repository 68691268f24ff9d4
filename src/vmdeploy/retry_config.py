"""Configuration for retry and polling behavior.

Every loop that waits on Azure reads its limits from here, so the
defaults can be tuned per environment and tests can shrink them.
"""

import os
from dataclasses import dataclass


def _optional_float(name: str) -> float | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return float(value)


@dataclass(frozen=True)
class RetryConfig:
    """Retry configuration settings.

    These settings control retry and poll behavior across vmdeploy operations.
    """

    # Azure CLI read operations
    azure_cli_max_attempts: int = 3
    azure_cli_initial_delay: float = 1.0
    azure_cli_max_delay: float = 30.0

    # Role assignment: linear backoff of attempt * step seconds
    role_assignment_max_attempts: int = 3
    role_assignment_backoff_step: float = 5.0

    # Role definition propagation poll
    role_propagation_attempts: int = 12
    role_propagation_interval: float = 5.0

    # EncryptionAtHost feature registration poll (None = wait indefinitely)
    feature_poll_interval: float = 5.0
    feature_poll_timeout: float | None = None

    @classmethod
    def from_environment(cls) -> "RetryConfig":
        """Load retry configuration from environment variables.

        Environment variables (all optional):
            VMDEPLOY_RETRY_MAX_ATTEMPTS: Azure CLI read attempts (default: 3)
            VMDEPLOY_RETRY_INITIAL_DELAY: Initial delay in seconds (default: 1.0)
            VMDEPLOY_RETRY_MAX_DELAY: Maximum delay in seconds (default: 30.0)
            VMDEPLOY_ROLE_ASSIGNMENT_ATTEMPTS: Attempts per role assignment (default: 3)
            VMDEPLOY_ROLE_ASSIGNMENT_BACKOFF: Linear backoff step in seconds (default: 5)
            VMDEPLOY_ROLE_PROPAGATION_ATTEMPTS: Role definition polls (default: 12)
            VMDEPLOY_ROLE_PROPAGATION_INTERVAL: Seconds between polls (default: 5)
            VMDEPLOY_FEATURE_POLL_INTERVAL: Seconds between feature polls (default: 5)
            VMDEPLOY_FEATURE_POLL_TIMEOUT: Overall feature poll timeout (default: none)

        Returns:
            RetryConfig with values from environment or defaults
        """
        return cls(
            azure_cli_max_attempts=int(os.getenv("VMDEPLOY_RETRY_MAX_ATTEMPTS", "3")),
            azure_cli_initial_delay=float(os.getenv("VMDEPLOY_RETRY_INITIAL_DELAY", "1.0")),
            azure_cli_max_delay=float(os.getenv("VMDEPLOY_RETRY_MAX_DELAY", "30.0")),
            role_assignment_max_attempts=int(
                os.getenv("VMDEPLOY_ROLE_ASSIGNMENT_ATTEMPTS", "3")
            ),
            role_assignment_backoff_step=float(
                os.getenv("VMDEPLOY_ROLE_ASSIGNMENT_BACKOFF", "5.0")
            ),
            role_propagation_attempts=int(
                os.getenv("VMDEPLOY_ROLE_PROPAGATION_ATTEMPTS", "12")
            ),
            role_propagation_interval=float(
                os.getenv("VMDEPLOY_ROLE_PROPAGATION_INTERVAL", "5.0")
            ),
            feature_poll_interval=float(os.getenv("VMDEPLOY_FEATURE_POLL_INTERVAL", "5.0")),
            feature_poll_timeout=_optional_float("VMDEPLOY_FEATURE_POLL_TIMEOUT"),
        )


# Global configuration instance (lazily loaded)
_config: RetryConfig | None = None


def get_retry_config() -> RetryConfig:
    """Get global retry configuration.

    Returns:
        RetryConfig instance (loaded from environment on first access)
    """
    global _config
    if _config is None:
        _config = RetryConfig.from_environment()
    return _config


def reset_retry_config() -> None:
    """Reset global retry configuration.

    Forces reload from environment on next access.
    """
    global _config
    _config = None


__all__ = ["RetryConfig", "get_retry_config", "reset_retry_config"]
