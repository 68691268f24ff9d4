"""Exception hierarchy for vmdeploy.

Validation errors fail fast before any mutating call. Precondition errors
describe cloud state that does not match what the operation expects.
AzureCLIError carries the platform's own diagnostic verbatim.
"""


class VMDeployError(Exception):
    """Base exception for all vmdeploy errors."""

    pass


class ValidationError(VMDeployError):
    """Invalid or missing input detected before touching Azure."""

    pass


class ConfigNotFoundError(ValidationError):
    """A referenced configuration file does not exist."""

    pass


class ParametersError(ValidationError):
    """Parameters file is malformed."""

    pass


class InvalidTransferSpecError(ValidationError):
    """Transfer path is not in LOCAL:REMOTE form or the local path is missing."""

    pass


class QuickTransferError(ValidationError):
    """Quick transfer constraints violated (directory, size, count)."""

    pass


class PreconditionError(VMDeployError):
    """Cloud state does not allow the requested operation."""

    pass


class FeatureNotRegisteredError(PreconditionError):
    """Required subscription feature is not registered."""

    pass


class ResourceGroupNotFoundError(PreconditionError):
    """Resource group does not exist where the operation expects it."""

    pass


class VMNotFoundError(PreconditionError):
    """Target VM does not exist in the resource group."""

    pass


class StorageAccountNotFoundError(PreconditionError):
    """Resource group has no diagnostics storage account."""

    pass


class SubscriptionError(PreconditionError):
    """Target subscription is missing, inaccessible or in another tenant."""

    pass


class AzureCLIError(VMDeployError):
    """An Azure CLI (or azcopy) invocation failed."""

    def __init__(
        self,
        message: str,
        cmd: list[str] | None = None,
        returncode: int = 1,
        stderr: str = "",
    ):
        super().__init__(message)
        self.cmd = cmd or []
        self.returncode = returncode
        self.stderr = stderr


class AuthenticationExpiredError(AzureCLIError):
    """Azure CLI token expired or requires interactive re-authentication."""

    pass


class DeploymentError(AzureCLIError):
    """Template deployment failed (validation, quota or partial failure)."""

    def __init__(
        self,
        message: str,
        cmd: list[str] | None = None,
        returncode: int = 1,
        stderr: str = "",
        quota_exceeded: bool = False,
    ):
        super().__init__(message, cmd=cmd, returncode=returncode, stderr=stderr)
        self.quota_exceeded = quota_exceeded


class TransferError(VMDeployError):
    """File transfer to the VM failed."""

    pass


class TransferInterruptedError(TransferError):
    """Transfer was interrupted by a termination signal."""

    pass


__all__ = [
    "AuthenticationExpiredError",
    "AzureCLIError",
    "ConfigNotFoundError",
    "DeploymentError",
    "FeatureNotRegisteredError",
    "InvalidTransferSpecError",
    "ParametersError",
    "PreconditionError",
    "QuickTransferError",
    "ResourceGroupNotFoundError",
    "StorageAccountNotFoundError",
    "SubscriptionError",
    "TransferError",
    "TransferInterruptedError",
    "VMDeployError",
    "VMNotFoundError",
    "ValidationError",
]
