"""
Error taxonomy of a backup attempt

Every stage raises one of these; the handlers translate them into kopf's
permanent/temporary errors.
"""

from typing import Optional


class BackupError(RuntimeError):
    """Base class for failures of a backup attempt."""


class InvalidBackupSpecError(BackupError):
    """The PostgresBackup spec is missing fields or holds invalid values."""


class SecretNotFoundError(BackupError, LookupError):
    """The referenced secret does not exist."""

    def __init__(self, namespace: str, secret_name: str) -> None:
        super().__init__(f"secret {namespace}/{secret_name} not found")
        self.namespace = namespace
        self.secret_name = secret_name


class KeyNotFoundError(BackupError, LookupError):
    """The secret exists but does not hold the requested key."""

    def __init__(self, secret_name: str, key: str) -> None:
        super().__init__(f"key {key} not found in secret {secret_name}")
        self.secret_name = secret_name
        self.key = key


class OwnerReferenceError(BackupError):
    """The dump pod could not be linked to its PostgresBackup."""


class WorkloadError(BackupError):
    """The dump pod could not be created or observed."""


class WorkloadFailure(WorkloadError):
    """The dump pod reached the Failed phase."""

    def __init__(self, workload: str, message: str) -> None:
        super().__init__(f"pod {workload} failed: {message}")
        self.workload = workload
        self.platform_message = message


class WorkloadTimeoutError(WorkloadError, TimeoutError):
    """The dump pod did not reach a terminal phase before the deadline."""

    def __init__(self, workload: str, timeout_seconds: float, last_phase: Optional[str]) -> None:
        super().__init__(
            f"pod {workload} did not finish within {timeout_seconds}s "
            f"(last observed phase={last_phase or 'Unknown'})"
        )
        self.workload = workload
        self.last_phase = last_phase


class BackupCancelledError(BackupError):
    """The attempt was stopped while waiting for the dump pod."""


class BackupInProgressError(BackupError):
    """Another attempt for the same PostgresBackup is still running."""


class TransferError(BackupError):
    """Uploading the dump to blob storage failed."""


class AuthError(TransferError):
    """Blob storage rejected the shared-key credential."""


class LocalFileError(TransferError):
    """The local dump file cannot be opened."""


class TeardownError(BackupError):
    """The dump pod could not be deleted."""
