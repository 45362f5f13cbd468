"""Error taxonomy for the backup subsystem.

Each error carries a stable ``code`` for the HTTP layer and a ``retryable``
flag separating "subsystem degraded" from "snapshot corrupted".
"""

from typing import Optional


class SnapkeepError(Exception):
    """Base exception for snapkeep errors."""

    code = "backup_error"
    retryable = True


class ExportError(SnapkeepError):
    """Raised when capturing one resource fails."""

    code = "export_failed"
    retryable = True

    def __init__(self, resource: str, cause: BaseException | str):
        self.resource = resource
        self.cause = cause
        super().__init__(f"{resource}: {cause}")


class IntegrityViolation(SnapkeepError):
    """Raised when a snapshot's checksum disagrees with its manifest."""

    code = "integrity_violation"
    retryable = False

    def __init__(
        self,
        backup_id: str,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
        reason: str = "checksum mismatch",
    ):
        self.backup_id = backup_id
        self.expected = expected
        self.actual = actual
        self.reason = reason
        super().__init__(f"Snapshot {backup_id} failed integrity check: {reason}")


class ManifestError(SnapkeepError):
    """Raised when a manifest is unreadable or has an unsupported version."""

    code = "manifest_invalid"
    retryable = False


class BackupNotFound(SnapkeepError):
    """Raised when no snapshot exists for an id."""

    code = "backup_not_found"
    retryable = False

    def __init__(self, backup_id: str):
        self.backup_id = backup_id
        super().__init__(f"Backup not found: {backup_id}")


class BackupInProgress(SnapkeepError):
    """Raised when a backup run is already active."""

    code = "backup_in_progress"
    retryable = True

    def __init__(self, active_id: Optional[str] = None):
        self.active_id = active_id
        detail = f": {active_id}" if active_id else ""
        super().__init__(f"A backup is already in progress{detail}")


class SubsystemDraining(SnapkeepError):
    """Raised when new work is refused because the process is shutting down."""

    code = "subsystem_draining"
    retryable = True

    def __init__(self, operation: str = "backup"):
        self.operation = operation
        super().__init__(f"Refusing new {operation}: shutting down")


class RetentionError(SnapkeepError):
    """Raised when deleting one snapshot fails during cleanup."""

    code = "retention_failed"
    retryable = True

    def __init__(self, backup_id: str, cause: BaseException | str):
        self.backup_id = backup_id
        self.cause = cause
        super().__init__(f"Could not delete {backup_id}: {cause}")
