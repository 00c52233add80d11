"""
Exception taxonomy for the backup engine.

Every error raised by the engine derives from BackupError so callers (routes,
CLI, scheduler) can catch the whole family in one place.
"""

from typing import Iterable, List, Optional


class BackupError(Exception):
    """Base class for all backup engine errors."""
    pass


class ValidationError(BackupError):
    """Raised when a config or request has an invalid shape or value."""
    pass


class Conflict(BackupError):
    """Raised when an operation collides with current engine state."""
    pass


class PreconditionFailed(Conflict):
    """Raised when a required precondition (confirmation, state) does not hold."""
    pass


class NotFound(BackupError):
    """Raised when a backup id does not resolve to a record."""
    pass


class PermissionDenied(BackupError):
    """Raised when the current actor lacks the required capability."""
    pass


class IntegrityError(BackupError):
    """Raised on checksum mismatch or an unreadable artifact."""
    pass


class CompressionError(IntegrityError):
    """Raised when a payload cannot be encoded or decoded."""
    pass


class StorageError(BackupError):
    """Raised when a record or blob adapter operation fails."""
    pass


class AdapterUnavailable(StorageError):
    """Raised when a storage adapter cannot be reached at all."""
    pass


class PartialFailure(BackupError):
    """
    Raised when a restore replaced some collections and then failed.

    The live store is in a mixed state; the three lists say exactly which
    collections hold snapshot data, which one failed, and which were never
    attempted.
    """

    def __init__(
        self,
        restored: Iterable[str],
        failed: Iterable[str],
        skipped: Optional[Iterable[str]] = None,
        cause: Optional[BaseException] = None
    ):
        self.restored: List[str] = list(restored)
        self.failed: List[str] = list(failed)
        self.skipped: List[str] = list(skipped or [])
        self.cause = cause

        message = (
            f"Restore partially applied. Restored: {self.restored or 'none'}; "
            f"failed: {self.failed or 'none'}; not attempted: {self.skipped or 'none'}"
        )
        if cause is not None:
            message += f" ({cause})"
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            'restored': self.restored,
            'failed': self.failed,
            'skipped': self.skipped,
        }
