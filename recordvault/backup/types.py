"""
Value types shared across the backup engine.

BackupRecord is the detached, thread-safe view of a registry row; the other
types are ephemeral and never persisted on their own.
"""

import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import ValidationError


class BackupKind(str, Enum):
    FULL = 'full'
    INCREMENTAL = 'incremental'
    MANUAL = 'manual'
    SCHEDULED = 'scheduled'
    EMERGENCY = 'emergency'


class BackupStatus(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
    EXPIRED = 'expired'


class CompressionMode(str, Enum):
    NONE = 'none'
    GZIP = 'gzip'
    ZIP = 'zip'


ACTIVE_STATUSES = (BackupStatus.PENDING, BackupStatus.RUNNING)
TERMINAL_STATUSES = (
    BackupStatus.COMPLETED,
    BackupStatus.FAILED,
    BackupStatus.CANCELLED,
    BackupStatus.EXPIRED,
)

# Capabilities checked through the auth collaborator
CAP_CREATE = 'backup.create'
CAP_RESTORE = 'backup.restore'
CAP_DELETE = 'backup.delete'

SCHEDULE_INTERVALS = {
    'daily': timedelta(hours=24),
    'weekly': timedelta(hours=168),
    'monthly': timedelta(hours=720),
}

_TIME_OF_DAY = re.compile(r'^([01]\d|2[0-3]):([0-5]\d)$')


def parse_enum(enum_cls, value, field_name: str):
    """Coerce a raw value into an enum member or raise ValidationError."""
    try:
        return enum_cls(value)
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ValidationError(f"Invalid {field_name}: {value!r}. Valid options: {valid}")


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class BackupRecord:
    """Metadata for one backup attempt and, once completed, its artifact."""

    id: str
    name: str
    kind: BackupKind
    status: BackupStatus
    started_at: datetime
    progress: int = 0
    collections_included: List[str] = field(default_factory=list)
    compression: CompressionMode = CompressionMode.GZIP
    include_files: bool = False
    artifact_path: Optional[str] = None
    size_bytes: Optional[int] = None
    checksum: Optional[str] = None
    error_message: Optional[str] = None
    started_by: Optional[str] = None
    retention_days: int = 30
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancellation_requested: bool = False
    warnings: List[str] = field(default_factory=list)
    logs: Optional[str] = None
    owner: Optional[str] = None
    heartbeat_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self, include_logs: bool = False) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'name': self.name,
            'kind': self.kind.value,
            'status': self.status.value,
            'progress': self.progress,
            'collections_included': list(self.collections_included),
            'compression': self.compression.value,
            'include_files': self.include_files,
            'artifact_path': self.artifact_path,
            'size_bytes': self.size_bytes,
            'checksum': self.checksum,
            'error_message': self.error_message,
            'started_by': self.started_by,
            'retention_days': self.retention_days,
            'expires_at': _isoformat(self.expires_at),
            'started_at': _isoformat(self.started_at),
            'completed_at': _isoformat(self.completed_at),
            'cancellation_requested': self.cancellation_requested,
            'warnings': list(self.warnings),
        }
        if include_logs:
            data['logs'] = self.logs
        return data


@dataclass
class BackupConfig:
    """Process-wide backup policy."""

    auto_backup_enabled: bool = True
    schedule_type: str = 'daily'
    schedule_time: str = '02:00'
    retention_days: int = 30
    compression: CompressionMode = CompressionMode.GZIP
    include_files: bool = True
    include_database: bool = True
    max_backups: int = 10
    email_notifications: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional['BackupConfig'] = None) -> 'BackupConfig':
        """
        Build a config from a (possibly partial) dict, layered over `base`.

        Unknown keys are rejected so typos never silently change policy.

        Raises:
            ValidationError: If a key or value is invalid
        """
        merged = asdict(base) if base else asdict(cls())
        unknown = set(data) - set(merged)
        if unknown:
            raise ValidationError(f"Unknown backup config fields: {sorted(unknown)}")
        merged.update(data)
        merged['compression'] = parse_enum(CompressionMode, merged['compression'], 'compression')
        config = cls(**merged)
        config.validate()
        return config

    def validate(self):
        """
        Check every field.

        Raises:
            ValidationError: On the first invalid field
        """
        for flag in ('auto_backup_enabled', 'include_files', 'include_database', 'email_notifications'):
            if not isinstance(getattr(self, flag), bool):
                raise ValidationError(f"{flag} must be a boolean")

        if self.schedule_type not in SCHEDULE_INTERVALS:
            raise ValidationError(
                f"Invalid schedule_type: {self.schedule_type!r}. "
                f"Valid options: {list(SCHEDULE_INTERVALS)}"
            )

        if not isinstance(self.schedule_time, str) or not _TIME_OF_DAY.match(self.schedule_time):
            raise ValidationError(f"schedule_time must be HH:MM, got {self.schedule_time!r}")

        if not isinstance(self.retention_days, int) or isinstance(self.retention_days, bool) or self.retention_days < 1:
            raise ValidationError("retention_days must be a positive integer")

        if not isinstance(self.max_backups, int) or isinstance(self.max_backups, bool) or self.max_backups < 1:
            raise ValidationError("max_backups must be a positive integer")

        if not isinstance(self.compression, CompressionMode):
            self.compression = parse_enum(CompressionMode, self.compression, 'compression')

    @property
    def interval(self) -> timedelta:
        return SCHEDULE_INTERVALS[self.schedule_type]

    @property
    def time_of_day(self) -> Tuple[int, int]:
        hour, minute = self.schedule_time.split(':')
        return int(hour), int(minute)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['compression'] = self.compression.value
        return data


@dataclass
class RestoreRequest:
    """Parameters for one restore call. Never persisted."""

    backup_id: str
    restore_records: bool = True
    restore_files: bool = False
    target_collections: Optional[List[str]] = None
    confirm_overwrite: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RestoreRequest':
        if not isinstance(data, dict) or not data.get('backup_id'):
            raise ValidationError("backup_id is required")

        targets = data.get('target_collections')
        if targets is not None:
            if not isinstance(targets, list) or not all(isinstance(t, str) for t in targets):
                raise ValidationError("target_collections must be a list of collection names")

        for flag in ('restore_records', 'restore_files'):
            if flag in data and not isinstance(data[flag], bool):
                raise ValidationError(f"{flag} must be a boolean")

        return cls(
            backup_id=str(data['backup_id']),
            restore_records=data.get('restore_records', True),
            restore_files=data.get('restore_files', False),
            target_collections=targets,
            confirm_overwrite=data.get('confirm_overwrite') is True
        )


@dataclass(frozen=True)
class ProgressEvent:
    backup_id: str
    step_name: str
    step_index: int
    total_steps: int
    overall_progress: int
    bytes_processed: int = 0
    total_bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ValidationReport:
    """Outcome of re-reading and checking a stored artifact."""

    backup_id: str
    is_valid: bool = True
    checksum_matches: bool = False
    size_matches: bool = False
    checksum: Optional[str] = None
    size_bytes: int = 0
    collections_verified: int = 0
    records_verified: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def fail(self, message: str):
        self.is_valid = False
        self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SnapshotPayload:
    """
    Collection-by-collection capture of record data, prior to compression.

    `collections` maps collection name to its ordered records, `files` is the
    optional file manifest (group name -> entries) and `metadata` holds
    version, kind, collections, created_at and any build warnings.
    """

    collections: Dict[str, List[Dict[str, Any]]]
    metadata: Dict[str, Any]
    files: Optional[Dict[str, List[Dict[str, Any]]]] = None

    @property
    def warnings(self) -> List[str]:
        return self.metadata.setdefault('warnings', [])

    @property
    def record_count(self) -> int:
        return sum(len(records) for records in self.collections.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'metadata': self.metadata,
            'collections': self.collections,
            'files': self.files,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SnapshotPayload':
        if not isinstance(data, dict) or 'collections' not in data or 'metadata' not in data:
            raise ValidationError("Snapshot payload is missing collections or metadata")
        return cls(
            collections=data['collections'],
            metadata=data['metadata'],
            files=data.get('files')
        )


@dataclass
class RestoreReport:
    backup_id: str
    restored_collections: List[str] = field(default_factory=list)
    restored_files: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
