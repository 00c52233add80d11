"""
Backup Registry - the authoritative catalog of BackupRecord metadata.

Wraps the backup_logs table. Writes to the same record id are serialized
with a per-record lock, and every status change is checked against the
backup state machine. At most one record is pending or running at a time
across every process sharing the database (unique active_slot column).
Every write refreshes the record heartbeat.

    pending -> running -> completed -> expired
       |          |
       +----------+----> failed | cancelled
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import exc as sa_exc

from recordvault import db
from recordvault.clock import utcnow
from recordvault.models import BackupLog, BackupSetting
from .errors import Conflict, NotFound, PreconditionFailed, StorageError, ValidationError
from .types import ACTIVE_STATUSES, BackupConfig, BackupRecord, BackupStatus

logger = logging.getLogger(__name__)

CONFIG_KEY = 'backup_config'

ALLOWED_TRANSITIONS = {
    BackupStatus.PENDING: {BackupStatus.RUNNING, BackupStatus.FAILED, BackupStatus.CANCELLED},
    BackupStatus.RUNNING: {BackupStatus.COMPLETED, BackupStatus.FAILED, BackupStatus.CANCELLED},
    BackupStatus.COMPLETED: {BackupStatus.EXPIRED},
    BackupStatus.FAILED: set(),
    BackupStatus.CANCELLED: set(),
    BackupStatus.EXPIRED: set(),
}

_ARTIFACT_FIELDS = ('artifact_path', 'size_bytes', 'checksum', 'completed_at')

_UPDATABLE_FIELDS = {
    'name', 'status', 'progress', 'artifact_path', 'size_bytes', 'checksum',
    'error_message', 'completed_at', 'cancellation_requested', 'warnings', 'logs',
}


def _value(field_value):
    return field_value.value if hasattr(field_value, 'value') else field_value


class BackupRegistry:
    """
    CRUD and status transitions for backup records.

    Must be used inside an application context.
    """

    def __init__(self, clock=None):
        """
        Args:
            clock: Clock used for heartbeats (default: wall clock, naive UTC)
        """
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _now(self):
        return self.clock.now() if self.clock is not None else utcnow()

    @contextmanager
    def _record_lock(self, backup_id: str):
        with self._locks_guard:
            lock = self._locks.setdefault(backup_id, threading.Lock())
        with lock:
            yield

    def _commit(self):
        try:
            db.session.commit()
        except sa_exc.SQLAlchemyError as e:
            db.session.rollback()
            raise StorageError(f"Registry write failed: {e}")

    def _row(self, backup_id: str) -> BackupLog:
        row = db.session.get(BackupLog, backup_id, populate_existing=True)
        if row is None:
            raise NotFound(f"Backup not found: {backup_id}")
        return row

    def create(self, record: BackupRecord) -> BackupRecord:
        """
        Insert a new record.

        An active (pending/running) record is only accepted while no other
        record is active.

        Raises:
            ValidationError: If a record with the same id already exists
            Conflict: If another record is already pending or running
        """
        is_active = record.status in ACTIVE_STATUSES

        with self._record_lock(record.id):
            if db.session.get(BackupLog, record.id, populate_existing=True) is not None:
                raise ValidationError(f"Backup id already registered: {record.id}")

            if is_active:
                active = self.active()
                if active is not None:
                    raise Conflict(f"Backup {active.id} is already {active.status.value}")

            row = BackupLog(
                id=record.id,
                name=record.name,
                kind=record.kind.value,
                status=record.status.value,
                progress=record.progress,
                collections_included=list(record.collections_included),
                compression=record.compression.value,
                include_files=record.include_files,
                started_by=record.started_by,
                retention_days=record.retention_days,
                expires_at=record.expires_at,
                started_at=record.started_at,
                warnings=list(record.warnings),
                logs=record.logs,
                owner=record.owner,
                heartbeat_at=self._now(),
                active_slot=True if is_active else None
            )
            db.session.add(row)
            try:
                db.session.commit()
            except sa_exc.IntegrityError as e:
                # Lost the race for the active slot to another process
                db.session.rollback()
                raise Conflict(f"Another backup is already in flight: {e.orig}")
            except sa_exc.SQLAlchemyError as e:
                db.session.rollback()
                raise StorageError(f"Registry write failed: {e}")
            return row.to_record()

    def active(self) -> Optional[BackupRecord]:
        """The pending or running record, if any."""
        row = (
            BackupLog.query
            .execution_options(populate_existing=True)
            .filter(BackupLog.status.in_([status.value for status in ACTIVE_STATUSES]))
            .order_by(BackupLog.started_at.desc())
            .first()
        )
        return row.to_record() if row else None

    def update(self, backup_id: str, **fields) -> BackupRecord:
        """
        Patch fields of an existing record.

        A 'status' field is validated against the state machine. Progress
        never moves backwards while a backup is running.

        Args:
            backup_id: Record id
            **fields: Fields to patch

        Returns:
            The updated record

        Raises:
            NotFound: If the id is unknown
            PreconditionFailed: If the status transition is not allowed
            ValidationError: If a field is unknown or violates a record invariant
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {sorted(unknown)}")

        with self._record_lock(backup_id):
            row = self._row(backup_id)
            current = BackupStatus(row.status)
            target = BackupStatus(_value(fields.get('status', current)))

            if target != current and target not in ALLOWED_TRANSITIONS[current]:
                raise PreconditionFailed(
                    f"Backup {backup_id} cannot move from {current.value} to {target.value}"
                )

            if 'progress' in fields:
                progress = max(0, min(100, int(fields['progress'])))
                if current == BackupStatus.RUNNING and progress < (row.progress or 0):
                    progress = row.progress
                fields['progress'] = progress

            for name, field_value in fields.items():
                setattr(row, name, _value(field_value))

            row.heartbeat_at = self._now()
            if target not in ACTIVE_STATUSES:
                row.active_slot = None

            self._check_invariants(row, target)
            self._commit()
            return row.to_record()

    def _check_invariants(self, row: BackupLog, status: BackupStatus):
        if status == BackupStatus.COMPLETED:
            missing = [name for name in _ARTIFACT_FIELDS if getattr(row, name) in (None, '')]
            if missing:
                db.session.rollback()
                raise ValidationError(f"Completed backup is missing {missing}")
        elif status == BackupStatus.FAILED:
            if not row.error_message:
                db.session.rollback()
                raise ValidationError("Failed backup requires an error message")

        if status in (BackupStatus.FAILED, BackupStatus.CANCELLED, BackupStatus.EXPIRED):
            # Only completed records may point at an artifact
            row.artifact_path = None
            row.checksum = None
            if status != BackupStatus.EXPIRED:
                row.size_bytes = None
            if status == BackupStatus.CANCELLED:
                row.error_message = None

    def get(self, backup_id: str) -> BackupRecord:
        """
        Raises:
            NotFound: If the id is unknown
        """
        return self._row(backup_id).to_record()

    def find(self, backup_id: str) -> Optional[BackupRecord]:
        row = db.session.get(BackupLog, backup_id, populate_existing=True)
        return row.to_record() if row else None

    def list(
        self,
        limit: Optional[int] = None,
        offset: int = 0,
        statuses: Optional[Iterable[BackupStatus]] = None,
        kinds: Optional[Iterable[Any]] = None
    ) -> List[BackupRecord]:
        """
        List records newest first (by started_at).

        Args:
            limit: Max number of records (None = all)
            offset: Number of records to skip
            statuses: Only include these statuses
            kinds: Only include these kinds
        """
        query = BackupLog.query.execution_options(populate_existing=True)

        if statuses is not None:
            query = query.filter(BackupLog.status.in_([_value(s) for s in statuses]))
        if kinds is not None:
            query = query.filter(BackupLog.kind.in_([_value(k) for k in kinds]))

        query = query.order_by(BackupLog.started_at.desc(), BackupLog.id.desc())

        if offset:
            query = query.offset(max(0, offset))
        if limit is not None:
            query = query.limit(max(0, limit))

        return [row.to_record() for row in query.all()]

    def count(self, status: Optional[BackupStatus] = None) -> int:
        query = BackupLog.query.execution_options(populate_existing=True)
        if status is not None:
            query = query.filter(BackupLog.status == _value(status))
        return query.count()

    def delete(self, backup_id: str):
        """
        Remove a record.

        Raises:
            NotFound: If the id is unknown
        """
        with self._record_lock(backup_id):
            row = self._row(backup_id)
            db.session.delete(row)
            self._commit()

        with self._locks_guard:
            self._locks.pop(backup_id, None)

    def load_config(self, defaults: Optional[BackupConfig] = None) -> BackupConfig:
        """
        Load the persisted backup policy layered over `defaults`.

        A stored value that no longer validates is logged and ignored.
        """
        defaults = defaults or BackupConfig()
        setting = db.session.get(BackupSetting, CONFIG_KEY, populate_existing=True)
        if setting is None or not isinstance(setting.value, dict):
            return defaults

        try:
            return BackupConfig.from_dict(setting.value, base=defaults)
        except ValidationError as e:
            logger.warning(f"Stored backup config is invalid, using defaults: {e}")
            return defaults

    def save_config(self, config: BackupConfig):
        config.validate()
        setting = db.session.get(BackupSetting, CONFIG_KEY, populate_existing=True)
        if setting is None:
            setting = BackupSetting(key=CONFIG_KEY, value=config.to_dict())
            db.session.add(setting)
        else:
            setting.value = config.to_dict()
        self._commit()
