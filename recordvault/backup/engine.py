"""
Backup Engine - the public facade of the backup subsystem.

Composes the registry, snapshot builder, codecs, blob store, retention
manager, restore orchestrator and progress reporter. All collaborators are
injected at construction; the engine holds no global state.

At most one backup is in flight at a time. Within a process the in-flight
slot is a lock-guarded handle; across processes the registry refuses a second
active record. create_backup() either claims both or fails with Conflict.
"""

import logging
import os
import socket
import threading
import uuid
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from flask import current_app, has_app_context

from .compression import decompress, unpack_artifact
from .errors import (
    BackupError,
    Conflict,
    IntegrityError,
    NotFound,
    PartialFailure,
    PermissionDenied,
    PreconditionFailed,
    StorageError,
    ValidationError,
)
from .executor import BackupExecutor
from .integrity import checksum, verify
from .progress import ProgressReporter
from .restore import CollectionLocks, RestoreOrchestrator
from .retention import RetentionManager
from .snapshot import SnapshotBuilder, ordered_unique
from .types import (
    ACTIVE_STATUSES,
    CAP_CREATE,
    CAP_DELETE,
    BackupConfig,
    BackupKind,
    BackupRecord,
    BackupStatus,
    CompressionMode,
    ProgressEvent,
    RestoreReport,
    RestoreRequest,
    ValidationReport,
    parse_enum,
)

logger = logging.getLogger(__name__)

_CREATE_OPTIONS = {'collections', 'compression', 'retention_days', 'include_files'}


class InlineExecutor(Executor):
    """Runs submitted work synchronously in the calling thread."""

    def submit(self, fn, *args, **kwargs) -> Future:
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as e:
            future.set_exception(e)
        return future


def process_identity() -> str:
    """Owner tag for records started by this process: 'host:pid'."""
    return f"{socket.gethostname()}:{os.getpid()}"


def _process_alive(pid: int) -> bool:
    if os.name != 'posix':
        # Signal 0 terminates the target on Windows
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class _InFlight:
    """Handle for the single backup currently in flight."""

    def __init__(self, record_id: str):
        self.record_id = record_id
        self.cancel_event = threading.Event()
        self.future: Optional[Future] = None


class BackupEngine:
    """
    Public API for creating, listing, validating, deleting and restoring backups.
    """

    def __init__(
        self,
        registry,
        record_store,
        blob_store,
        auth,
        clock,
        activity_log=None,
        collections: Optional[Iterable[str]] = None,
        file_groups: Optional[Dict[str, str]] = None,
        include_file_contents: bool = False,
        default_config: Optional[BackupConfig] = None,
        expired_audit_days: int = 7,
        executor: Optional[Executor] = None,
        app=None,
        owner: Optional[str] = None,
        stale_after: timedelta = timedelta(hours=1)
    ):
        """
        Args:
            registry: BackupRegistry
            record_store: RecordStore adapter (live collections)
            blob_store: BlobStore adapter (artifacts and files)
            auth: AuthContext (current_actor_id / has_capability)
            clock: Clock (now)
            activity_log: Optional ActivityLog sink (record(event_type, metadata))
            collections: Default ordered collection list
            file_groups: File group name -> blob prefix
            include_file_contents: Embed file bytes in manifests
            default_config: BackupConfig used until one is persisted
            expired_audit_days: Days expired metadata is kept before purge
            executor: Where backup pipelines run (default: one background thread)
            app: Flask app whose context the pipeline runs in
            owner: Owner tag stamped on records this engine starts (default: host:pid)
            stale_after: Heartbeat age after which an active record is treated as orphaned
        """
        self.registry = registry
        self.record_store = record_store
        self.blob_store = blob_store
        self.auth = auth
        self.clock = clock
        self.activity_log = activity_log
        self.collections = ordered_unique(collections or [])
        self.default_config = default_config or BackupConfig()
        self.app = app
        self.owner = owner or process_identity()
        self.stale_after = stale_after

        self.progress = ProgressReporter()
        self.snapshot_builder = SnapshotBuilder(
            record_store,
            blob_store,
            file_groups=file_groups,
            include_file_contents=include_file_contents
        )
        self.retention = RetentionManager(
            registry,
            blob_store,
            clock,
            self.get_backup_config,
            expired_audit_days=expired_audit_days
        )
        self.restorer = RestoreOrchestrator(
            registry,
            record_store,
            blob_store,
            auth,
            locks=CollectionLocks()
        )

        self._executor = executor or ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix='recordvault-backup'
        )
        self._slot_lock = threading.Lock()
        self._in_flight: Optional[_InFlight] = None

    # Configuration

    def get_backup_config(self) -> BackupConfig:
        return self.registry.load_config(self.default_config)

    def update_backup_config(self, config: Union[BackupConfig, Dict[str, Any]]) -> BackupConfig:
        """
        Persist a new backup policy.

        Args:
            config: Full BackupConfig, or a dict of fields to change

        Raises:
            ValidationError: If any field is invalid
        """
        if isinstance(config, dict):
            config = BackupConfig.from_dict(config, base=self.get_backup_config())
        else:
            config.validate()

        self.registry.save_config(config)
        self.record_activity('config_updated', {'config': config.to_dict()})
        logger.info("Backup configuration updated")
        return config

    # Backup lifecycle

    def create_backup(
        self,
        kind: Union[str, BackupKind] = BackupKind.MANUAL,
        name: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None
    ) -> BackupRecord:
        """
        Register a backup and start its pipeline in the background.

        Args:
            kind: Backup kind (any kind except 'scheduled')
            name: Human-readable label (generated when omitted)
            options: Overrides: collections, compression, retention_days, include_files

        Returns:
            The record in 'pending' state

        Raises:
            PermissionDenied: If the actor lacks backup.create
            ValidationError: On invalid kind or options
            Conflict: If another backup is already in flight
        """
        actor_id = self.auth.current_actor_id()
        self._require(actor_id, CAP_CREATE, "Creating backups requires the backup.create capability")

        kind = parse_enum(BackupKind, kind, 'backup kind')
        if kind == BackupKind.SCHEDULED:
            raise ValidationError("Scheduled backups are only started by the scheduler")

        return self._start_backup(kind, name, options, actor_id)

    def create_scheduled_backup(self, name: Optional[str] = None) -> BackupRecord:
        """
        Start a scheduled backup with the configured policy.

        Called by the scheduler tick; no actor is involved, so no capability
        is checked.

        Raises:
            Conflict: If another backup is already in flight
        """
        return self._start_backup(BackupKind.SCHEDULED, name, None, None)

    def _start_backup(
        self,
        kind: BackupKind,
        name: Optional[str],
        options: Optional[Dict[str, Any]],
        actor_id: Optional[str]
    ) -> BackupRecord:
        options = dict(options or {})
        unknown = set(options) - _CREATE_OPTIONS
        if unknown:
            raise ValidationError(f"Unknown backup options: {sorted(unknown)}")

        config = self.get_backup_config()

        if options.get('collections') is not None:
            collections = options['collections']
            if not isinstance(collections, list) or not all(isinstance(c, str) and c for c in collections):
                raise ValidationError("collections must be a list of collection names")
            collections = ordered_unique(collections)
        else:
            collections = list(self.collections) if config.include_database else []

        include_files = options.get('include_files', config.include_files)
        if not isinstance(include_files, bool):
            raise ValidationError("include_files must be a boolean")

        if not collections and not include_files:
            raise ValidationError("Nothing to back up: no collections selected and files excluded")

        compression = parse_enum(CompressionMode, options.get('compression', config.compression), 'compression')

        retention_days = options.get('retention_days', config.retention_days)
        if not isinstance(retention_days, int) or isinstance(retention_days, bool) or retention_days < 1:
            raise ValidationError("retention_days must be a positive integer")

        now = self.clock.now()
        record = BackupRecord(
            id=str(uuid.uuid4()),
            name=name or f"backup-{kind.value}-{now.strftime('%Y-%m-%dT%H-%M-%S')}",
            kind=kind,
            status=BackupStatus.PENDING,
            started_at=now,
            collections_included=collections,
            compression=compression,
            include_files=include_files,
            started_by=actor_id,
            retention_days=retention_days,
            expires_at=now + timedelta(days=retention_days),
            owner=self.owner
        )

        with self._slot_lock:
            if self._in_flight is not None:
                raise Conflict(f"Backup {self._in_flight.record_id} is already running")
            # Raises Conflict when another process holds the active slot
            record = self.registry.create(record)
            in_flight = _InFlight(record.id)
            self._in_flight = in_flight

        self.record_activity('backup_started', {
            'backup_id': record.id,
            'kind': kind.value,
            'collections': collections
        }, actor_id=actor_id)

        try:
            in_flight.future = self._executor.submit(self._run, in_flight)
        except RuntimeError as e:
            self._release(in_flight)
            self.registry.update(
                record.id,
                status=BackupStatus.FAILED,
                error_message=f"Backup could not be scheduled: {e}",
                completed_at=self.clock.now()
            )
            raise

        return record

    def _run(self, in_flight: _InFlight) -> BackupRecord:
        with self.app_context():
            try:
                record = BackupExecutor(self, in_flight.record_id, in_flight.cancel_event).execute()
            finally:
                self._release(in_flight)

            if record.status == BackupStatus.COMPLETED:
                try:
                    self.run_retention()
                except BackupError as e:
                    logger.warning(f"Post-backup retention sweep failed: {e}")
            return record

    def _release(self, in_flight: _InFlight):
        with self._slot_lock:
            if self._in_flight is in_flight:
                self._in_flight = None
        self.progress.clear(in_flight.record_id)

    def app_context(self):
        if self.app is None:
            return nullcontext()
        if has_app_context() and current_app._get_current_object() is self.app:
            return nullcontext()
        return self.app.app_context()

    def cancel_backup(self, backup_id: Optional[str] = None) -> BackupRecord:
        """
        Request cooperative cancellation of a running backup.

        The pipeline stops at its next phase boundary and the record becomes
        'cancelled'.

        Args:
            backup_id: Backup to cancel (default: the one in flight)

        Raises:
            PermissionDenied: If the actor lacks backup.create
            NotFound: If the id is unknown
            PreconditionFailed: If the backup is not running
        """
        self._require(
            self.auth.current_actor_id(),
            CAP_CREATE,
            "Cancelling backups requires the backup.create capability"
        )

        with self._slot_lock:
            in_flight = self._in_flight

        target_id = backup_id or (in_flight.record_id if in_flight else None)
        if target_id is None:
            raise PreconditionFailed("No backup is running")

        record = self.registry.get(target_id)
        if record.status != BackupStatus.RUNNING:
            raise PreconditionFailed(
                f"Backup {target_id} is {record.status.value}; only running backups can be cancelled"
            )

        record = self.registry.update(target_id, cancellation_requested=True)
        if in_flight is not None and in_flight.record_id == target_id:
            in_flight.cancel_event.set()

        logger.info(f"Cancellation requested for backup {target_id}")
        return record

    def cancel_current_backup(self) -> BackupRecord:
        return self.cancel_backup()

    def wait(self, timeout: Optional[float] = None) -> Optional[BackupRecord]:
        """
        Block until the in-flight backup (if any) reaches a terminal state.

        Returns:
            The terminal record, or None if nothing was in flight
        """
        with self._slot_lock:
            in_flight = self._in_flight
        if in_flight is None or in_flight.future is None:
            return None
        return in_flight.future.result(timeout=timeout)

    def current_backup(self) -> Optional[BackupRecord]:
        with self._slot_lock:
            in_flight = self._in_flight
        return self.registry.find(in_flight.record_id) if in_flight else None

    def get_current_progress(self) -> Optional[ProgressEvent]:
        with self._slot_lock:
            in_flight = self._in_flight
        return self.progress.latest(in_flight.record_id) if in_flight else None

    def on_progress(self, callback: Callable[[ProgressEvent], None]) -> Callable[[], None]:
        """Subscribe to progress events; returns the unsubscribe function."""
        return self.progress.subscribe(callback)

    # Recovery

    def recover_interrupted_backups(self) -> List[str]:
        """
        Fail pending/running records whose pipeline can no longer finish.

        A record is orphaned when it has no owner, when its owner is a process
        on this host that no longer exists, or when its heartbeat is older
        than `stale_after`. The backup this engine is running is never touched.

        Returns:
            Ids of the records moved to 'failed'
        """
        with self._slot_lock:
            in_flight_id = self._in_flight.record_id if self._in_flight else None

        now = self.clock.now()
        recovered = []
        for record in self.registry.list(statuses=list(ACTIVE_STATUSES)):
            if record.id == in_flight_id:
                continue
            reason = self._orphan_reason(record, now)
            if reason is None:
                continue

            message = f"Backup interrupted: {reason}"
            try:
                self.registry.update(
                    record.id,
                    status=BackupStatus.FAILED,
                    error_message=message,
                    completed_at=now
                )
            except (NotFound, PreconditionFailed):
                # Finished or removed while we looked
                continue

            logger.warning(f"Recovered orphaned backup {record.id}: {reason}")
            self.record_activity('backup_failed', {'backup_id': record.id, 'error': message})
            recovered.append(record.id)
        return recovered

    def _orphan_reason(self, record: BackupRecord, now: datetime) -> Optional[str]:
        if not record.owner:
            return "no owning process recorded"

        host, _, pid = record.owner.rpartition(':')
        if host == socket.gethostname() and pid.isdigit() and not _process_alive(int(pid)):
            return f"owning process {record.owner} is gone"

        heartbeat = record.heartbeat_at or record.started_at
        if now - heartbeat >= self.stale_after:
            return f"no progress since {heartbeat.isoformat()}"
        return None

    def check_health(self) -> Dict[str, Any]:
        """
        Check that the blob store and record store are reachable.

        Returns:
            Dict with 'healthy' plus per-store 'ok' and 'error' entries
        """
        blob_status: Dict[str, Any] = {'ok': True, 'error': None}
        try:
            self.blob_store.test_connection()
        except BackupError as e:
            blob_status = {'ok': False, 'error': str(e)}

        record_status: Dict[str, Any] = {'ok': True, 'error': None, 'collections': []}
        try:
            record_status['collections'] = self.record_store.collections()
        except BackupError as e:
            record_status = {'ok': False, 'error': str(e), 'collections': []}

        return {
            'healthy': blob_status['ok'] and record_status['ok'],
            'blob_store': blob_status,
            'record_store': record_status
        }

    # Queries

    def get_backups(self, limit: Optional[int] = 50, offset: int = 0) -> List[BackupRecord]:
        return self.registry.list(limit=limit, offset=offset)

    def get_backup_by_id(self, backup_id: str) -> Optional[BackupRecord]:
        return self.registry.find(backup_id)

    # Deletion

    def delete_backup(self, backup_id: str):
        """
        Delete a backup's artifact, then its registry entry.

        Raises:
            PermissionDenied: If the actor lacks backup.delete
            NotFound: If the id is unknown
            Conflict: If the backup is still pending or running
            StorageError: If the artifact cannot be deleted (the entry is kept)
        """
        actor_id = self.auth.current_actor_id()
        self._require(actor_id, CAP_DELETE, "Deleting backups requires the backup.delete capability")

        record = self.registry.get(backup_id)
        if record.is_active:
            raise Conflict(f"Backup {backup_id} is {record.status.value} and cannot be deleted")

        if record.artifact_path:
            self.blob_store.delete(record.artifact_path)
        self.registry.delete(backup_id)

        self.record_activity('backup_deleted', {'backup_id': backup_id}, actor_id=actor_id)
        logger.info(f"Deleted backup {backup_id}")

    # Validation

    def validate_backup(self, backup_id: str) -> ValidationReport:
        """
        Re-read a backup's artifact and check it end to end.

        Raises:
            NotFound: If the id is unknown
        """
        record = self.registry.get(backup_id)
        report = ValidationReport(backup_id=backup_id)

        if record.status != BackupStatus.COMPLETED or not record.artifact_path:
            report.fail(f"Backup is {record.status.value}; there is no artifact to validate")
            return report

        try:
            blob = self.blob_store.get(record.artifact_path)
        except StorageError as e:
            report.fail(f"Artifact could not be read: {e}")
            return report

        report.size_bytes = len(blob)
        report.checksum = checksum(blob)
        report.checksum_matches = verify(blob, record.checksum)
        if not report.checksum_matches:
            report.fail("Checksum mismatch - the artifact may be corrupt")

        report.size_matches = len(blob) == record.size_bytes
        if not report.size_matches:
            report.warnings.append(
                f"Artifact size {len(blob)} differs from recorded size {record.size_bytes}"
            )

        try:
            header, body = unpack_artifact(blob)
            payload = decompress(body, record.compression)
        except IntegrityError as e:
            report.fail(f"Artifact could not be decoded: {e}")
            return report

        if header.get('backup_id') not in (None, record.id):
            report.warnings.append("Artifact header names a different backup id")

        missing = [name for name in record.collections_included if name not in payload.collections]
        if missing:
            report.fail(f"Artifact is missing collections: {missing}")

        report.collections_verified = len(payload.collections)
        report.records_verified = payload.record_count
        report.warnings.extend(payload.metadata.get('warnings') or [])
        return report

    # Restore

    def restore_from_backup(self, request: Union[RestoreRequest, Dict[str, Any]]) -> RestoreReport:
        """
        Restore a completed backup. DESTRUCTIVE: target collections are replaced
        wholesale. See RestoreOrchestrator.restore for the error contract.
        """
        if isinstance(request, dict):
            request = RestoreRequest.from_dict(request)

        actor_id = self.auth.current_actor_id()
        try:
            report = self.restorer.restore(request)
        except PartialFailure as e:
            self.record_activity('restore_failed', {
                'backup_id': request.backup_id,
                'error': str(e),
                **e.to_dict()
            }, actor_id=actor_id)
            raise
        except BackupError as e:
            self.record_activity('restore_failed', {
                'backup_id': request.backup_id,
                'error': str(e)
            }, actor_id=actor_id)
            raise

        self.record_activity('restore_completed', {
            'backup_id': request.backup_id,
            'restored_by': actor_id,
            **report.to_dict()
        }, actor_id=actor_id)
        return report

    # Retention

    def run_retention(self) -> Dict[str, Any]:
        """Recover orphaned backups, then apply the retention policy."""
        recovered = self.recover_interrupted_backups()
        summary = self.retention.sweep()
        summary['recovered'] = recovered
        if summary['deleted'] or summary['purged']:
            self.record_activity('retention_swept', {
                'deleted': summary['deleted'],
                'purged': summary['purged']
            })
        return summary

    # Helpers

    def _require(self, actor_id: Optional[str], capability: str, message: str):
        if actor_id is None or not self.auth.has_capability(actor_id, capability):
            raise PermissionDenied(message)

    def record_activity(self, event_type: str, metadata: Dict[str, Any], actor_id: Optional[str] = None):
        """Send an event to the activity log; failures are logged and dropped."""
        if self.activity_log is None:
            return
        try:
            self.activity_log.record(event_type, dict(metadata, actor_id=actor_id) if actor_id else metadata)
        except Exception:
            logger.exception(f"Failed to record activity event {event_type}")

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
