"""
Backup executor - runs the backup pipeline for one registry record.

Workflow:
1. Mark record running
2. Export records (snapshot read phase)
3. Export file manifest (if enabled)
4. Compress snapshot and build the artifact
5. Write artifact to the blob store
6. Mark record completed (or failed / cancelled)

Progress is published and the execution log flushed at every phase boundary.
Cancellation is cooperative: it is honoured at the next boundary, after the
current phase's I/O has finished.
"""

import logging
import threading
from typing import Optional

from .compression import compress, pack_artifact
from .errors import BackupError, StorageError
from .integrity import checksum
from .storage import artifact_path_for
from .types import BackupRecord, BackupStatus, ProgressEvent

logger = logging.getLogger(__name__)

TOTAL_STEPS = 5


class BackupCancelled(Exception):
    """Raised inside the pipeline when a cancel request is observed."""
    pass


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one record.
    """

    def __init__(self, engine, backup_id: str, cancel_event: Optional[threading.Event] = None):
        """
        Initialize backup executor.

        Args:
            engine: Owning BackupEngine (registry, adapters, progress, clock)
            backup_id: Id of the pending BackupRecord to execute
            cancel_event: Set by the engine when cancellation is requested
        """
        self.engine = engine
        self.registry = engine.registry
        self.backup_id = backup_id
        self.cancel_event = cancel_event or threading.Event()
        self.record: Optional[BackupRecord] = None
        self.artifact_path: Optional[str] = None
        self.artifact_written = False
        self.logs = []

    def execute(self) -> BackupRecord:
        """
        Execute the backup.

        Returns:
            The record in its terminal state
        """
        self.record = self.registry.get(self.backup_id)
        self._log(f"Starting backup: {self.record.name} ({self.record.kind.value})")

        try:
            self._execute_workflow()
            self._log("Backup completed successfully")
            self.engine.record_activity('backup_completed', {
                'backup_id': self.backup_id,
                'size_bytes': self.record.size_bytes,
                'duration_seconds': (self.record.completed_at - self.record.started_at).total_seconds()
            })

        except BackupCancelled:
            self._log("Backup cancelled")
            self._discard_artifact()
            self._finish(status=BackupStatus.CANCELLED, completed_at=self.engine.clock.now())
            self.engine.record_activity('backup_cancelled', {'backup_id': self.backup_id})

        except Exception as e:
            message = str(e) or e.__class__.__name__
            if not isinstance(e, BackupError):
                logger.exception(f"Unexpected error in backup {self.backup_id}")
            self._log(f"Backup failed: {message}")
            self._discard_artifact()
            self._finish(
                status=BackupStatus.FAILED,
                error_message=message,
                completed_at=self.engine.clock.now()
            )
            self.engine.record_activity('backup_failed', {
                'backup_id': self.backup_id,
                'error': message
            })

        return self.record

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        record = self.registry.update(self.backup_id, status=BackupStatus.RUNNING, progress=0)
        self._publish('Initializing backup', 0, 0)

        # Step 1: Prepare
        self._log(
            f"Collections: {', '.join(record.collections_included) or 'none'}; "
            f"compression: {record.compression.value}; files: {record.include_files}"
        )
        self._boundary('Preparing backup', 1, 20)

        # Step 2: Export records
        payload = self.engine.snapshot_builder.build(
            record.collections_included,
            include_files=False,
            kind=record.kind,
            created_at=record.started_at,
            backup_id=record.id
        )
        self._log(
            f"Exported {payload.record_count} records from {len(payload.collections)} collections"
        )
        self._boundary('Exporting records', 2, 40, warnings=list(payload.warnings))

        # Step 3: Export file manifest
        if record.include_files:
            self.engine.snapshot_builder.attach_files(payload)
            file_count = sum(len(entries) for entries in (payload.files or {}).values())
            self._log(f"File manifest captured ({file_count} files)")
        else:
            self._log("File export not enabled, skipping")
        self._boundary('Exporting files', 3, 60, warnings=list(payload.warnings))

        # Step 4: Compress and build artifact
        body = compress(payload, record.compression)
        artifact = pack_artifact({
            'backup_id': record.id,
            'name': record.name,
            'kind': record.kind.value,
            'compression': record.compression.value,
            'collections': record.collections_included,
            'include_files': record.include_files,
            'created_at': record.started_at,
            'warnings': payload.warnings,
        }, body)
        digest = checksum(artifact)
        self._log(f"Artifact built ({len(artifact) / 1024:.1f} KB, sha256 {digest[:12]}...)")
        self._boundary('Compressing data', 4, 80, total_bytes=len(artifact))

        # Step 5: Write artifact
        self.artifact_path = artifact_path_for(record.id, record.started_at)
        self.engine.blob_store.put(self.artifact_path, artifact)
        self.artifact_written = True
        self._log(f"Artifact written: {self.artifact_path}")
        self._check_cancelled()

        self.record = self.registry.update(
            self.backup_id,
            status=BackupStatus.COMPLETED,
            progress=100,
            artifact_path=self.artifact_path,
            size_bytes=len(artifact),
            checksum=digest,
            completed_at=self.engine.clock.now(),
            logs=self._log_text()
        )
        self._publish('Writing artifact', TOTAL_STEPS, 100, len(artifact), len(artifact))

    def _boundary(self, step_name: str, step_index: int, progress: int, warnings=None, total_bytes: int = 0):
        """Phase boundary: persist progress and logs, notify, then honour cancellation."""
        fields = {'progress': progress, 'logs': self._log_text()}
        if warnings is not None:
            fields['warnings'] = warnings
        self.record = self.registry.update(self.backup_id, **fields)
        self._publish(step_name, step_index, progress, 0, total_bytes)
        self._check_cancelled()

    def _publish(self, step_name: str, step_index: int, progress: int, bytes_processed: int = 0, total_bytes: int = 0):
        self.engine.progress.publish(ProgressEvent(
            backup_id=self.backup_id,
            step_name=step_name,
            step_index=step_index,
            total_steps=TOTAL_STEPS,
            overall_progress=progress,
            bytes_processed=bytes_processed,
            total_bytes=total_bytes
        ))

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise BackupCancelled()
        # Requests from another process only reach us through the registry
        if self.registry.get(self.backup_id).cancellation_requested:
            raise BackupCancelled()

    def _discard_artifact(self):
        """Remove a written-but-unpublished artifact."""
        if not self.artifact_written or not self.artifact_path:
            return
        try:
            self.engine.blob_store.delete(self.artifact_path)
            self._log(f"Removed unpublished artifact {self.artifact_path}")
        except StorageError as e:
            self._log(f"Warning: Failed to remove unpublished artifact {self.artifact_path}: {e}")

    def _finish(self, **fields):
        fields['logs'] = self._log_text()
        try:
            self.record = self.registry.update(self.backup_id, **fields)
        except BackupError:
            logger.exception(f"Could not record terminal state for backup {self.backup_id}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = self.engine.clock.now().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(f"[backup {self.backup_id}] {message}")

    def _log_text(self) -> str:
        return '\n'.join(self.logs)
