"""
Retention policy enforcement for backups.

Policies, applied in order on every sweep:
1. Expiry by age: completed backups past expires_at lose their artifact and
   become 'expired' (metadata kept for audit); failed/cancelled records past
   expires_at are removed.
2. Cap by count: if more than max_backups completed backups remain, the
   oldest are removed until exactly max_backups are left.

Expired records are purged from the registry once they are older than
expires_at + expired_audit_days. Pending and running records are never touched.
"""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from .errors import BackupError, StorageError
from .types import BackupConfig, BackupRecord, BackupStatus

logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Sweeps the registry and blob store according to the backup policy.
    """

    def __init__(
        self,
        registry,
        blob_store,
        clock,
        config_loader: Callable[[], BackupConfig],
        expired_audit_days: int = 7
    ):
        """
        Args:
            registry: BackupRegistry
            blob_store: BlobStore holding the artifacts
            clock: Clock with now()
            config_loader: Returns the current BackupConfig
            expired_audit_days: Days an expired record's metadata is kept
        """
        self.registry = registry
        self.blob_store = blob_store
        self.clock = clock
        self.config_loader = config_loader
        self.expired_audit_days = expired_audit_days
        self.logs: List[str] = []

    def sweep(self, config: Optional[BackupConfig] = None) -> Dict[str, Any]:
        """
        Run one retention pass.

        Returns:
            Dict with summary of cleanup operations:
            {
                'deleted': List[str],   # ids expired or removed by policy
                'purged': List[str],    # expired ids whose audit window ended
                'errors': List[str],
                'logs': List[str]
            }
        """
        config = config or self.config_loader()
        now = self.clock.now()
        self.logs = []
        summary = {'deleted': [], 'purged': [], 'errors': []}

        self._log(f"Starting retention sweep (max_backups={config.max_backups})")

        # Policy 1: expiry by age
        for record in self.registry.list(statuses=[BackupStatus.COMPLETED]):
            if record.expires_at and record.expires_at <= now:
                self._attempt(summary, record, self._expire, 'deleted')

        for record in self.registry.list(statuses=[BackupStatus.FAILED, BackupStatus.CANCELLED]):
            cutoff = record.expires_at or record.started_at + timedelta(days=record.retention_days)
            if cutoff <= now:
                self._attempt(summary, record, self._remove, 'deleted')

        # Policy 2: cap by count (newest first, so the tail is the oldest)
        remaining = self.registry.list(statuses=[BackupStatus.COMPLETED])
        if len(remaining) > config.max_backups:
            for record in reversed(remaining[config.max_backups:]):
                self._attempt(summary, record, self._remove, 'deleted')

        # Audit window for expired metadata
        audit_window = timedelta(days=self.expired_audit_days)
        for record in self.registry.list(statuses=[BackupStatus.EXPIRED]):
            anchor = record.expires_at or record.started_at
            if anchor + audit_window <= now:
                self._attempt(summary, record, self._remove, 'purged')

        self._log(
            f"Retention sweep complete. Deleted: {len(summary['deleted'])}, "
            f"purged: {len(summary['purged'])}, errors: {len(summary['errors'])}"
        )
        summary['logs'] = self.logs
        return summary

    def _attempt(self, summary: Dict[str, Any], record: BackupRecord, action, bucket: str):
        try:
            action(record)
            summary[bucket].append(record.id)
        except BackupError as e:
            error_msg = f"Failed to apply retention to backup {record.id}: {e}"
            self._log(error_msg)
            summary['errors'].append(error_msg)

    def _delete_artifact(self, record: BackupRecord):
        if record.artifact_path:
            self.blob_store.delete(record.artifact_path)

    def _expire(self, record: BackupRecord):
        self._delete_artifact(record)
        self.registry.update(record.id, status=BackupStatus.EXPIRED)
        self._log(f"Expired backup {record.id} ({record.name}); artifact deleted")

    def _remove(self, record: BackupRecord):
        try:
            self._delete_artifact(record)
        except StorageError:
            if record.status == BackupStatus.COMPLETED:
                raise
            # Failed/cancelled runs never published their artifact
            self._log(f"Could not delete stray artifact for backup {record.id}")
        self.registry.delete(record.id)
        self._log(f"Removed backup {record.id} ({record.name}, {record.status.value})")

    def _log(self, message: str):
        self.logs.append(message)
        logger.info(message)
