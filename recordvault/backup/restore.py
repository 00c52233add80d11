"""
Restore Orchestrator - writes a verified snapshot back into the live stores.

Restore is a FULL REPLACE, not a merge: each target collection's current
contents are discarded and replaced with the snapshot's records. Operators
must pass confirm_overwrite=True to acknowledge this.

Order of checks (no write happens before all of them pass):
1. Caller holds the backup.restore capability
2. Backup exists and is completed
3. Overwrite was confirmed
4. Requested targets exist in the snapshot
5. Artifact loads, matches its checksum and decompresses
"""

import base64
import binascii
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, List, Tuple

from .compression import decompress, unpack_artifact
from .errors import (
    IntegrityError,
    NotFound,
    PartialFailure,
    PermissionDenied,
    PreconditionFailed,
    StorageError,
    ValidationError,
)
from .integrity import verify
from .snapshot import ordered_unique
from .types import (
    CAP_RESTORE,
    BackupRecord,
    BackupStatus,
    RestoreReport,
    RestoreRequest,
    SnapshotPayload,
)

logger = logging.getLogger(__name__)


class CollectionLocks:
    """
    Logical per-collection locks for exclusive write-back.

    Locks are always taken in sorted order to rule out lock-order deadlocks
    between overlapping restores.
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(name, threading.Lock())

    @contextmanager
    def hold(self, names: Iterable[str]):
        locks = [self._lock_for(name) for name in sorted(set(names))]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def is_locked(self, name: str) -> bool:
        return self._lock_for(name).locked()


def load_verified_artifact(blob_store, record: BackupRecord) -> Tuple[dict, SnapshotPayload]:
    """
    Load a completed backup's artifact, verify it and decode the snapshot.

    Returns:
        (artifact header, SnapshotPayload)

    Raises:
        StorageError: If the artifact cannot be read
        IntegrityError: If the checksum does not match or decoding fails
    """
    if not record.artifact_path:
        raise IntegrityError(f"Backup {record.id} has no artifact")

    blob = blob_store.get(record.artifact_path)

    if not verify(blob, record.checksum):
        raise IntegrityError(f"Checksum mismatch for backup {record.id}; the artifact may be corrupt")

    header, body = unpack_artifact(blob)
    payload = decompress(body, record.compression)
    return header, payload


class RestoreOrchestrator:

    def __init__(self, registry, record_store, blob_store, auth, locks: CollectionLocks = None):
        self.registry = registry
        self.record_store = record_store
        self.blob_store = blob_store
        self.auth = auth
        self.locks = locks or CollectionLocks()

    def restore(self, request: RestoreRequest) -> RestoreReport:
        """
        Restore a completed backup into the live stores.

        Args:
            request: RestoreRequest

        Returns:
            RestoreReport listing what was replaced

        Raises:
            PermissionDenied: Caller lacks backup.restore
            NotFound: backup_id is not a completed backup
            PreconditionFailed: confirm_overwrite is not True
            ValidationError: Nothing to restore, or unknown target collections
            IntegrityError: Artifact checksum or decoding failure
            StorageError: Write-back failed before any collection was replaced
            PartialFailure: Write-back failed after some collections were replaced
        """
        actor_id = self.auth.current_actor_id()
        if actor_id is None or not self.auth.has_capability(actor_id, CAP_RESTORE):
            raise PermissionDenied("Restoring backups requires the backup.restore capability")

        record = self.registry.find(request.backup_id)
        if record is None or record.status != BackupStatus.COMPLETED:
            raise NotFound(f"No completed backup with id {request.backup_id}")

        if request.confirm_overwrite is not True:
            raise PreconditionFailed(
                "Restore replaces live data wholesale; set confirm_overwrite to proceed"
            )

        if not request.restore_records and not request.restore_files:
            raise ValidationError("Nothing to restore: enable restore_records or restore_files")

        if request.restore_records and request.target_collections is not None:
            unknown = [
                name for name in request.target_collections
                if name not in record.collections_included
            ]
            if unknown:
                raise ValidationError(f"Collections not captured in backup {record.id}: {unknown}")

        _, payload = load_verified_artifact(self.blob_store, record)

        report = RestoreReport(backup_id=record.id)

        if request.restore_records:
            targets = self._resolve_targets(payload, request)
            self._replace_collections(payload, targets, report)

        if request.restore_files:
            self._restore_files(payload, report)

        logger.info(
            f"Restored backup {record.id}: collections={report.restored_collections} "
            f"files={report.restored_files}"
        )
        return report

    def _resolve_targets(self, payload: SnapshotPayload, request: RestoreRequest) -> List[str]:
        if request.target_collections is None:
            ordered = payload.metadata.get('collections') or list(payload.collections)
            return [name for name in ordered_unique(ordered) if name in payload.collections]

        targets = ordered_unique(request.target_collections)
        missing = [name for name in targets if name not in payload.collections]
        if missing:
            raise IntegrityError(f"Artifact does not contain collections {missing}")
        return targets

    def _replace_collections(self, payload: SnapshotPayload, targets: List[str], report: RestoreReport):
        with self.locks.hold(targets):
            for index, name in enumerate(targets):
                try:
                    self.record_store.replace_all(name, payload.collections[name])
                except Exception as e:
                    logger.error(f"Restore of collection {name} failed: {e}")
                    if report.restored_collections:
                        raise PartialFailure(
                            restored=report.restored_collections,
                            failed=[name],
                            skipped=targets[index + 1:],
                            cause=e
                        ) from e
                    raise StorageError(
                        f"Restore failed on collection {name}; no collections were changed: {e}"
                    ) from e
                report.restored_collections.append(name)

    def _restore_files(self, payload: SnapshotPayload, report: RestoreReport):
        if not payload.files:
            report.warnings.append("Backup has no file manifest; file restore skipped")
            return

        prefixes = payload.metadata.get('file_groups') or {}

        for group, entries in payload.files.items():
            if any('content' not in entry for entry in entries):
                report.warnings.append(
                    f"File group {group} was captured without contents and cannot be restored"
                )
                continue

            prefix = prefixes.get(group)
            if prefix is None:
                report.warnings.append(f"File group {group} has no recorded prefix; skipped")
                continue

            try:
                self._replace_file_group(prefix, entries)
            except Exception as e:
                logger.error(f"Restore of file group {group} failed: {e}")
                restored = report.restored_collections + [f"files:{name}" for name in report.restored_files]
                if restored:
                    raise PartialFailure(restored=restored, failed=[f"files:{group}"], cause=e) from e
                raise StorageError(f"Restore failed on file group {group}: {e}") from e

            report.restored_files.append(group)

    def _replace_file_group(self, prefix: str, entries: List[dict]):
        decoded = {}
        for entry in entries:
            try:
                decoded[entry['path']] = base64.b64decode(entry['content'], validate=True)
            except (binascii.Error, ValueError) as e:
                raise IntegrityError(f"File {entry['path']} has corrupt contents: {e}")

        for existing in self.blob_store.list(prefix):
            if existing['path'] not in decoded:
                self.blob_store.delete(existing['path'])

        for path, content in decoded.items():
            self.blob_store.put(path, content)
