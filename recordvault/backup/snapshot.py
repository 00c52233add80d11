"""
Snapshot Builder - captures the configured collections into one payload.

A read failure for a single collection does not sink the backup: the
collection is captured as an empty list and a warning is attached to the
payload metadata. Only an unreachable record store aborts the build.
"""

import base64
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .errors import AdapterUnavailable, StorageError
from .types import SnapshotPayload

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = '1.0'


def ordered_unique(names: Iterable[str]) -> List[str]:
    """Drop duplicate collection names, keeping first occurrence order."""
    seen = set()
    result = []
    for name in names:
        if name not in seen:
            seen.add(name)
            result.append(name)
    return result


class SnapshotBuilder:
    """
    Reads collections (and optionally a file manifest) into a SnapshotPayload.
    """

    def __init__(
        self,
        record_store,
        blob_store=None,
        file_groups: Optional[Dict[str, str]] = None,
        include_file_contents: bool = False
    ):
        """
        Args:
            record_store: RecordStore adapter (read_all / replace_all)
            blob_store: BlobStore adapter used for the file manifest
            file_groups: Mapping of group name to blob prefix, e.g. {'media': 'media/'}
            include_file_contents: Embed file bytes in the manifest
        """
        self.record_store = record_store
        self.blob_store = blob_store
        self.file_groups = dict(file_groups or {})
        self.include_file_contents = include_file_contents

    def build(
        self,
        collections: Iterable[str],
        include_files: bool = False,
        kind: str = 'manual',
        created_at: Optional[datetime] = None,
        backup_id: Optional[str] = None
    ) -> SnapshotPayload:
        """
        Build a snapshot payload.

        Args:
            collections: Collection names to capture, in order
            include_files: Capture the file manifest as well
            kind: Backup kind recorded in the metadata block
            created_at: Snapshot timestamp recorded in the metadata block
            backup_id: Owning backup id, recorded in the metadata block

        Returns:
            SnapshotPayload

        Raises:
            AdapterUnavailable: If the record store cannot be reached at all
        """
        names = ordered_unique(collections)
        warnings: List[str] = []

        data = {}
        for name in names:
            data[name] = self._read_collection(name, warnings)

        files = self.build_file_manifest(warnings) if include_files else None

        metadata = {
            'version': SNAPSHOT_VERSION,
            'backup_id': backup_id,
            'kind': getattr(kind, 'value', kind),
            'collections': names,
            'created_at': created_at.isoformat() if created_at else None,
            'include_files': bool(include_files),
            'record_counts': {name: len(records) for name, records in data.items()},
            'warnings': warnings,
        }
        if include_files:
            metadata['file_groups'] = dict(self.file_groups)

        return SnapshotPayload(collections=data, metadata=metadata, files=files)

    def _read_collection(self, name: str, warnings: List[str]) -> List[Dict[str, Any]]:
        try:
            records = self.record_store.read_all(name)
        except AdapterUnavailable:
            raise
        except Exception as e:
            message = f"Collection {name} could not be read and was captured empty: {e}"
            logger.warning(message)
            warnings.append(message)
            return []

        if not isinstance(records, list):
            records = list(records or [])
        return records

    def attach_files(self, payload: SnapshotPayload) -> SnapshotPayload:
        """Add the file manifest to an already built payload."""
        payload.files = self.build_file_manifest(payload.warnings)
        payload.metadata['include_files'] = True
        payload.metadata['file_groups'] = dict(self.file_groups)
        return payload

    def build_file_manifest(self, warnings: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        """
        List the files of every configured group through the blob store.

        File bytes are only read when include_file_contents is enabled.
        """
        manifest: Dict[str, List[Dict[str, Any]]] = {}

        if self.blob_store is None:
            warnings.append("File manifest skipped: no blob store configured")
            return manifest

        for group, prefix in self.file_groups.items():
            try:
                entries = [dict(entry) for entry in self.blob_store.list(prefix)]
                if self.include_file_contents:
                    for entry in entries:
                        content = self.blob_store.get(entry['path'])
                        entry['content'] = base64.b64encode(content).decode('ascii')
                manifest[group] = entries
            except StorageError as e:
                message = f"File group {group} could not be listed and was captured empty: {e}"
                logger.warning(message)
                warnings.append(message)
                manifest[group] = []

        return manifest
