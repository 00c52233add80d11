"""
Backup module for RecordVault.

This module handles the core backup functionality including:
- Snapshot capture of record collections and file manifests
- Compression and artifact packing
- Blob storage (S3 and local)
- Execution orchestration, progress and cancellation
- Retention policy enforcement and restore

The database-backed pieces (registry, record store) live in
recordvault.backup.registry and recordvault.backup.records.
"""

from .engine import BackupEngine, InlineExecutor
from .errors import (
    BackupError,
    ValidationError,
    Conflict,
    PreconditionFailed,
    NotFound,
    PermissionDenied,
    IntegrityError,
    CompressionError,
    StorageError,
    AdapterUnavailable,
    PartialFailure,
)
from .types import (
    BackupConfig,
    BackupKind,
    BackupRecord,
    BackupStatus,
    CompressionMode,
    ProgressEvent,
    RestoreReport,
    RestoreRequest,
    SnapshotPayload,
    ValidationReport,
)
from .storage import S3BlobStore, LocalBlobStore, create_blob_store
from .retention import RetentionManager
from .scheduling import BackupScheduler

__all__ = [
    'BackupEngine',
    'InlineExecutor',
    'BackupError',
    'ValidationError',
    'Conflict',
    'PreconditionFailed',
    'NotFound',
    'PermissionDenied',
    'IntegrityError',
    'CompressionError',
    'StorageError',
    'AdapterUnavailable',
    'PartialFailure',
    'BackupConfig',
    'BackupKind',
    'BackupRecord',
    'BackupStatus',
    'CompressionMode',
    'ProgressEvent',
    'RestoreReport',
    'RestoreRequest',
    'SnapshotPayload',
    'ValidationReport',
    'S3BlobStore',
    'LocalBlobStore',
    'create_blob_store',
    'RetentionManager',
    'BackupScheduler',
]
