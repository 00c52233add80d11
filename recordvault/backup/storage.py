"""
Blob storage handlers for backup artifacts.

Supports:
- S3BlobStore: Objects in an AWS S3 bucket
- LocalBlobStore: Files under a local directory

Both expose the same interface: put(path, data), get(path), delete(path)
and list(prefix). Paths are relative, '/'-separated keys such as
'backups/2024/01/<id>.rvbk'.
"""

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import StorageError


def _normalize_key(path: str) -> str:
    """Reject absolute or parent-relative keys."""
    if not path or not isinstance(path, str):
        raise StorageError("Blob path must be a non-empty string")
    pure = PurePosixPath(path)
    if pure.is_absolute() or '..' in pure.parts:
        raise StorageError(f"Invalid blob path: {path}")
    return str(pure)


def artifact_path_for(backup_id: str, when: datetime) -> str:
    """
    Build the blob path for a backup artifact.

    Format: backups/{YYYY}/{MM}/{backup_id}.rvbk
    """
    return f"backups/{when.year}/{when.month:02d}/{backup_id}.rvbk"


class S3BlobStore:
    """
    Blob store backed by an S3 bucket.

    Keys are stored under an optional prefix: {prefix}/{path}
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        prefix: str = '',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        client=None
    ):
        """
        Initialize S3 blob store.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            prefix: Key prefix applied to every path
            access_key: AWS access key ID (falls back to the boto3 credential chain)
            secret_key: AWS secret access key
            client: Pre-built boto3 S3 client
        """
        if not bucket_name:
            raise StorageError("S3 bucket name is not configured")

        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix.strip('/')

        if client is not None:
            self.s3_client = client
            return

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def _key(self, path: str) -> str:
        path = _normalize_key(path)
        return f"{self.prefix}/{path}" if self.prefix else path

    def _strip_prefix(self, key: str) -> str:
        if self.prefix and key.startswith(self.prefix + '/'):
            return key[len(self.prefix) + 1:]
        return key

    def put(self, path: str, data: bytes):
        """
        Upload bytes to S3.

        Raises:
            StorageError: If upload fails
        """
        key = self._key(path)
        try:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=data)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")

    def get(self, path: str) -> bytes:
        """
        Download bytes from S3.

        Raises:
            StorageError: If the object is missing or the download fails
        """
        key = self._key(path)
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            return response['Body'].read()
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('NoSuchKey', '404'):
                raise StorageError(f"Blob not found: {path}")
            raise StorageError(f"S3 download failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 download failed: {e}")

    def delete(self, path: str):
        """
        Delete an object from S3. Deleting a missing key is not an error.

        Raises:
            StorageError: If deletion fails
        """
        key = self._key(path)
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 delete failed: {e}")

    def list(self, prefix: str = '') -> List[Dict[str, Any]]:
        """
        List objects under a path prefix.

        Returns:
            List of dicts with 'path', 'modified' and 'size' keys

        Raises:
            StorageError: If listing fails
        """
        if prefix:
            full_prefix = self._key(prefix) + ('/' if prefix.endswith('/') else '')
        else:
            full_prefix = self.prefix + '/' if self.prefix else ''
        try:
            entries = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=full_prefix):
                for obj in page.get('Contents', []):
                    entries.append({
                        'path': self._strip_prefix(obj['Key']),
                        'modified': obj['LastModified'].replace(tzinfo=None).isoformat(),
                        'size': obj['Size']
                    })

            return sorted(entries, key=lambda entry: entry['path'])

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 list failed: {e}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


class LocalBlobStore:
    """
    Blob store backed by the local filesystem.

    Stores blobs as files: {base_path}/{path}
    """

    def __init__(self, base_path: str):
        """
        Initialize local blob store.

        Args:
            base_path: Base directory for blobs
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def _full_path(self, path: str) -> Path:
        return self.base_path / _normalize_key(path)

    def put(self, path: str, data: bytes):
        """
        Write bytes atomically (temp file + rename).

        Raises:
            StorageError: If the write fails
        """
        dest_path = self._full_path(path)
        tmp_name = None

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=dest_path.parent, prefix='.tmp_')
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.replace(tmp_name, dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")
        finally:
            if tmp_name and os.path.exists(tmp_name):
                os.remove(tmp_name)

    def get(self, path: str) -> bytes:
        full_path = self._full_path(path)
        try:
            return full_path.read_bytes()
        except FileNotFoundError:
            raise StorageError(f"Blob not found: {path}")
        except OSError as e:
            raise StorageError(f"Failed to read local file: {e}")

    def delete(self, path: str):
        """
        Delete a blob. Deleting a missing path is not an error.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self._full_path(path)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def list(self, prefix: str = '') -> List[Dict[str, Any]]:
        """
        List blobs under a path prefix.

        Returns:
            List of dicts with 'path', 'modified' and 'size' keys
        """
        root = self._full_path(prefix) if prefix else self.base_path
        if not root.exists():
            return []

        try:
            entries = []
            for file_path in root.rglob('*'):
                if file_path.is_file() and not file_path.name.startswith('.tmp_'):
                    stat = file_path.stat()
                    entries.append({
                        'path': file_path.relative_to(self.base_path).as_posix(),
                        'modified': datetime.fromtimestamp(stat.st_mtime, timezone.utc).replace(tzinfo=None).isoformat(),
                        'size': stat.st_size
                    })
            return sorted(entries, key=lambda entry: entry['path'])
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def test_connection(self) -> bool:
        """
        Check the base directory exists and is writable.

        Raises:
            StorageError: If the directory is missing or read-only
        """
        if not self.base_path.is_dir():
            raise StorageError(f"Backup directory does not exist: {self.base_path}")
        if not os.access(self.base_path, os.W_OK):
            raise StorageError(f"Backup directory is not writable: {self.base_path}")
        return True


def create_blob_store(config) -> Any:
    """
    Build the blob store selected by configuration.

    Args:
        config: Mapping with BLOB_STORE and the matching backend settings

    Returns:
        S3BlobStore or LocalBlobStore

    Raises:
        StorageError: If BLOB_STORE is unknown or misconfigured
    """
    backend = config.get('BLOB_STORE', 'local')

    if backend == 'local':
        return LocalBlobStore(config['LOCAL_BACKUP_DIR'])

    if backend == 's3':
        return S3BlobStore(
            bucket_name=config.get('S3_BUCKET'),
            region=config.get('S3_REGION') or 'us-east-1',
            prefix=config.get('S3_PREFIX') or '',
            access_key=config.get('AWS_ACCESS_KEY_ID'),
            secret_key=config.get('AWS_SECRET_ACCESS_KEY')
        )

    raise StorageError(f"Unknown BLOB_STORE backend: {backend}. Valid options: ['local', 's3']")
