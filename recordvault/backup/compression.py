"""
Snapshot codecs and the artifact container.

Supported compression modes:
- none: canonical JSON, UTF-8
- gzip: gzip stream of the JSON (mtime pinned to 0)
- zip: single-member zip archive ('snapshot.json', deflated)

An artifact is the metadata header followed by the compressed snapshot:

    b'RVBK' | version (1 byte) | header length (4 bytes, big-endian) | header JSON | body
"""

import gzip
import io
import json
import struct
import zipfile
import zlib
from datetime import datetime
from typing import Any, Dict, Tuple, Union

from .errors import CompressionError, ValidationError
from .types import CompressionMode, SnapshotPayload, parse_enum

ARTIFACT_MAGIC = b'RVBK'
ARTIFACT_VERSION = 1
ZIP_MEMBER_NAME = 'snapshot.json'

_HEADER_STRUCT = struct.Struct('>4sBI')


def _coerce_mode(mode: Union[str, CompressionMode]) -> CompressionMode:
    try:
        return parse_enum(CompressionMode, mode, 'compression mode')
    except ValidationError as e:
        raise CompressionError(str(e))


def serialize_payload(payload: SnapshotPayload) -> bytes:
    """
    Encode a payload as canonical JSON bytes.

    Raises:
        CompressionError: If the payload holds values JSON cannot represent
    """
    try:
        return json.dumps(
            payload.to_dict(),
            sort_keys=True,
            separators=(',', ':'),
            ensure_ascii=False,
            allow_nan=False
        ).encode('utf-8')
    except (TypeError, ValueError) as e:
        raise CompressionError(f"Snapshot payload is not serializable: {e}")


def deserialize_payload(data: bytes) -> SnapshotPayload:
    try:
        return SnapshotPayload.from_dict(json.loads(data.decode('utf-8')))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CompressionError(f"Snapshot payload is not valid JSON: {e}")
    except Exception as e:
        raise CompressionError(f"Snapshot payload has an invalid structure: {e}")


def compress(payload: SnapshotPayload, mode: Union[str, CompressionMode] = CompressionMode.GZIP) -> bytes:
    """
    Serialize and compress a snapshot payload.

    Args:
        payload: Snapshot to encode
        mode: Compression mode ('none', 'gzip', 'zip')

    Returns:
        Encoded bytes

    Raises:
        CompressionError: If the payload or mode is invalid
    """
    mode = _coerce_mode(mode)
    raw = serialize_payload(payload)

    if mode is CompressionMode.NONE:
        return raw

    if mode is CompressionMode.GZIP:
        return gzip.compress(raw, mtime=0)

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w', zipfile.ZIP_DEFLATED) as zipf:
        # Fixed timestamp keeps identical payloads byte-identical
        info = zipfile.ZipInfo(ZIP_MEMBER_NAME, date_time=(1980, 1, 1, 0, 0, 0))
        info.compress_type = zipfile.ZIP_DEFLATED
        zipf.writestr(info, raw)
    return buffer.getvalue()


def decompress(data: bytes, mode: Union[str, CompressionMode] = CompressionMode.GZIP) -> SnapshotPayload:
    """
    Decompress and decode bytes produced by compress().

    Args:
        data: Encoded bytes
        mode: Compression mode the bytes were produced with

    Returns:
        The decoded SnapshotPayload

    Raises:
        CompressionError: If the bytes cannot be decoded with `mode`
    """
    mode = _coerce_mode(mode)

    try:
        if mode is CompressionMode.NONE:
            raw = data
        elif mode is CompressionMode.GZIP:
            raw = gzip.decompress(data)
        else:
            with zipfile.ZipFile(io.BytesIO(data), 'r') as zipf:
                raw = zipf.read(ZIP_MEMBER_NAME)
    except (OSError, EOFError, zlib.error, zipfile.BadZipFile, KeyError) as e:
        raise CompressionError(f"Failed to decompress snapshot ({mode.value}): {e}")

    return deserialize_payload(raw)


def pack_artifact(header: Dict[str, Any], body: bytes) -> bytes:
    """
    Build the artifact blob: metadata block followed by the compressed snapshot.

    Args:
        header: JSON-serializable metadata block
        body: Compressed snapshot bytes

    Returns:
        The complete artifact bytes
    """
    header = dict(header, payload_bytes=len(body))
    try:
        header_bytes = json.dumps(header, sort_keys=True, default=_json_default).encode('utf-8')
    except (TypeError, ValueError) as e:
        raise CompressionError(f"Artifact header is not serializable: {e}")
    return _HEADER_STRUCT.pack(ARTIFACT_MAGIC, ARTIFACT_VERSION, len(header_bytes)) + header_bytes + body


def unpack_artifact(blob: bytes) -> Tuple[Dict[str, Any], bytes]:
    """
    Split an artifact into its header and compressed body.

    Raises:
        CompressionError: If the container is truncated or malformed
    """
    if len(blob) < _HEADER_STRUCT.size:
        raise CompressionError("Artifact is truncated")

    magic, version, header_length = _HEADER_STRUCT.unpack_from(blob)
    if magic != ARTIFACT_MAGIC:
        raise CompressionError("Artifact has an unknown format")
    if version != ARTIFACT_VERSION:
        raise CompressionError(f"Unsupported artifact version: {version}")

    start = _HEADER_STRUCT.size
    end = start + header_length
    if end > len(blob):
        raise CompressionError("Artifact header is truncated")

    try:
        header = json.loads(blob[start:end].decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CompressionError(f"Artifact header is corrupt: {e}")

    body = blob[end:]
    expected = header.get('payload_bytes')
    if expected is not None and expected != len(body):
        raise CompressionError(
            f"Artifact body length mismatch (expected {expected}, found {len(body)})"
        )
    return header, body


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, 'value'):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
