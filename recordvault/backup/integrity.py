"""
Content checksums for backup artifacts.

SHA-256 over the exact bytes written to the blob store, hex encoded.
"""

import hashlib
import hmac

CHECKSUM_ALGORITHM = 'sha256'


def checksum(data: bytes) -> str:
    """
    Compute the checksum of a byte string.

    Args:
        data: Bytes to digest

    Returns:
        Lowercase hex digest
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError(f"checksum() expects bytes, got {type(data).__name__}")
    return hashlib.sha256(data).hexdigest()


def verify(data: bytes, digest: str) -> bool:
    """
    Check bytes against a previously computed checksum.

    Args:
        data: Bytes to check
        digest: Expected hex digest

    Returns:
        True if the freshly computed checksum equals `digest`
    """
    if not digest:
        return False
    return hmac.compare_digest(checksum(data), digest.lower())
