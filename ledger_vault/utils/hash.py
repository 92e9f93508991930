"""Hashing utilities for recovery-code verification.

Recovery codes are never stored; only their SHA-256 digests are, encoded
as base64 to match the rest of the persisted metadata.
"""

import base64
import hashlib
import hmac


def hash_bytes(data: bytes, algorithm: str = "sha256") -> bytes:
    """
    Calculate the raw digest of bytes.

    Args:
        data: Bytes to hash
        algorithm: Hash algorithm

    Returns:
        Digest bytes
    """
    hasher = hashlib.new(algorithm)
    hasher.update(data)
    return hasher.digest()


def hash_string(text: str, algorithm: str = "sha256") -> str:
    """
    Calculate the hash of a string.

    Args:
        text: String to hash (UTF-8 encoded before hashing)
        algorithm: Hash algorithm

    Returns:
        Base64-encoded digest
    """
    return base64.b64encode(hash_bytes(text.encode("utf-8"), algorithm)).decode("ascii")


def verify_string_hash(text: str, expected_hash: str, algorithm: str = "sha256") -> bool:
    """
    Verify a string matches an expected base64 digest.

    Uses a constant-time comparison.

    Args:
        text: Candidate string
        expected_hash: Stored base64 digest
        algorithm: Hash algorithm

    Returns:
        True if the digest matches
    """
    if not isinstance(expected_hash, str):
        return False
    return hmac.compare_digest(hash_string(text, algorithm), expected_hash)
