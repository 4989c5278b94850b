"""
Cryptographic Hashing Utilities — payload fingerprints and HMAC helpers.
"""
import hashlib
import hmac


def hash_bytes(raw: bytes) -> str:
    """SHA-256 fingerprint of a raw request body."""
    return hashlib.sha256(raw).hexdigest()


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def constant_time_equals(expected: str, received: str) -> bool:
    """Compare two signatures without leaking timing information."""
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))
