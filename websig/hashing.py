import hashlib
import hmac
from typing import Protocol


class Hasher(Protocol):
    """Hash and HMAC provider used by the signing pipeline.

    Implementations must be safe to call from several threads at once, or be
    created fresh for each signer.
    """

    def hash(self, data: bytes) -> str:
        """Return the hex digest of ``data``."""
        ...

    def hmac(self, key: bytes, msg: bytes) -> bytes:
        """Return the raw HMAC of ``msg`` keyed with ``key``."""
        ...


class Sha256Hasher:
    """SHA-256 / HMAC-SHA256 provider backed by hashlib."""

    def hash(self, data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def hmac(self, key: bytes, msg: bytes) -> bytes:
        return hmac.new(key, msg, hashlib.sha256).digest()

    def __repr__(self) -> str:
        return 'Sha256Hasher()'
