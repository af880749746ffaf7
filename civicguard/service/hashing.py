"""One-way hashing of refresh secrets and single-use tokens.

Stored hashes carry a version prefix (``v1:<hex>``) so the scheme can be
rotated: lookups compute the digest under every accepted version and match any
of them, which keeps outstanding sessions and tokens valid across a change of
the current version.
"""

from __future__ import annotations

import hashlib
import secrets
from typing import Callable, Dict, List

TOKEN_BYTES = 32

# version -> digest function over the raw secret
HASH_SCHEMES: Dict[str, Callable[[str], str]] = {
    "v1": lambda raw: hashlib.sha256(raw.encode("utf-8")).hexdigest(),
}


def generate_secret(nbytes: int = TOKEN_BYTES) -> str:
    """Return a hex-encoded random secret of ``nbytes`` (256 bits by default)."""
    if nbytes < TOKEN_BYTES:
        raise ValueError(f"secrets must carry at least {TOKEN_BYTES * 8} bits of entropy")
    return secrets.token_hex(nbytes)


class SecretHasher:
    """Hash secrets with the current scheme and match against accepted ones."""

    def __init__(self, version: str = "v1", *, accept_legacy: bool = False) -> None:
        if version not in HASH_SCHEMES:
            raise ValueError(f"unknown hash version {version!r}")
        self.version = version
        self.accept_legacy = accept_legacy

    def hash(self, raw: str) -> str:
        return f"{self.version}:{HASH_SCHEMES[self.version](raw)}"

    def candidates(self, raw: str) -> List[str]:
        """All stored forms ``raw`` may have been persisted under, current first."""
        hashes = [self.hash(raw)]
        for version, fn in HASH_SCHEMES.items():
            if version != self.version:
                hashes.append(f"{version}:{fn(raw)}")
        if self.accept_legacy:
            # Pre-versioning rows stored the bare SHA-256 hex digest
            hashes.append(hashlib.sha256(raw.encode("utf-8")).hexdigest())
        return hashes

    @staticmethod
    def version_of(stored: str) -> str | None:
        prefix, sep, _ = stored.partition(":")
        if sep and prefix in HASH_SCHEMES:
            return prefix
        return None

    def needs_rehash(self, stored: str) -> bool:
        return self.version_of(stored) != self.version
