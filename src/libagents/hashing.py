"""Content fingerprints for installed and upstream files."""

from __future__ import annotations

import hashlib
from pathlib import Path

# Never a valid hex digest, so it cannot collide with real content.
MISSING_HASH = "missing"


def hash_bytes(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def hash_file(path: Path) -> str:
    """Compute the SHA-256 of a file's content.

    Symlinks are followed, so a linked install hashes the same as a
    copied one. A path that does not resolve to a regular file yields
    MISSING_HASH instead of raising.

    Args:
        path: File to hash.

    Returns:
        str: Hex digest, or MISSING_HASH.
    """
    path = Path(path)
    if not path.is_file():
        return MISSING_HASH
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()
