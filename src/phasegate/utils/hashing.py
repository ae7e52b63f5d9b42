"""SHA-256 hex digests for plan fingerprints and migration checksums."""

from __future__ import annotations

import hashlib
import os
from functools import partial
from pathlib import Path

__all__ = ["sha256_bytes", "sha256_file", "sha256_text"]


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Digest of ``text`` once encoded; canonical JSON is hashed through here."""
    return sha256_bytes(text.encode(encoding))


def sha256_file(path: str | os.PathLike[str], *, chunk_size: int = 1 << 20) -> str:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    digest = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for block in iter(partial(handle.read, chunk_size), b""):
            digest.update(block)
    return digest.hexdigest()
