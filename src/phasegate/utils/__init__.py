"""Small shared helpers with no orchestration semantics."""

from phasegate.utils.hashing import sha256_bytes, sha256_file, sha256_text

__all__ = ["sha256_bytes", "sha256_file", "sha256_text"]
