"""gzip helpers for tile payloads."""

from __future__ import annotations

import gzip

GZIP_MAGIC = b"\x1f\x8b"


def is_gzipped(data: bytes) -> bool:
    """Return True when ``data`` starts with the gzip magic bytes."""
    return data[:2] == GZIP_MAGIC


def gunzip_if_needed(data: bytes) -> bytes:
    """Decompress gzip framed data, pass anything else through."""
    if is_gzipped(data):
        return gzip.decompress(data)
    return data


def gzip_bytes(data: bytes) -> bytes:
    """Compress ``data`` with a zeroed timestamp so output is reproducible."""
    return gzip.compress(data, mtime=0)
