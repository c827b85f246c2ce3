"""Cryptographic helpers — hashing."""

from __future__ import annotations

import hashlib


def sha256(data: bytes) -> bytes:
    """Single SHA-256 hash."""
    return hashlib.sha256(data).digest()


def sha256d(data: bytes) -> bytes:
    """Double SHA-256 hash (SHA256(SHA256(data)))."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def sha256_hex(text: str) -> str:
    """SHA-256 of a UTF-8 string, hex encoded."""
    return sha256(text.encode("utf-8")).hex()
