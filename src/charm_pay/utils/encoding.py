"""Hex and base64 helpers shared by the chain, prover and wallet layers."""

from __future__ import annotations

import base64
import binascii
import string

_HEX_DIGITS = frozenset(string.hexdigits)


def is_hex(text: str) -> bool:
    """True if *text* is non-empty, even-length hexadecimal."""
    return bool(text) and len(text) % 2 == 0 and all(c in _HEX_DIGITS for c in text)


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """Decode standard base64, raising ValueError on malformed input."""
    try:
        return base64.b64decode(text, validate=True)
    except binascii.Error as exc:
        msg = f"Invalid base64 data: {exc}"
        raise ValueError(msg) from exc
