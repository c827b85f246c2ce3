"""Script classification — witness vs. legacy spend types.

Recognises the standard Bitcoin locking scripts by prefix so the signing
layer knows whether an input needs a witness UTXO (script + value) or the
full previous transaction:
- Witness-bearing: P2WPKH, P2WSH, P2TR
- Legacy: P2PKH, P2SH, P2PK
- NULL_DATA (OP_RETURN) and UNKNOWN
"""

from __future__ import annotations

import enum

# ---------------------------------------------------------------------------
# Opcodes
# ---------------------------------------------------------------------------


class OpCode(int, enum.Enum):
    """Commonly used Bitcoin opcodes."""

    OP_0 = 0x00
    OP_PUSHDATA1 = 0x4C
    OP_PUSHDATA2 = 0x4D
    OP_PUSHDATA4 = 0x4E
    OP_1 = 0x51
    OP_RETURN = 0x6A
    OP_DUP = 0x76
    OP_EQUAL = 0x87
    OP_EQUALVERIFY = 0x88
    OP_HASH160 = 0xA9
    OP_CHECKSIG = 0xAC


# ---------------------------------------------------------------------------
# Script Type
# ---------------------------------------------------------------------------


class ScriptType(enum.StrEnum):
    """Known script types."""

    P2WPKH = "witness_v0_keyhash"
    P2WSH = "witness_v0_scripthash"
    P2TR = "witness_v1_taproot"
    P2PKH = "pubkeyhash"
    P2SH = "scripthash"
    P2PK = "pubkey"
    NULL_DATA = "nulldata"
    UNKNOWN = "unknown"

    @property
    def is_witness(self) -> bool:
        """Whether spends of this type are signed over witness UTXO data."""
        return self in _WITNESS_TYPES


_WITNESS_TYPES = frozenset({ScriptType.P2WPKH, ScriptType.P2WSH, ScriptType.P2TR})


# ---------------------------------------------------------------------------
# Data push helpers
# ---------------------------------------------------------------------------


def push_data(data: bytes) -> bytes:
    """Encode a data push operation using minimal encoding rules.

    Args:
        data: Arbitrary data bytes.

    Returns:
        The opcode(s) + data for a minimal push of *data*.
    """
    length = len(data)
    if length == 0:
        return bytes([OpCode.OP_0])
    if length <= 0x4B:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OpCode.OP_PUSHDATA1, length]) + data
    if length <= 0xFFFF:
        return bytes([OpCode.OP_PUSHDATA2]) + length.to_bytes(2, "little") + data
    return bytes([OpCode.OP_PUSHDATA4]) + length.to_bytes(4, "little") + data


# ---------------------------------------------------------------------------
# Locking scripts
# ---------------------------------------------------------------------------


def p2wpkh_script(pubkey_hash: bytes) -> bytes:
    """``OP_0 <20-byte hash>``."""
    if len(pubkey_hash) != 20:
        msg = f"pubkey_hash must be 20 bytes, got {len(pubkey_hash)}"
        raise ValueError(msg)
    return bytes([OpCode.OP_0]) + push_data(pubkey_hash)


def p2tr_script(output_key: bytes) -> bytes:
    """``OP_1 <32-byte x-only key>``."""
    if len(output_key) != 32:
        msg = f"output_key must be 32 bytes, got {len(output_key)}"
        raise ValueError(msg)
    return bytes([OpCode.OP_1]) + push_data(output_key)


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """``OP_DUP OP_HASH160 <20> OP_EQUALVERIFY OP_CHECKSIG``."""
    if len(pubkey_hash) != 20:
        msg = f"pubkey_hash must be 20 bytes, got {len(pubkey_hash)}"
        raise ValueError(msg)
    return (
        bytes([OpCode.OP_DUP, OpCode.OP_HASH160])
        + push_data(pubkey_hash)
        + bytes([OpCode.OP_EQUALVERIFY, OpCode.OP_CHECKSIG])
    )


# ---------------------------------------------------------------------------
# Script type detection
# ---------------------------------------------------------------------------


def detect_script_type(script: bytes) -> ScriptType:
    """Detect the type of a locking script.

    Returns:
        The detected :class:`ScriptType`.
    """
    if len(script) == 0:
        return ScriptType.UNKNOWN

    # Segwit v0: OP_0 <20|32>
    if script[0] == OpCode.OP_0 and len(script) == 22 and script[1] == 0x14:
        return ScriptType.P2WPKH
    if script[0] == OpCode.OP_0 and len(script) == 34 and script[1] == 0x20:
        return ScriptType.P2WSH

    # Segwit v1: OP_1 <32>
    if script[0] == OpCode.OP_1 and len(script) == 34 and script[1] == 0x20:
        return ScriptType.P2TR

    if (
        len(script) == 25
        and script[0] == OpCode.OP_DUP
        and script[1] == OpCode.OP_HASH160
        and script[2] == 0x14
        and script[23] == OpCode.OP_EQUALVERIFY
        and script[24] == OpCode.OP_CHECKSIG
    ):
        return ScriptType.P2PKH

    if (
        len(script) == 23
        and script[0] == OpCode.OP_HASH160
        and script[1] == 0x14
        and script[22] == OpCode.OP_EQUAL
    ):
        return ScriptType.P2SH

    if script[0] == OpCode.OP_RETURN:
        return ScriptType.NULL_DATA

    if len(script) == 35 and script[0] == 0x21 and script[34] == OpCode.OP_CHECKSIG:
        return ScriptType.P2PK
    if len(script) == 67 and script[0] == 0x41 and script[66] == OpCode.OP_CHECKSIG:
        return ScriptType.P2PK

    return ScriptType.UNKNOWN


def is_witness_script(script: bytes) -> bool:
    """Whether spending *script* uses witness (segwit/taproot) signing."""
    return detect_script_type(script).is_witness
