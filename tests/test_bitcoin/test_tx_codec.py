"""Tests for transaction primitives — bitcoin/transaction.py."""

from __future__ import annotations

from io import BytesIO

import pytest

from charm_pay.bitcoin.script import p2wpkh_script
from charm_pay.bitcoin.transaction import (
    DEFAULT_SEQUENCE,
    Transaction,
    TxInput,
    TxOutput,
    encode_varint,
    encode_witness,
    read_varint,
    read_witness,
)

GENESIS_COINBASE = (
    "01000000010000000000000000000000000000000000000000000000000000000000000000ffffffff"
    "4d04ffff001d0104455468652054696d65732030332f4a616e2f32303039204368616e63656c6c6f72"
    "206f6e206272696e6b206f66207365636f6e64206261696c6f757420666f722062616e6b73ffffffff"
    "0100f2052a01000000434104678afdb0fe5548271967f1a67130b7105cd6a828e03909a67962e0ea1f"
    "61deb649f6bc3f4cef38c4f35504e51ec112de5c384df7ba0b8d578a4c702b6bf11d5fac00000000"
)
GENESIS_TXID = "4a5e1e4baab89f3a32518a88c31bc87f618f76673e2cc77ab2127b7afdeda33b"


def _segwit_tx() -> Transaction:
    tx = Transaction()
    tx.add_input(b"\xab" * 32, 1)
    tx.add_input(b"\xcd" * 32, 0)
    tx.add_output(50_000, p2wpkh_script(b"\x01" * 20))
    tx.inputs[0].witness = [b"\x30" * 71, b"\x02" * 33]
    return tx


class TestVarInt:
    """Variable-length integer encoding/decoding."""

    @pytest.mark.parametrize(
        ("value", "expected_len"),
        [(0, 1), (252, 1), (253, 3), (0xFFFF, 3), (0x10000, 5), (0x100000000, 9)],
    )
    def test_encode_length(self, value: int, expected_len: int) -> None:
        assert len(encode_varint(value)) == expected_len

    @pytest.mark.parametrize("value", [0, 252, 253, 65535, 65536, 0xFFFFFFFF, 0x100000000])
    def test_roundtrip(self, value: int) -> None:
        assert read_varint(BytesIO(encode_varint(value))) == value

    def test_read_empty_stream(self) -> None:
        with pytest.raises(ValueError, match="end of stream"):
            read_varint(BytesIO(b""))


class TestWitness:
    def test_roundtrip(self) -> None:
        stack = [b"", b"\x01" * 72, b"\x02" * 33]
        assert read_witness(BytesIO(encode_witness(stack))) == stack

    def test_empty_stack(self) -> None:
        assert encode_witness([]) == b"\x00"


class TestTxInput:
    def test_outpoint_uses_display_order(self) -> None:
        inp = TxInput(prev_tx_id=bytes(range(32)), prev_tx_out_index=3)
        assert inp.prev_tx_id_hex == bytes(range(32))[::-1].hex()
        assert inp.outpoint.endswith(":3")
        assert inp.sequence == DEFAULT_SEQUENCE

    def test_is_signed(self) -> None:
        assert TxInput(prev_tx_id=b"\x00" * 32, prev_tx_out_index=0).is_signed is False
        assert TxInput(b"\x00" * 32, 0, script_sig=b"\x01").is_signed is True
        assert TxInput(b"\x00" * 32, 0, witness=[b"\x01"]).is_signed is True


class TestTxOutput:
    def test_serialize_deserialize(self) -> None:
        out = TxOutput(value=123_456, script_pubkey=p2wpkh_script(b"\x07" * 20))
        restored = TxOutput.deserialize(BytesIO(out.serialize()))
        assert restored == out


class TestLegacyTransaction:
    def test_genesis_coinbase_txid(self) -> None:
        tx = Transaction.from_hex(GENESIS_COINBASE)
        assert tx.txid() == GENESIS_TXID
        assert tx.version == 1
        assert len(tx.inputs) == 1
        assert tx.outputs[0].value == 50 * 100_000_000
        assert tx.has_witness is False

    def test_reserialize_is_identical(self) -> None:
        assert Transaction.from_hex(GENESIS_COINBASE).to_hex() == GENESIS_COINBASE

    def test_trailing_bytes_rejected(self) -> None:
        with pytest.raises(ValueError, match="Trailing"):
            Transaction.from_hex(GENESIS_COINBASE + "00")

    def test_truncated_rejected(self) -> None:
        with pytest.raises(ValueError):
            Transaction.from_hex(GENESIS_COINBASE[:-10])


class TestSegwitTransaction:
    def test_marker_and_flag(self) -> None:
        raw = _segwit_tx().serialize()
        assert raw[4:6] == b"\x00\x01"

    def test_roundtrip_keeps_witness(self) -> None:
        tx = _segwit_tx()
        restored = Transaction.from_hex(tx.to_hex())
        assert restored.inputs[0].witness == tx.inputs[0].witness
        assert restored.inputs[1].witness == []
        assert restored.to_hex() == tx.to_hex()

    def test_txid_ignores_witness(self) -> None:
        tx = _segwit_tx()
        assert tx.txid() == tx.stripped().txid()
        assert tx.serialize() != tx.serialize(include_witness=False)

    def test_no_witness_serializes_legacy(self) -> None:
        tx = _segwit_tx().stripped()
        assert tx.has_witness is False
        assert tx.serialize()[4:6] != b"\x00\x01"

    def test_invalid_flag_rejected(self) -> None:
        raw = bytearray(_segwit_tx().serialize())
        raw[5] = 0x02
        with pytest.raises(ValueError, match="segwit flag"):
            Transaction.from_bytes(bytes(raw))

    def test_stripped_removes_unlocking_data(self) -> None:
        tx = _segwit_tx()
        tx.inputs[1].script_sig = b"\x51"
        stripped = tx.stripped()
        assert all(not inp.is_signed for inp in stripped.inputs)
        assert [o.value for o in stripped.outputs] == [50_000]
        # original untouched
        assert tx.inputs[0].witness
