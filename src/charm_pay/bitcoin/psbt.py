"""Partially Signed Bitcoin Transactions (BIP-174, version 0).

Just enough of the format to hand an unsigned transaction to a wallet and
read the signed result back:

- Global map: unsigned transaction (0x00); other keys kept verbatim.
- Input maps: non-witness UTXO (0x00), witness UTXO (0x01), partial
  signatures (0x02), final scriptSig (0x07), final scriptWitness (0x08),
  taproot key-path signature (0x13); other keys kept verbatim.
- Output maps: kept verbatim.

:meth:`Psbt.finalize` turns a signed PSBT into a broadcastable
:class:`~charm_pay.bitcoin.transaction.Transaction`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from io import BytesIO

from charm_pay.bitcoin.script import ScriptType, detect_script_type, push_data
from charm_pay.bitcoin.transaction import (
    Transaction,
    TxOutput,
    encode_bytes,
    encode_witness,
    read_bytes,
    read_varint,
    read_witness,
)
from charm_pay.utils.encoding import b64decode, b64encode

PSBT_MAGIC = b"psbt\xff"

# Global keys
PSBT_GLOBAL_UNSIGNED_TX = 0x00

# Input keys
PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08
PSBT_IN_TAP_KEY_SIG = 0x13


def _kv(key: bytes, value: bytes) -> bytes:
    """Encode one PSBT key-value pair."""
    return encode_bytes(key) + encode_bytes(value)


def _read_map(stream: BytesIO) -> list[tuple[bytes, bytes]]:
    """Read key-value pairs up to the 0x00 separator."""
    pairs: list[tuple[bytes, bytes]] = []
    while True:
        key_len = read_varint(stream)
        if key_len == 0:
            return pairs
        key = stream.read(key_len)
        if len(key) != key_len:
            msg = "Unexpected end of PSBT reading key"
            raise ValueError(msg)
        pairs.append((key, read_bytes(stream)))


# ---------------------------------------------------------------------------
# Per-input / per-output maps
# ---------------------------------------------------------------------------


@dataclass
class PsbtInput:
    """Signing data for one input."""

    non_witness_utxo: Transaction | None = None
    witness_utxo: TxOutput | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    tap_key_sig: bytes | None = None
    final_script_sig: bytes | None = None
    final_script_witness: list[bytes] | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.final_script_sig is not None or self.final_script_witness is not None

    def spent_output(self, vout: int) -> TxOutput | None:
        """The output this input spends, from whichever UTXO field is present."""
        if self.witness_utxo is not None:
            return self.witness_utxo
        if self.non_witness_utxo is not None and vout < len(self.non_witness_utxo.outputs):
            return self.non_witness_utxo.outputs[vout]
        return None

    def serialize(self) -> bytes:
        out = b""
        if self.non_witness_utxo is not None:
            out += _kv(bytes([PSBT_IN_NON_WITNESS_UTXO]), self.non_witness_utxo.serialize())
        if self.witness_utxo is not None:
            out += _kv(bytes([PSBT_IN_WITNESS_UTXO]), self.witness_utxo.serialize())
        for pubkey, sig in self.partial_sigs.items():
            out += _kv(bytes([PSBT_IN_PARTIAL_SIG]) + pubkey, sig)
        if self.final_script_sig is not None:
            out += _kv(bytes([PSBT_IN_FINAL_SCRIPTSIG]), self.final_script_sig)
        if self.final_script_witness is not None:
            out += _kv(
                bytes([PSBT_IN_FINAL_SCRIPTWITNESS]), encode_witness(self.final_script_witness)
            )
        if self.tap_key_sig is not None:
            out += _kv(bytes([PSBT_IN_TAP_KEY_SIG]), self.tap_key_sig)
        for key, value in self.unknown.items():
            out += _kv(key, value)
        return out + b"\x00"

    @classmethod
    def from_pairs(cls, pairs: list[tuple[bytes, bytes]]) -> PsbtInput:
        inp = cls()
        for key, value in pairs:
            key_type = key[0]
            if key_type == PSBT_IN_NON_WITNESS_UTXO and len(key) == 1:
                inp.non_witness_utxo = Transaction.from_bytes(value)
            elif key_type == PSBT_IN_WITNESS_UTXO and len(key) == 1:
                inp.witness_utxo = TxOutput.deserialize(BytesIO(value))
            elif key_type == PSBT_IN_PARTIAL_SIG:
                inp.partial_sigs[key[1:]] = value
            elif key_type == PSBT_IN_FINAL_SCRIPTSIG and len(key) == 1:
                inp.final_script_sig = value
            elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS and len(key) == 1:
                inp.final_script_witness = read_witness(BytesIO(value))
            elif key_type == PSBT_IN_TAP_KEY_SIG and len(key) == 1:
                inp.tap_key_sig = value
            else:
                inp.unknown[key] = value
        return inp


@dataclass
class PsbtOutput:
    """Output map; contents are not interpreted."""

    unknown: dict[bytes, bytes] = field(default_factory=dict)

    def serialize(self) -> bytes:
        return b"".join(_kv(k, v) for k, v in self.unknown.items()) + b"\x00"


# ---------------------------------------------------------------------------
# PSBT
# ---------------------------------------------------------------------------


@dataclass
class Psbt:
    """A version 0 PSBT.

    Attributes:
        tx: The unsigned transaction (no scriptSigs, no witnesses).
        inputs: One :class:`PsbtInput` per transaction input.
        outputs: One :class:`PsbtOutput` per transaction output.
        unknown: Unrecognised global key-value pairs.
    """

    tx: Transaction
    inputs: list[PsbtInput] = field(default_factory=list)
    outputs: list[PsbtOutput] = field(default_factory=list)
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @classmethod
    def from_transaction(cls, tx: Transaction) -> Psbt:
        """Wrap *tx*, moving any existing unlocking data into final fields."""
        inputs = []
        for txin in tx.inputs:
            inputs.append(
                PsbtInput(
                    final_script_sig=txin.script_sig or None,
                    final_script_witness=list(txin.witness) or None,
                )
            )
        return cls(
            tx=tx.stripped(),
            inputs=inputs,
            outputs=[PsbtOutput() for _ in tx.outputs],
        )

    def serialize(self) -> bytes:
        out = PSBT_MAGIC
        out += _kv(bytes([PSBT_GLOBAL_UNSIGNED_TX]), self.tx.serialize(include_witness=False))
        for key, value in self.unknown.items():
            out += _kv(key, value)
        out += b"\x00"
        for inp in self.inputs:
            out += inp.serialize()
        for output in self.outputs:
            out += output.serialize()
        return out

    def to_base64(self) -> str:
        return b64encode(self.serialize())

    @classmethod
    def parse(cls, data: bytes) -> Psbt:
        """Parse a serialized PSBT."""
        stream = BytesIO(data)
        if stream.read(5) != PSBT_MAGIC:
            msg = "Bad PSBT magic"
            raise ValueError(msg)

        tx: Transaction | None = None
        unknown: dict[bytes, bytes] = {}
        for key, value in _read_map(stream):
            if key == bytes([PSBT_GLOBAL_UNSIGNED_TX]):
                tx = Transaction.from_bytes(value)
            else:
                unknown[key] = value
        if tx is None:
            msg = "Missing unsigned tx in PSBT"
            raise ValueError(msg)

        inputs = [PsbtInput.from_pairs(_read_map(stream)) for _ in tx.inputs]
        outputs = [PsbtOutput(unknown=dict(_read_map(stream))) for _ in tx.outputs]
        return cls(tx=tx, inputs=inputs, outputs=outputs, unknown=unknown)

    @classmethod
    def from_base64(cls, text: str) -> Psbt:
        return cls.parse(b64decode(text))

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def finalize(self) -> Transaction:
        """Build final unlocking data for every input and extract the transaction.

        Raises:
            ValueError: If an input has no signature the finalizer can use.
        """
        signed = self.tx.stripped()
        for index, (txin, pin) in enumerate(zip(signed.inputs, self.inputs, strict=True)):
            if not pin.is_finalized:
                self._finalize_input(index, pin)
            txin.script_sig = pin.final_script_sig or b""
            txin.witness = list(pin.final_script_witness or [])
        return signed

    def _finalize_input(self, index: int, pin: PsbtInput) -> None:
        spent = pin.spent_output(self.tx.inputs[index].prev_tx_out_index)
        script_type = detect_script_type(spent.script_pubkey) if spent else ScriptType.UNKNOWN

        if script_type == ScriptType.P2TR and pin.tap_key_sig is not None:
            pin.final_script_witness = [pin.tap_key_sig]
        elif script_type == ScriptType.P2WPKH and len(pin.partial_sigs) == 1:
            pubkey, sig = next(iter(pin.partial_sigs.items()))
            pin.final_script_witness = [sig, pubkey]
        elif script_type == ScriptType.P2PKH and len(pin.partial_sigs) == 1:
            pubkey, sig = next(iter(pin.partial_sigs.items()))
            pin.final_script_sig = push_data(sig) + push_data(pubkey)
        else:
            msg = f"Input {index} ({script_type}) has no usable signature"
            raise ValueError(msg)
        pin.partial_sigs.clear()
        pin.tap_key_sig = None
