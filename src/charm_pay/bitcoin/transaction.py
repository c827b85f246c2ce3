"""Transaction serialisation — raw hex with optional segwit witness data.

Provides pure-Python Bitcoin transaction serialization and deserialization:
- TxInput / TxOutput data classes (inputs carry their witness stack)
- Transaction class with serialize / deserialize / txid computation
- VarInt encoding/decoding
- BIP-144 marker/flag handling for witness transactions
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from io import BytesIO

from charm_pay.utils.crypto import sha256d

# ---------------------------------------------------------------------------
# VarInt encoding / decoding
# ---------------------------------------------------------------------------


def encode_varint(n: int) -> bytes:
    """Encode an integer as a Bitcoin-style variable-length integer."""
    if n < 0xFD:
        return struct.pack("<B", n)
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def read_varint(stream: BytesIO) -> int:
    """Read a Bitcoin-style variable-length integer from a byte stream."""
    first = stream.read(1)
    if len(first) == 0:
        msg = "Unexpected end of stream reading varint"
        raise ValueError(msg)
    n = first[0]
    if n < 0xFD:
        return n
    if n == 0xFD:
        return struct.unpack("<H", _read_exact(stream, 2))[0]
    if n == 0xFE:
        return struct.unpack("<I", _read_exact(stream, 4))[0]
    return struct.unpack("<Q", _read_exact(stream, 8))[0]


def encode_bytes(data: bytes) -> bytes:
    """Length-prefixed byte string."""
    return encode_varint(len(data)) + data


def read_bytes(stream: BytesIO) -> bytes:
    """Read a length-prefixed byte string."""
    return _read_exact(stream, read_varint(stream))


def encode_witness(stack: list[bytes]) -> bytes:
    """Serialize a witness stack (item count followed by each item)."""
    return encode_varint(len(stack)) + b"".join(encode_bytes(item) for item in stack)


def read_witness(stream: BytesIO) -> list[bytes]:
    """Read a witness stack."""
    return [read_bytes(stream) for _ in range(read_varint(stream))]


def _read_exact(stream: BytesIO, n: int) -> bytes:
    data = stream.read(n)
    if len(data) != n:
        msg = f"Unexpected end of stream: wanted {n} bytes, got {len(data)}"
        raise ValueError(msg)
    return data


# Default sequence: 0xFFFFFFFF (final)
DEFAULT_SEQUENCE = 0xFFFFFFFF

_SEGWIT_MARKER = 0x00
_SEGWIT_FLAG = 0x01


# ---------------------------------------------------------------------------
# TxInput
# ---------------------------------------------------------------------------


@dataclass
class TxInput:
    """A transaction input.

    Attributes:
        prev_tx_id: 32-byte hash of the previous transaction (internal byte order).
        prev_tx_out_index: Index of the output in the previous transaction.
        script_sig: Unlocking script (scriptSig).
        sequence: Sequence number (default 0xFFFFFFFF).
        witness: Segwit witness stack (empty for legacy inputs).
    """

    prev_tx_id: bytes
    prev_tx_out_index: int
    script_sig: bytes = b""
    sequence: int = DEFAULT_SEQUENCE
    witness: list[bytes] = field(default_factory=list)

    @property
    def prev_tx_id_hex(self) -> str:
        """Previous transaction ID in display (reversed) hex."""
        return self.prev_tx_id[::-1].hex()

    @property
    def outpoint(self) -> str:
        """``txid:vout`` string of the output this input spends."""
        return f"{self.prev_tx_id_hex}:{self.prev_tx_out_index}"

    @property
    def is_signed(self) -> bool:
        """Whether the input already carries unlocking data."""
        return bool(self.script_sig) or bool(self.witness)

    def serialize(self) -> bytes:
        """Serialize the input to bytes (witness is serialized separately)."""
        result = self.prev_tx_id
        result += struct.pack("<I", self.prev_tx_out_index)
        result += encode_bytes(self.script_sig)
        result += struct.pack("<I", self.sequence)
        return result

    @classmethod
    def deserialize(cls, stream: BytesIO) -> TxInput:
        """Deserialize a transaction input from a byte stream."""
        prev_tx_id = stream.read(32)
        if len(prev_tx_id) != 32:
            msg = "Unexpected end of stream reading prev_tx_id"
            raise ValueError(msg)
        prev_tx_out_index = struct.unpack("<I", _read_exact(stream, 4))[0]
        script_sig = read_bytes(stream)
        sequence = struct.unpack("<I", _read_exact(stream, 4))[0]
        return cls(
            prev_tx_id=prev_tx_id,
            prev_tx_out_index=prev_tx_out_index,
            script_sig=script_sig,
            sequence=sequence,
        )


# ---------------------------------------------------------------------------
# TxOutput
# ---------------------------------------------------------------------------


@dataclass
class TxOutput:
    """A transaction output.

    Attributes:
        value: Output value in satoshis.
        script_pubkey: Locking script (scriptPubKey).
    """

    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        """Serialize the output to bytes."""
        return struct.pack("<q", self.value) + encode_bytes(self.script_pubkey)

    @classmethod
    def deserialize(cls, stream: BytesIO) -> TxOutput:
        """Deserialize a transaction output from a byte stream."""
        value = struct.unpack("<q", _read_exact(stream, 8))[0]
        script_pubkey = read_bytes(stream)
        return cls(value=value, script_pubkey=script_pubkey)


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------


@dataclass
class Transaction:
    """A Bitcoin transaction.

    Attributes:
        version: Transaction version (default 2).
        inputs: List of transaction inputs.
        outputs: List of transaction outputs.
        locktime: Transaction locktime (default 0).
    """

    version: int = 2
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        """Whether any input carries witness data."""
        return any(inp.witness for inp in self.inputs)

    def serialize(self, *, include_witness: bool = True) -> bytes:
        """Serialize the transaction to raw bytes.

        Args:
            include_witness: Emit BIP-144 marker, flag and witness stacks
                when any input has witness data.
        """
        with_witness = include_witness and self.has_witness
        result = struct.pack("<i", self.version)
        if with_witness:
            result += bytes([_SEGWIT_MARKER, _SEGWIT_FLAG])
        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.serialize()
        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()
        if with_witness:
            for inp in self.inputs:
                result += encode_witness(inp.witness)
        result += struct.pack("<I", self.locktime)
        return result

    def to_hex(self) -> str:
        """Serialize to hex string (with witness data)."""
        return self.serialize().hex()

    @classmethod
    def deserialize(cls, stream: BytesIO) -> Transaction:
        """Deserialize a transaction, with or without witness data."""
        version = struct.unpack("<i", _read_exact(stream, 4))[0]
        segwit = False
        pos = stream.tell()
        if stream.read(1) == bytes([_SEGWIT_MARKER]):
            flag = stream.read(1)
            if flag != bytes([_SEGWIT_FLAG]):
                msg = "Invalid segwit flag byte"
                raise ValueError(msg)
            segwit = True
        else:
            stream.seek(pos)
        n_inputs = read_varint(stream)
        inputs = [TxInput.deserialize(stream) for _ in range(n_inputs)]
        n_outputs = read_varint(stream)
        outputs = [TxOutput.deserialize(stream) for _ in range(n_outputs)]
        if segwit:
            for inp in inputs:
                inp.witness = read_witness(stream)
        locktime = struct.unpack("<I", _read_exact(stream, 4))[0]
        return cls(version=version, inputs=inputs, outputs=outputs, locktime=locktime)

    @classmethod
    def from_hex(cls, hex_str: str) -> Transaction:
        """Deserialize a transaction from a hex string."""
        raw = bytes.fromhex(hex_str)
        return cls.from_bytes(raw)

    @classmethod
    def from_bytes(cls, data: bytes) -> Transaction:
        """Deserialize a transaction from raw bytes, rejecting trailing data."""
        stream = BytesIO(data)
        tx = cls.deserialize(stream)
        if stream.read(1):
            msg = "Trailing bytes after transaction"
            raise ValueError(msg)
        return tx

    def txid(self) -> str:
        """Compute the transaction ID (double-SHA256 of the non-witness form, reversed, hex).

        Returns:
            The 64-character hex txid string (display byte order).
        """
        return self.txid_bytes()[::-1].hex()

    def txid_bytes(self) -> bytes:
        """Compute the transaction ID as 32 bytes (internal byte order)."""
        return sha256d(self.serialize(include_witness=False))

    def stripped(self) -> Transaction:
        """Copy with all scriptSigs and witnesses removed (PSBT unsigned form)."""
        return Transaction(
            version=self.version,
            inputs=[
                TxInput(
                    prev_tx_id=inp.prev_tx_id,
                    prev_tx_out_index=inp.prev_tx_out_index,
                    sequence=inp.sequence,
                )
                for inp in self.inputs
            ],
            outputs=[TxOutput(out.value, out.script_pubkey) for out in self.outputs],
            locktime=self.locktime,
        )

    @property
    def size(self) -> int:
        """Transaction size in bytes."""
        return len(self.serialize())

    def add_input(
        self,
        prev_tx_id: bytes,
        prev_tx_out_index: int,
        script_sig: bytes = b"",
        sequence: int = DEFAULT_SEQUENCE,
    ) -> TxInput:
        """Add an input to the transaction.

        Returns:
            The newly created :class:`TxInput`.
        """
        inp = TxInput(
            prev_tx_id=prev_tx_id,
            prev_tx_out_index=prev_tx_out_index,
            script_sig=script_sig,
            sequence=sequence,
        )
        self.inputs.append(inp)
        return inp

    def add_output(self, value: int, script_pubkey: bytes) -> TxOutput:
        """Add an output to the transaction.

        Returns:
            The newly created :class:`TxOutput`.
        """
        out = TxOutput(value=value, script_pubkey=script_pubkey)
        self.outputs.append(out)
        return out
