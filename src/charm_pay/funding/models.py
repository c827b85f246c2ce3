"""Funding resource model."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any


@dataclass(frozen=True)
class FundingResource:
    """A plain value-bearing output used to pay for one proof submission.

    Attributes:
        txid: Creating transaction id (hex, display order).
        vout: Output index in the creating transaction.
        value: Output value in satoshis.
        raw_tx: Raw creating transaction hex, once fetched.
    """

    txid: str
    vout: int
    value: int
    raw_tx: str | None = field(default=None, compare=False, repr=False)

    @property
    def utxo_id(self) -> str:
        """``txid:vout`` — the registry key and the prover's funding_utxo."""
        return f"{self.txid}:{self.vout}"

    def with_raw_tx(self, raw_tx: str) -> FundingResource:
        return replace(self, raw_tx=raw_tx)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FundingResource:
        """Create from an index response item.

        Accepts both Esplora (``txid``/``vout``) and generic
        (``id``/``outputIndex``) key spellings.
        """
        return cls(
            txid=data.get("txid", data.get("id", "")),
            vout=int(data.get("vout", data.get("outputIndex", 0))),
            value=int(data.get("value", 0)),
        )


def parse_utxo_id(utxo_id: str) -> tuple[str, int]:
    """Split ``txid:vout`` into its parts.

    Raises:
        ValueError: If *utxo_id* is not of the form ``<64 hex>:<int>``.
    """
    txid, sep, vout = utxo_id.partition(":")
    if not sep or len(txid) != 64 or not vout.isdigit():
        msg = f"Invalid UTXO id: {utxo_id!r}"
        raise ValueError(msg)
    return txid, int(vout)
