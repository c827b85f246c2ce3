"""Prover request/response models and response normalization.

The prover's success body comes in several shapes:
- ``["<commit hex>", "<spell hex>"]``
- ``[{"bitcoin": "<commit hex>"}, {"bitcoin": "<spell hex>"}]``
- ``{"commit_tx": ..., "spell_tx": ...}`` with string or tagged values
- ``{"transactions": [...]}`` wrapping either list form

:func:`normalize_prover_response` is the single place these are reduced to
an :class:`UnsignedTransactionPair`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from charm_pay.errors.flow_errors import ValidationError
from charm_pay.utils.encoding import is_hex

if TYPE_CHECKING:
    from charm_pay.funding.models import FundingResource
    from charm_pay.spells.models import Spell

_CHAIN_TAGS = ("bitcoin", "cardano")


# ---------------------------------------------------------------------------
# Transaction pairs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _TransactionPair:
    commit_tx: str
    spell_tx: str

    def __post_init__(self) -> None:
        for name in ("commit_tx", "spell_tx"):
            value = getattr(self, name)
            if not isinstance(value, str) or not is_hex(value):
                msg = f"{name} is not valid hex: {str(value)[:64]!r}"
                raise ValidationError(msg, step="validate-transactions")

    def as_list(self) -> list[str]:
        return [self.commit_tx, self.spell_tx]


@dataclass(frozen=True)
class UnsignedTransactionPair(_TransactionPair):
    """Commit + spell transactions as returned by the prover (unsigned)."""


@dataclass(frozen=True)
class SignedTransactionPair(_TransactionPair):
    """Commit + spell transactions, finalized and ready to broadcast together."""


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


@dataclass
class ProveRequest:
    """Body of a proof request.

    Attributes:
        spell: The transition descriptor.
        binaries: App verification key → base64 contract binary.
        prev_txs: Raw hex of every transaction whose outputs the spell or the
            funding UTXO spend.
        funding: The funding UTXO paying for this proof.
        change_address: Where the prover sends funding change.
        fee_rate: sat/vbyte.
        chain: Target chain tag.
    """

    spell: Spell
    binaries: dict[str, str]
    funding: FundingResource
    change_address: str
    fee_rate: float = 1.0
    chain: str = "bitcoin"
    prev_txs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain": self.chain,
            "spell": self.spell.to_dict(),
            "binaries": dict(self.binaries),
            "prev_txs": [{self.chain: tx} for tx in self.prev_txs],
            "funding_utxo": self.funding.utxo_id,
            "funding_utxo_value": self.funding.value,
            "change_address": self.change_address,
            "fee_rate": self.fee_rate,
        }


# ---------------------------------------------------------------------------
# Response normalization
# ---------------------------------------------------------------------------


def _unwrap(item: Any) -> Any:
    """Reduce a tagged ``{"bitcoin": hex}`` element to its hex value."""
    if isinstance(item, dict):
        for tag in _CHAIN_TAGS:
            if tag in item:
                return item[tag]
        if len(item) == 1:
            return next(iter(item.values()))
    return item


def normalize_prover_response(data: Any) -> UnsignedTransactionPair:
    """Reduce any accepted prover response shape to a transaction pair.

    Raises:
        ValidationError: If *data* is not one of the accepted shapes or a
            transaction is not non-empty, even-length hex.
    """
    if isinstance(data, dict) and "transactions" in data:
        data = data["transactions"]

    if isinstance(data, list):
        if len(data) != 2:
            msg = f"Prover returned {len(data)} transactions, expected 2 (commit + spell)"
            raise ValidationError(msg, step="prove", detail=str(data)[:200])
        commit, spell = (_unwrap(item) for item in data)
    elif isinstance(data, dict) and "commit_tx" in data and "spell_tx" in data:
        commit, spell = _unwrap(data["commit_tx"]), _unwrap(data["spell_tx"])
    else:
        msg = "Unrecognised prover response shape"
        raise ValidationError(msg, step="prove", detail=str(data)[:200])

    return UnsignedTransactionPair(commit_tx=commit, spell_tx=spell)
