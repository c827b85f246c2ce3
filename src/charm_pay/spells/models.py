"""Spell data models — the transition descriptors sent to the prover.

A spell lists the apps it touches, the charm-bearing outputs it consumes
(``ins``) with their expected charms, and the outputs it produces (``outs``)
with their new charms. App ``$00`` is the subscription NFT, ``$01`` the
locked-value token.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

SPELL_VERSION = 8

NFT_APP = "$00"
TOKEN_APP = "$01"

TICKER_PREFIX = "SUBSCRIPTION-"
CANCELLED_SUFFIX = "-CANCELLED"

# Default billing interval: ~1 day of blocks
DEFAULT_BILLING_INTERVAL_BLOCKS = 144


# ---------------------------------------------------------------------------
# Spell structure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SpellInput:
    """A consumed output and the charms it is expected to carry."""

    utxo_id: str
    charms: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"utxo_id": self.utxo_id, "charms": self.charms}


@dataclass(frozen=True)
class SpellOutput:
    """A produced output: destination address and the charms it carries."""

    address: str
    charms: dict[str, Any] = field(default_factory=dict)
    sats: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"address": self.address, "charms": self.charms}
        if self.sats is not None:
            data["sats"] = self.sats
        return data


@dataclass(frozen=True)
class Spell:
    """A versioned transition descriptor.

    Attributes:
        apps: Role name (``$00``) → ``tag/app_id/app_vk`` app spec.
        ins: Consumed outputs.
        outs: Produced outputs.
        private_inputs: Per-app private witness data (e.g. the funding
            UTXO that seeds a new app identity).
        version: Spell format version.
    """

    apps: dict[str, str]
    ins: list[SpellInput]
    outs: list[SpellOutput]
    private_inputs: dict[str, str] | None = None
    version: int = SPELL_VERSION

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "apps": dict(self.apps),
            "ins": [i.to_dict() for i in self.ins],
            "outs": [o.to_dict() for o in self.outs],
        }
        if self.private_inputs:
            data["private_inputs"] = dict(self.private_inputs)
        return data

    def to_json(self) -> str:
        """Canonical serialization: sorted keys, compact separators."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @property
    def input_txids(self) -> list[str]:
        """Distinct creating-transaction ids of the consumed outputs, in order."""
        seen: list[str] = []
        for spell_in in self.ins:
            txid = spell_in.utxo_id.partition(":")[0]
            if txid not in seen:
                seen.append(txid)
        return seen


# ---------------------------------------------------------------------------
# Subscription charm content
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SubscriptionTerms:
    """Immutable terms of a full-state subscription record."""

    payer_pubkey: str
    merchant_pubkey: str
    amount_sats: int
    billing_interval_blocks: int = DEFAULT_BILLING_INTERVAL_BLOCKS
    last_payment_block: int = 0


@dataclass(frozen=True)
class SubscriptionCharm:
    """The subscription NFT's content.

    The legacy form is ``{ticker, remaining}``; with :class:`SubscriptionTerms`
    the full state is emitted alongside it.
    """

    subscription_id: str
    remaining: int
    cancelled: bool = False
    terms: SubscriptionTerms | None = None

    @property
    def ticker(self) -> str:
        ticker = f"{TICKER_PREFIX}{self.subscription_id}"
        return f"{ticker}{CANCELLED_SUFFIX}" if self.cancelled else ticker

    @property
    def is_terminal(self) -> bool:
        """Cancelled, or fully paid out."""
        return self.cancelled or self.remaining == 0

    def to_data(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ticker": self.ticker, "remaining": self.remaining}
        if self.terms is not None:
            data.update(
                payer_pubkey=self.terms.payer_pubkey,
                merchant_pubkey=self.terms.merchant_pubkey,
                amount_sats=self.terms.amount_sats,
                billing_interval_blocks=self.terms.billing_interval_blocks,
                last_payment_block=self.terms.last_payment_block,
                is_active=not self.cancelled,
                remaining_balance=self.remaining,
            )
        return data

    @classmethod
    def from_charm_data(cls, data: dict[str, Any]) -> SubscriptionCharm:
        """Decode NFT content read back from chain.

        Raises:
            ValueError: If the content is not a subscription NFT.
        """
        ticker = str(data.get("ticker", ""))
        if not ticker.startswith(TICKER_PREFIX):
            msg = f"Not a subscription charm: ticker {ticker!r}"
            raise ValueError(msg)
        subscription_id = ticker.removeprefix(TICKER_PREFIX)
        cancelled = subscription_id.endswith(CANCELLED_SUFFIX)
        subscription_id = subscription_id.removesuffix(CANCELLED_SUFFIX)

        terms = None
        if "payer_pubkey" in data and "merchant_pubkey" in data and "amount_sats" in data:
            terms = SubscriptionTerms(
                payer_pubkey=data["payer_pubkey"],
                merchant_pubkey=data["merchant_pubkey"],
                amount_sats=int(data["amount_sats"]),
                billing_interval_blocks=int(
                    data.get("billing_interval_blocks", DEFAULT_BILLING_INTERVAL_BLOCKS)
                ),
                last_payment_block=int(data.get("last_payment_block", 0)),
            )
            cancelled = cancelled or not data.get("is_active", True)

        return cls(
            subscription_id=subscription_id,
            remaining=int(data.get("remaining", data.get("remaining_balance", 0))),
            cancelled=cancelled,
            terms=terms,
        )
