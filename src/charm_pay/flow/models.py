"""Subscription state and flow results."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field, fields, replace
from typing import Any

from charm_pay.spells.models import SubscriptionTerms


def new_subscription_id() -> str:
    """``sub_<unix ms>_<6 hex>``."""
    return f"sub_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


@dataclass(frozen=True)
class SubscriptionState:
    """Where a live subscription sits on chain.

    Attributes:
        subscription_id: Identifier carried in the NFT ticker.
        app_id: App identity derived from the creating funding UTXO.
        subscription_utxo: ``txid:vout`` of the NFT output.
        token_utxo: ``txid:vout`` of the subscriber's locked tokens.
        remaining_balance: Tokens still locked, in satoshis.
        subscriber_address: Owner of the NFT and the locked tokens.
        terms: Full-state terms, when the subscription carries them.
        cancelled: Set once the cancel transition has been broadcast.
    """

    subscription_id: str
    app_id: str
    subscription_utxo: str
    token_utxo: str
    remaining_balance: int
    subscriber_address: str
    terms: SubscriptionTerms | None = None
    cancelled: bool = False

    @property
    def is_terminal(self) -> bool:
        """No further transitions: cancelled, or fully paid out."""
        return self.cancelled or self.remaining_balance == 0

    def advance(self, **changes: Any) -> SubscriptionState:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "subscription_id": self.subscription_id,
            "app_id": self.app_id,
            "subscription_utxo": self.subscription_utxo,
            "token_utxo": self.token_utxo,
            "remaining_balance": self.remaining_balance,
            "subscriber_address": self.subscriber_address,
            "cancelled": self.cancelled,
        }
        if self.terms is not None:
            data["terms"] = {
                "payer_pubkey": self.terms.payer_pubkey,
                "merchant_pubkey": self.terms.merchant_pubkey,
                "amount_sats": self.terms.amount_sats,
                "billing_interval_blocks": self.terms.billing_interval_blocks,
                "last_payment_block": self.terms.last_payment_block,
            }
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubscriptionState:
        terms = data.get("terms")
        return cls(
            subscription_id=data["subscription_id"],
            app_id=data["app_id"],
            subscription_utxo=data["subscription_utxo"],
            token_utxo=data["token_utxo"],
            remaining_balance=int(data["remaining_balance"]),
            subscriber_address=data["subscriber_address"],
            terms=SubscriptionTerms(**terms) if terms else None,
            cancelled=bool(data.get("cancelled", False)),
        )


@dataclass
class FlowResult:
    """Outcome of one broadcast transition.

    Attributes:
        state: Subscription state after the transition.
        txids: ``[commit_txid, spell_txid]``.
        funding_utxo: The funding UTXO the prover accepted.
        tried: Every funding UTXO offered, accepted one last.
    """

    state: SubscriptionState
    txids: list[str]
    funding_utxo: str
    tried: list[str] = field(default_factory=list)

    @property
    def commit_txid(self) -> str:
        return self.txids[0]

    @property
    def spell_txid(self) -> str:
        return self.txids[1]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": type(self).__name__}
        for f in fields(self):
            data[f.name] = getattr(self, f.name)
        data["state"] = self.state.to_dict()
        return data


@dataclass
class CreateResult(FlowResult):
    """A new subscription: NFT at ``spell:0``, locked tokens at ``spell:1``."""


@dataclass
class PaymentResult(FlowResult):
    """A payment: NFT at ``spell:0``, recipient at ``spell:1``, remainder at ``spell:2``."""

    payment_amount: int = 0
    recipient_utxo: str = ""


@dataclass
class CancelResult(FlowResult):
    """A cancellation: closed NFT at ``spell:0``, refund at ``spell:1``."""

    refunded: int = 0
    refund_utxo: str = ""


def result_from_dict(data: dict[str, Any]) -> FlowResult:
    """Rebuild a result written by :meth:`FlowResult.to_dict`."""
    kinds = {cls.__name__: cls for cls in (CreateResult, PaymentResult, CancelResult)}
    values = dict(data)
    kind = kinds.get(values.pop("kind", ""))
    if kind is None:
        msg = f"Unknown flow result kind: {data.get('kind')!r}"
        raise ValueError(msg)
    values["state"] = SubscriptionState.from_dict(values["state"])
    return kind(**values)
