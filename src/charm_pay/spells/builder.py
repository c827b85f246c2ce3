"""Spell construction for the three subscription transitions.

Each builder is a pure function of its typed parameters. Only ``create``
depends on the funding UTXO (it seeds the app identity), so a retry with a
different funding UTXO changes nothing else.

Accounting encoded here:
- create: NFT remaining == token amount == total locked
- payment: new remaining == current - payment, and the token outputs
  (recipient + subscriber) sum to the current remaining
- cancel: NFT remaining == 0 and cancelled, all tokens refunded to the
  subscriber
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from charm_pay.spells.models import (
    NFT_APP,
    TOKEN_APP,
    Spell,
    SpellInput,
    SpellOutput,
    SubscriptionCharm,
    SubscriptionTerms,
)
from charm_pay.utils.crypto import sha256_hex

if TYPE_CHECKING:
    from charm_pay.funding.models import FundingResource


def derive_app_id(utxo_id: str) -> str:
    """App identity bound to a funding UTXO: ``sha256("txid:vout")`` as hex."""
    return sha256_hex(utxo_id)


def _apps(app_id: str, app_vk: str) -> dict[str, str]:
    return {
        NFT_APP: f"n/{app_id}/{app_vk}",
        TOKEN_APP: f"t/{app_id}/{app_vk}",
    }


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreateParams:
    app_vk: str
    subscriber_address: str
    subscription_id: str
    total_locked: int
    funding: FundingResource
    terms: SubscriptionTerms | None = None


@dataclass(frozen=True)
class PaymentParams:
    """Parameters for one payment.

    ``payment_amount`` must not exceed ``current_remaining``; the contract
    enforces it, callers should check first to avoid a wasted proof.
    """

    app_id: str
    app_vk: str
    subscription_id: str
    subscription_utxo: str
    token_utxo: str
    current_remaining: int
    payment_amount: int
    subscriber_address: str
    recipient_address: str
    terms: SubscriptionTerms | None = None
    payment_block: int | None = None

    @property
    def new_remaining(self) -> int:
        return self.current_remaining - self.payment_amount


@dataclass(frozen=True)
class CancelParams:
    app_id: str
    app_vk: str
    subscription_id: str
    subscription_utxo: str
    token_utxo: str
    remaining: int
    subscriber_address: str
    terms: SubscriptionTerms | None = None


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_create(params: CreateParams) -> Spell:
    """Mint the subscription NFT and its locked tokens from a funding UTXO."""
    funding_id = params.funding.utxo_id
    nft = SubscriptionCharm(
        subscription_id=params.subscription_id,
        remaining=params.total_locked,
        terms=params.terms,
    )
    return Spell(
        apps=_apps(derive_app_id(funding_id), params.app_vk),
        private_inputs={NFT_APP: funding_id},
        ins=[SpellInput(utxo_id=funding_id)],
        outs=[
            SpellOutput(address=params.subscriber_address, charms={NFT_APP: nft.to_data()}),
            SpellOutput(address=params.subscriber_address, charms={TOKEN_APP: params.total_locked}),
        ],
    )


def build_execute_payment(params: PaymentParams) -> Spell:
    """Route ``payment_amount`` tokens to the recipient and decrement the NFT."""
    current = SubscriptionCharm(
        subscription_id=params.subscription_id,
        remaining=params.current_remaining,
        terms=params.terms,
    )
    new_terms = params.terms
    if new_terms is not None and params.payment_block is not None:
        new_terms = replace(new_terms, last_payment_block=params.payment_block)
    updated = SubscriptionCharm(
        subscription_id=params.subscription_id,
        remaining=params.new_remaining,
        terms=new_terms,
    )
    return Spell(
        apps=_apps(params.app_id, params.app_vk),
        ins=[
            SpellInput(utxo_id=params.subscription_utxo, charms={NFT_APP: current.to_data()}),
            SpellInput(utxo_id=params.token_utxo, charms={TOKEN_APP: params.current_remaining}),
        ],
        outs=[
            SpellOutput(address=params.subscriber_address, charms={NFT_APP: updated.to_data()}),
            SpellOutput(
                address=params.recipient_address, charms={TOKEN_APP: params.payment_amount}
            ),
            SpellOutput(
                address=params.subscriber_address, charms={TOKEN_APP: params.new_remaining}
            ),
        ],
    )


def build_cancel(params: CancelParams) -> Spell:
    """Close the subscription and refund every locked token to the subscriber."""
    current = SubscriptionCharm(
        subscription_id=params.subscription_id,
        remaining=params.remaining,
        terms=params.terms,
    )
    closed = SubscriptionCharm(
        subscription_id=params.subscription_id,
        remaining=0,
        cancelled=True,
        terms=params.terms,
    )
    return Spell(
        apps=_apps(params.app_id, params.app_vk),
        ins=[
            SpellInput(utxo_id=params.subscription_utxo, charms={NFT_APP: current.to_data()}),
            SpellInput(utxo_id=params.token_utxo, charms={TOKEN_APP: params.remaining}),
        ],
        outs=[
            SpellOutput(address=params.subscriber_address, charms={NFT_APP: closed.to_data()}),
            SpellOutput(address=params.subscriber_address, charms={TOKEN_APP: params.remaining}),
        ],
    )
