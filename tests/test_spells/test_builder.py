"""Tests for the subscription spell builders — spells/builder.py."""

from __future__ import annotations

import json

import pytest

from charm_pay.funding.models import FundingResource
from charm_pay.spells.builder import (
    CancelParams,
    CreateParams,
    PaymentParams,
    build_cancel,
    build_create,
    build_execute_payment,
    derive_app_id,
)
from charm_pay.spells.models import (
    NFT_APP,
    SPELL_VERSION,
    TOKEN_APP,
    SubscriptionCharm,
    SubscriptionTerms,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

APP_VK = "ab" * 32
SUBSCRIBER = "tb1psubscriber"
MERCHANT = "tb1pmerchant"
FUNDING_TXID = "dc78b09d767c8565c4a58a95e7ad5ee22b28fc1685535056a395dc94929cdd5f"
FUNDING = FundingResource(txid=FUNDING_TXID, vout=1, value=100_000)
APP_ID = "f54f6d40bd4ba808b188963ae5d72769ad5212dd1d29517ecc4063dd9f033faa"
NFT_UTXO = "11" * 32 + ":0"
TOKEN_UTXO = "11" * 32 + ":1"


def _create(total: int = 50_000, **kwargs) -> CreateParams:
    return CreateParams(
        app_vk=APP_VK,
        subscriber_address=SUBSCRIBER,
        subscription_id="sub_1_abcdef",
        total_locked=total,
        funding=FUNDING,
        **kwargs,
    )


def _payment(current: int = 700_000, amount: int = 100_000, **kwargs) -> PaymentParams:
    return PaymentParams(
        app_id=APP_ID,
        app_vk=APP_VK,
        subscription_id="sub_1_abcdef",
        subscription_utxo=NFT_UTXO,
        token_utxo=TOKEN_UTXO,
        current_remaining=current,
        payment_amount=amount,
        subscriber_address=SUBSCRIBER,
        recipient_address=MERCHANT,
        **kwargs,
    )


def _cancel(remaining: int = 600_000) -> CancelParams:
    return CancelParams(
        app_id=APP_ID,
        app_vk=APP_VK,
        subscription_id="sub_1_abcdef",
        subscription_utxo=NFT_UTXO,
        token_utxo=TOKEN_UTXO,
        remaining=remaining,
        subscriber_address=SUBSCRIBER,
    )


# ---------------------------------------------------------------------------
# App identity
# ---------------------------------------------------------------------------


class TestDeriveAppId:
    def test_known_vector(self) -> None:
        assert derive_app_id(f"{FUNDING_TXID}:1") == APP_ID

    def test_depends_on_vout(self) -> None:
        assert derive_app_id(f"{FUNDING_TXID}:0") != APP_ID


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestBuildCreate:
    def test_structure(self) -> None:
        spell = build_create(_create())
        assert spell.version == SPELL_VERSION
        assert spell.apps == {
            NFT_APP: f"n/{APP_ID}/{APP_VK}",
            TOKEN_APP: f"t/{APP_ID}/{APP_VK}",
        }
        assert [i.utxo_id for i in spell.ins] == [FUNDING.utxo_id]
        assert spell.private_inputs == {NFT_APP: FUNDING.utxo_id}
        assert len(spell.outs) == 2

    def test_accounting(self) -> None:
        spell = build_create(_create(50_000))
        nft, tokens = spell.outs
        assert nft.address == tokens.address == SUBSCRIBER
        assert nft.charms[NFT_APP] == {"ticker": "SUBSCRIPTION-sub_1_abcdef", "remaining": 50_000}
        assert tokens.charms == {TOKEN_APP: 50_000}

    def test_terms_emit_full_state(self) -> None:
        terms = SubscriptionTerms(payer_pubkey="02aa", merchant_pubkey="03bb", amount_sats=10_000)
        nft = build_create(_create(50_000, terms=terms)).outs[0].charms[NFT_APP]
        assert nft["remaining"] == nft["remaining_balance"] == 50_000
        assert nft["is_active"] is True
        assert nft["billing_interval_blocks"] == 144
        assert nft["amount_sats"] == 10_000

    def test_deterministic(self) -> None:
        assert build_create(_create()).to_json() == build_create(_create()).to_json()

    def test_only_funding_fields_vary(self) -> None:
        other = FundingResource(txid="22" * 32, vout=0, value=100_000)
        first = build_create(_create()).to_dict()
        second = build_create(
            CreateParams(
                app_vk=APP_VK,
                subscriber_address=SUBSCRIBER,
                subscription_id="sub_1_abcdef",
                total_locked=50_000,
                funding=other,
            )
        ).to_dict()
        for data in (first, second):
            del data["apps"], data["ins"], data["private_inputs"]
        assert first == second

    def test_funding_changes_app_id(self) -> None:
        other = FundingResource(txid="22" * 32, vout=0, value=100_000)
        spell = build_create(
            CreateParams(
                app_vk=APP_VK,
                subscriber_address=SUBSCRIBER,
                subscription_id="sub_1_abcdef",
                total_locked=50_000,
                funding=other,
            )
        )
        assert spell.apps[NFT_APP] == f"n/{derive_app_id(other.utxo_id)}/{APP_VK}"
        assert spell.ins[0].utxo_id == other.utxo_id


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------


class TestBuildPayment:
    def test_accounting(self) -> None:
        spell = build_execute_payment(_payment(700_000, 100_000))
        nft, paid, change = spell.outs
        assert nft.charms[NFT_APP]["remaining"] == 600_000
        assert paid.address == MERCHANT
        assert paid.charms == {TOKEN_APP: 100_000}
        assert change.address == SUBSCRIBER
        assert change.charms == {TOKEN_APP: 600_000}
        assert paid.charms[TOKEN_APP] + change.charms[TOKEN_APP] == 700_000

    def test_inputs_carry_current_state(self) -> None:
        spell = build_execute_payment(_payment(700_000, 100_000))
        nft_in, token_in = spell.ins
        assert nft_in.utxo_id == NFT_UTXO
        assert nft_in.charms[NFT_APP]["remaining"] == 700_000
        assert token_in.utxo_id == TOKEN_UTXO
        assert token_in.charms == {TOKEN_APP: 700_000}
        assert spell.private_inputs is None
        assert spell.apps[TOKEN_APP] == f"t/{APP_ID}/{APP_VK}"

    def test_new_remaining(self) -> None:
        assert _payment(700_000, 100_000).new_remaining == 600_000

    def test_full_payout(self) -> None:
        spell = build_execute_payment(_payment(100_000, 100_000))
        assert spell.outs[0].charms[NFT_APP]["remaining"] == 0
        assert spell.outs[2].charms == {TOKEN_APP: 0}

    def test_payment_block_recorded(self) -> None:
        terms = SubscriptionTerms(
            payer_pubkey="02aa", merchant_pubkey="03bb", amount_sats=100_000, last_payment_block=10
        )
        spell = build_execute_payment(_payment(terms=terms, payment_block=900_000))
        assert spell.ins[0].charms[NFT_APP]["last_payment_block"] == 10
        assert spell.outs[0].charms[NFT_APP]["last_payment_block"] == 900_000


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


class TestBuildCancel:
    def test_closes_and_refunds(self) -> None:
        spell = build_cancel(_cancel(600_000))
        nft, refund = spell.outs
        assert nft.charms[NFT_APP] == {
            "ticker": "SUBSCRIPTION-sub_1_abcdef-CANCELLED",
            "remaining": 0,
        }
        assert refund.address == SUBSCRIBER
        assert refund.charms == {TOKEN_APP: 600_000}

    def test_inputs(self) -> None:
        spell = build_cancel(_cancel(600_000))
        assert [i.utxo_id for i in spell.ins] == [NFT_UTXO, TOKEN_UTXO]
        assert spell.ins[1].charms == {TOKEN_APP: 600_000}


# ---------------------------------------------------------------------------
# Serialization and charm content
# ---------------------------------------------------------------------------


class TestSpellSerialization:
    def test_to_json_is_canonical(self) -> None:
        text = build_create(_create()).to_json()
        assert " " not in text
        data = json.loads(text)
        assert list(data) == sorted(data)
        assert data["version"] == SPELL_VERSION
        assert data["private_inputs"] == {NFT_APP: FUNDING.utxo_id}

    def test_private_inputs_omitted_when_empty(self) -> None:
        assert "private_inputs" not in build_cancel(_cancel()).to_dict()

    def test_output_sats(self) -> None:
        spell = build_cancel(_cancel())
        assert "sats" not in spell.to_dict()["outs"][0]

    def test_input_txids_distinct(self) -> None:
        assert build_cancel(_cancel()).input_txids == ["11" * 32]


class TestSubscriptionCharm:
    def test_round_trip_legacy(self) -> None:
        charm = SubscriptionCharm(subscription_id="sub_9", remaining=5)
        assert SubscriptionCharm.from_charm_data(charm.to_data()) == charm

    def test_round_trip_with_terms(self) -> None:
        terms = SubscriptionTerms(
            payer_pubkey="02aa", merchant_pubkey="03bb", amount_sats=7, last_payment_block=3
        )
        charm = SubscriptionCharm(subscription_id="sub_9", remaining=0, cancelled=True, terms=terms)
        decoded = SubscriptionCharm.from_charm_data(charm.to_data())
        assert decoded == charm
        assert decoded.is_terminal

    def test_inactive_flag_marks_cancelled(self) -> None:
        data = {
            "ticker": "SUBSCRIPTION-sub_9",
            "payer_pubkey": "02aa",
            "merchant_pubkey": "03bb",
            "amount_sats": 7,
            "is_active": False,
            "remaining_balance": 4,
        }
        charm = SubscriptionCharm.from_charm_data(data)
        assert charm.cancelled
        assert charm.remaining == 4

    def test_rejects_foreign_ticker(self) -> None:
        with pytest.raises(ValueError, match="Not a subscription charm"):
            SubscriptionCharm.from_charm_data({"ticker": "OTHER", "remaining": 1})

    @pytest.mark.parametrize(
        ("remaining", "cancelled", "terminal"),
        [(10, False, False), (0, False, True), (10, True, True)],
    )
    def test_is_terminal(self, remaining: int, cancelled: bool, terminal: bool) -> None:
        charm = SubscriptionCharm(subscription_id="s", remaining=remaining, cancelled=cancelled)
        assert charm.is_terminal is terminal
