"""Subscription lifecycle: create, pay, cancel.

Each operation runs one strictly sequential pipeline::

    claim funding → build spell → prove (retry on conflict)
        → sign commit → sign spell → broadcast commit → broadcast spell

A per-operation ``txid → raw hex`` table is shared by the prover and the
signer so every previous transaction is fetched at most once.

The result is assembled from the locally computed txids before anything is
broadcast, so a :class:`PartialBroadcast` carries it and
:meth:`FlowOrchestrator.resume_spell_broadcast` can return it once the
spell lands.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, TypeVar

from charm_pay.bitcoin.transaction import Transaction
from charm_pay.errors.flow_errors import PartialBroadcast, ValidationError
from charm_pay.flow.models import (
    CancelResult,
    CreateResult,
    FlowResult,
    PaymentResult,
    SubscriptionState,
    new_subscription_id,
)
from charm_pay.spells.builder import (
    CancelParams,
    CreateParams,
    PaymentParams,
    build_cancel,
    build_create,
    build_execute_payment,
    derive_app_id,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Collection

    from charm_pay.chain.broadcaster import Broadcaster
    from charm_pay.funding.allocator import FundingAllocator, ProofResult
    from charm_pay.funding.models import FundingResource
    from charm_pay.prover.client import ProverClient
    from charm_pay.prover.models import UnsignedTransactionPair
    from charm_pay.spells.models import Spell, SubscriptionTerms
    from charm_pay.wallet.signing import SigningAdapter

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=FlowResult)


def _txid(raw_hex: str) -> str:
    return Transaction.from_hex(raw_hex).txid()


class FlowOrchestrator:
    """Runs subscription transitions end to end for one wallet address.

    Usage::

        flow = FlowOrchestrator(
            app_vk=config.contract.app_vk,
            binaries=binaries,
            prover=prover,
            allocator=allocator,
            signer=signer,
            broadcaster=broadcaster,
        )
        created = await flow.create_subscription(500_000)
        paid = await flow.execute_payment(created.state, 100_000, merchant)
    """

    def __init__(
        self,
        *,
        app_vk: str,
        binaries: dict[str, str],
        prover: ProverClient,
        allocator: FundingAllocator,
        signer: SigningAdapter,
        broadcaster: Broadcaster,
    ) -> None:
        self._app_vk = app_vk
        self._binaries = binaries
        self._prover = prover
        self._allocator = allocator
        self._signer = signer
        self._broadcaster = broadcaster

    @property
    def address(self) -> str:
        """Wallet address that owns subscriptions and pays proof fees."""
        return self._signer.signer_address

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_subscription(
        self,
        total_locked: int,
        *,
        subscription_id: str | None = None,
        terms: SubscriptionTerms | None = None,
    ) -> CreateResult:
        """Lock *total_locked* sats into a new subscription.

        Raises:
            ValidationError: *total_locked* is not positive.
            ExhaustionError: No funding UTXO was accepted.
            SigningRejected: The user declined in the wallet.
            PartialBroadcast: The commit is on chain, the spell is not;
                ``result`` holds the pending :class:`CreateResult`.
        """
        if total_locked <= 0:
            msg = f"Total locked amount must be positive, got {total_locked}"
            raise ValidationError(msg, step="create")

        subscription_id = subscription_id or new_subscription_id()
        address = self.address

        def build(funding: FundingResource) -> Spell:
            return build_create(
                CreateParams(
                    app_vk=self._app_vk,
                    subscriber_address=address,
                    subscription_id=subscription_id,
                    total_locked=total_locked,
                    funding=funding,
                    terms=terms,
                )
            )

        def finish(proof: ProofResult, txids: list[str]) -> CreateResult:
            spell_txid = txids[1]
            state = SubscriptionState(
                subscription_id=subscription_id,
                app_id=derive_app_id(proof.funding.utxo_id),
                subscription_utxo=f"{spell_txid}:0",
                token_utxo=f"{spell_txid}:1",
                remaining_balance=total_locked,
                subscriber_address=address,
                terms=terms,
            )
            return CreateResult(
                state=state, txids=txids, funding_utxo=proof.funding.utxo_id, tried=proof.tried
            )

        logger.info("Creating subscription %s locking %d sats", subscription_id, total_locked)
        return await self._run(build, finish)

    async def execute_payment(
        self,
        state: SubscriptionState,
        payment_amount: int,
        recipient_address: str,
        *,
        payment_block: int | None = None,
    ) -> PaymentResult:
        """Pay *payment_amount* of the locked tokens to *recipient_address*.

        Raises:
            ValidationError: The amount is not positive, exceeds the
                remaining balance, or the subscription is terminal.
        """
        if state.is_terminal:
            msg = f"Subscription {state.subscription_id} is closed; no further payments"
            raise ValidationError(msg, step="execute-payment")
        if payment_amount <= 0:
            msg = f"Payment amount must be positive, got {payment_amount}"
            raise ValidationError(msg, step="execute-payment")
        if payment_amount > state.remaining_balance:
            msg = (
                f"Payment of {payment_amount} sats exceeds the remaining balance "
                f"of {state.remaining_balance} sats"
            )
            raise ValidationError(msg, step="execute-payment")

        params = PaymentParams(
            app_id=state.app_id,
            app_vk=self._app_vk,
            subscription_id=state.subscription_id,
            subscription_utxo=state.subscription_utxo,
            token_utxo=state.token_utxo,
            current_remaining=state.remaining_balance,
            payment_amount=payment_amount,
            subscriber_address=state.subscriber_address,
            recipient_address=recipient_address,
            terms=state.terms,
            payment_block=payment_block,
        )
        spell = build_execute_payment(params)

        logger.info(
            "Paying %d sats from subscription %s (%d → %d)",
            payment_amount,
            state.subscription_id,
            state.remaining_balance,
            params.new_remaining,
        )

        def finish(proof: ProofResult, txids: list[str]) -> PaymentResult:
            spell_txid = txids[1]
            new_state = state.advance(
                subscription_utxo=f"{spell_txid}:0",
                token_utxo=f"{spell_txid}:2",
                remaining_balance=params.new_remaining,
            )
            return PaymentResult(
                state=new_state,
                txids=txids,
                funding_utxo=proof.funding.utxo_id,
                tried=proof.tried,
                payment_amount=payment_amount,
                recipient_utxo=f"{spell_txid}:1",
            )

        return await self._run(
            lambda _funding: spell,
            finish,
            reserved=(state.subscription_utxo, state.token_utxo),
        )

    async def cancel_subscription(self, state: SubscriptionState) -> CancelResult:
        """Close the subscription and refund the remaining balance.

        Raises:
            ValidationError: The subscription is already terminal.
        """
        if state.is_terminal:
            msg = f"Subscription {state.subscription_id} is already closed"
            raise ValidationError(msg, step="cancel")

        spell = build_cancel(
            CancelParams(
                app_id=state.app_id,
                app_vk=self._app_vk,
                subscription_id=state.subscription_id,
                subscription_utxo=state.subscription_utxo,
                token_utxo=state.token_utxo,
                remaining=state.remaining_balance,
                subscriber_address=state.subscriber_address,
                terms=state.terms,
            )
        )

        logger.info(
            "Cancelling subscription %s, refunding %d sats",
            state.subscription_id,
            state.remaining_balance,
        )

        def finish(proof: ProofResult, txids: list[str]) -> CancelResult:
            spell_txid = txids[1]
            new_state = state.advance(
                subscription_utxo=f"{spell_txid}:0",
                token_utxo=f"{spell_txid}:1",
                remaining_balance=0,
                cancelled=True,
            )
            return CancelResult(
                state=new_state,
                txids=txids,
                funding_utxo=proof.funding.utxo_id,
                tried=proof.tried,
                refunded=state.remaining_balance,
                refund_utxo=f"{spell_txid}:1",
            )

        return await self._run(
            lambda _funding: spell,
            finish,
            reserved=(state.subscription_utxo, state.token_utxo),
        )

    async def resume_spell_broadcast(self, partial: PartialBroadcast) -> FlowResult:
        """Finish a transition whose commit is already on chain.

        Returns:
            The result the interrupted operation would have returned, with
            the relay's txids.

        Raises:
            ValidationError: *partial* does not carry the interrupted result.
            PartialBroadcast: The spell was rejected again.
        """
        if partial.result is None:
            msg = f"No pending result recorded for commit {partial.commit_txid}"
            raise ValidationError(msg, step="broadcast-spell")
        txids = await self._broadcaster.resume_spell(partial)
        logger.info("Transition resumed: commit %s, spell %s", txids[0], txids[1])
        return replace(partial.result, txids=txids)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(
        self,
        build: Callable[[FundingResource], Spell],
        finish: Callable[[ProofResult, list[str]], R],
        *,
        reserved: Collection[str] = (),
    ) -> R:
        address = self.address
        lookup: dict[str, str] = {}

        async def submit(spell: Spell, funding: FundingResource) -> UnsignedTransactionPair:
            return await self._prover.submit(
                spell, self._binaries, funding, address, previous_transactions=lookup
            )

        proof = await self._allocator.attempt_with_retry(
            build, submit, address=address, reserved=reserved
        )
        try:
            signed = await self._signer.sign_pair(proof.transactions, lookup)
            result = finish(proof, [_txid(signed.commit_tx), _txid(signed.spell_tx)])
            try:
                result.txids = await self._broadcaster.submit_package(signed)
            except PartialBroadcast as exc:
                exc.result = result
                raise
        finally:
            await self._allocator.release(proof)
        logger.info("Transition broadcast: commit %s, spell %s", *result.txids)
        return result
