"""Subscription flow error taxonomy.

Conflicts are retried inside the funding allocator; everything else
propagates to the flow caller carrying the identifiers needed to recover.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from charm_pay.errors.charm_errors import CharmPayError

if TYPE_CHECKING:
    from charm_pay.flow.models import FlowResult


class ConflictError(CharmPayError):
    """The prover reports the funding UTXO is already committed elsewhere."""

    def __init__(self, message: str, *, utxo_id: str = "") -> None:
        super().__init__(
            message,
            code="funding-conflict",
            step="prove",
            remediation="Wait a few minutes for pending submissions to settle, then retry.",
        )
        self.utxo_id = utxo_id


class ValidationError(CharmPayError):
    """A descriptor, request or service response is malformed or rejected."""

    def __init__(self, message: str, *, step: str = "validate", detail: str = "") -> None:
        super().__init__(
            message,
            code="validation-error",
            step=step,
            remediation="Check the subscription parameters; retrying unchanged will not help.",
        )
        self.detail = detail


class TransportError(CharmPayError):
    """Network failure talking to an external service."""

    def __init__(self, message: str, *, step: str = "network", url: str = "") -> None:
        super().__init__(
            message,
            code="transport-error",
            step=step,
            remediation="Check your connection and the service status, then retry.",
        )
        self.url = url


class SigningRejected(CharmPayError):
    """The user declined the signing request in their wallet. No funds moved."""

    def __init__(
        self, message: str = "Signing request was rejected in the wallet", *, txid: str = ""
    ) -> None:
        super().__init__(
            message,
            code="signing-rejected",
            step="sign",
            remediation="Approve the request in your wallet, or reconnect the wallet and retry.",
        )
        self.txid = txid


class MissingPreviousOutput(CharmPayError):
    """The previous output spent by an input could not be resolved."""

    def __init__(self, txid: str, vout: int | None = None) -> None:
        where = f"{txid}:{vout}" if vout is not None else txid
        super().__init__(
            f"Previous output {where} could not be resolved",
            code="missing-previous-output",
            step="sign",
            remediation="Wait for the transaction to reach the index, then retry.",
        )
        self.txid = txid
        self.vout = vout


class PartialBroadcast(CharmPayError):
    """Commit transaction accepted, spell transaction not.

    The commit output sits on-chain unspent; only the spell broadcast needs
    retrying, not the whole flow. ``result`` holds what the interrupted
    operation would have returned (new state, funding UTXO) once the spell
    lands.
    """

    def __init__(
        self,
        commit_txid: str,
        spell_tx: str,
        *,
        reason: str = "",
        result: FlowResult | None = None,
    ) -> None:
        message = f"Commit transaction {commit_txid} was broadcast but the spell transaction failed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            code="partial-broadcast",
            step="broadcast-spell",
            remediation="Retry broadcasting only the spell transaction.",
        )
        self.commit_txid = commit_txid
        self.spell_tx = spell_tx
        self.reason = reason
        self.result = result

    @property
    def funding_utxo(self) -> str:
        return self.result.funding_utxo if self.result is not None else ""


class ExhaustionError(CharmPayError):
    """Retry/refresh budget spent without an accepted proof."""

    def __init__(self, message: str, *, tried: list[str] | None = None) -> None:
        super().__init__(
            message,
            code="funding-exhausted",
            step="allocate-funding",
            remediation="Wait for pending transactions to confirm, then retry.",
        )
        self.tried = list(tried or [])


class NoFundingResources(ExhaustionError):
    """The wallet has no spendable outputs to pay proof fees with."""

    def __init__(self, address: str = "") -> None:
        super().__init__(f"No spendable outputs available for {address or 'the wallet'}")
        self.code = "no-funding"
        self.remediation = "Fund the wallet, wait for confirmation, then retry."
        self.address = address
