"""Turn prover output into wallet-signable PSBTs and back into signed hex.

For every input that still needs a signature the adapter resolves the
previous output (lookup table first, then the index) and attaches it the
way wallets expect: ``witness_utxo`` for witness spends, the full previous
transaction as ``non_witness_utxo`` for legacy spends. Inputs the prover
already signed travel as finalized and are left out of ``signInputs``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from charm_pay.bitcoin.psbt import Psbt
from charm_pay.bitcoin.script import is_witness_script
from charm_pay.bitcoin.transaction import Transaction
from charm_pay.errors.flow_errors import MissingPreviousOutput, SigningRejected, ValidationError
from charm_pay.prover.models import SignedTransactionPair

if TYPE_CHECKING:
    from charm_pay.chain.mempool.client import MempoolClient
    from charm_pay.prover.models import UnsignedTransactionPair
    from charm_pay.wallet.client import Wallet

logger = logging.getLogger(__name__)


def _parse_tx(raw_hex: str, *, step: str) -> Transaction:
    try:
        return Transaction.from_hex(raw_hex)
    except ValueError as exc:
        msg = f"Cannot parse transaction: {exc}"
        raise ValidationError(msg, step=step, detail=raw_hex[:64]) from exc


@dataclass
class SignableRequest:
    """A PSBT plus the ``signInputs`` map to send with it.

    Attributes:
        psbt: PSBT with previous outputs attached.
        sign_inputs: Address → indexes of inputs the wallet must sign.
        txid: Txid of the unsigned transaction.
    """

    psbt: Psbt
    sign_inputs: dict[str, list[int]]
    txid: str

    @property
    def needs_signature(self) -> bool:
        return any(self.sign_inputs.values())

    def to_base64(self) -> str:
        return self.psbt.to_base64()


class SigningAdapter:
    """Signs commit/spell transactions through a :class:`Wallet`.

    Usage::

        adapter = SigningAdapter(wallet, index, signer_address=address)
        signed = await adapter.sign_pair(unsigned, previous_transactions=lookup)
    """

    def __init__(
        self,
        wallet: Wallet,
        index: MempoolClient | None,
        *,
        signer_address: str,
    ) -> None:
        """Initialize the adapter.

        Args:
            wallet: The signer.
            index: Fetches previous transactions missing from the lookup.
            signer_address: Address the wallet signs the inputs with.
        """
        self._wallet = wallet
        self._index = index
        self._signer_address = signer_address

    @property
    def signer_address(self) -> str:
        return self._signer_address

    async def to_signable_request(
        self,
        raw_tx_hex: str,
        previous_transactions: dict[str, str],
    ) -> SignableRequest:
        """Build the PSBT for *raw_tx_hex*.

        Args:
            raw_tx_hex: Unsigned transaction from the prover.
            previous_transactions: txid → raw hex lookup; entries fetched
                from the index are added to it.

        Raises:
            ValidationError: The transaction does not parse.
            MissingPreviousOutput: An input's previous output is unknown.
        """
        tx = _parse_tx(raw_tx_hex, step="sign")
        psbt = Psbt.from_transaction(tx)

        to_sign: list[int] = []
        for index, (txin, pin) in enumerate(zip(tx.inputs, psbt.inputs, strict=True)):
            if pin.is_finalized:
                logger.debug("Input %d (%s) already signed; passing through", index, txin.outpoint)
                continue

            prev_txid, vout = txin.prev_tx_id_hex, txin.prev_tx_out_index
            prev = _parse_tx(
                await self._previous_transaction(prev_txid, vout, previous_transactions),
                step="resolve-previous-output",
            )
            if vout >= len(prev.outputs):
                raise MissingPreviousOutput(prev_txid, vout)

            spent = prev.outputs[vout]
            if is_witness_script(spent.script_pubkey):
                pin.witness_utxo = spent
            else:
                pin.non_witness_utxo = prev
            to_sign.append(index)

        return SignableRequest(
            psbt=psbt,
            sign_inputs={self._signer_address: to_sign} if to_sign else {},
            txid=tx.txid(),
        )

    async def sign_and_finalize(
        self,
        raw_tx_hex: str,
        previous_transactions: dict[str, str],
    ) -> str:
        """Have the wallet sign *raw_tx_hex* and return the finalized hex.

        Raises:
            SigningRejected: The user declined.
            ValidationError: The wallet's PSBT cannot be parsed or finalized.
            MissingPreviousOutput: An input's previous output is unknown.
        """
        request = await self.to_signable_request(raw_tx_hex, previous_transactions)

        psbt = request.psbt
        if request.needs_signature:
            logger.info(
                "Requesting wallet signature for %s (inputs %s)",
                request.txid,
                request.sign_inputs[self._signer_address],
            )
            try:
                signed = await self._wallet.sign_psbt(request.to_base64(), request.sign_inputs)
            except SigningRejected as exc:
                if exc.txid:
                    raise
                raise SigningRejected(exc.message, txid=request.txid) from exc
            try:
                psbt = Psbt.from_base64(signed.psbt)
            except ValueError as exc:
                msg = f"Wallet returned an unreadable PSBT: {exc}"
                raise ValidationError(msg, step="sign") from exc

        try:
            final = psbt.finalize()
        except ValueError as exc:
            msg = f"Cannot finalize {request.txid}: {exc}"
            raise ValidationError(msg, step="finalize") from exc
        return final.to_hex()

    async def sign_pair(
        self,
        unsigned: UnsignedTransactionPair,
        previous_transactions: dict[str, str] | None = None,
    ) -> SignedTransactionPair:
        """Sign the commit transaction, then the spell transaction.

        The signed commit is added to the lookup under its txid before the
        spell transaction is signed, since the spell spends a commit output.
        """
        lookup = previous_transactions if previous_transactions is not None else {}

        commit_hex = await self.sign_and_finalize(unsigned.commit_tx, lookup)
        commit_txid = Transaction.from_hex(commit_hex).txid()
        lookup[commit_txid] = commit_hex
        logger.info("Commit transaction %s signed", commit_txid)

        spell_hex = await self.sign_and_finalize(unsigned.spell_tx, lookup)
        logger.info("Spell transaction %s signed", Transaction.from_hex(spell_hex).txid())
        return SignedTransactionPair(commit_tx=commit_hex, spell_tx=spell_hex)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _previous_transaction(self, txid: str, vout: int, lookup: dict[str, str]) -> str:
        if txid in lookup:
            return lookup[txid]
        if self._index is None:
            raise MissingPreviousOutput(txid, vout)
        try:
            raw = await self._index.get_raw_tx(txid)
        except MissingPreviousOutput as exc:
            raise MissingPreviousOutput(txid, vout) from exc
        lookup[txid] = raw
        return raw
