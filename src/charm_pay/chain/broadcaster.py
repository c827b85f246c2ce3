"""Ordered commit → spell package broadcast.

The spell transaction spends a commit output, so the commit must be
accepted first. A spell failure after an accepted commit is reported as
:class:`PartialBroadcast`, which :meth:`Broadcaster.resume_spell` retries
without touching the commit again.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from charm_pay.bitcoin.transaction import Transaction
from charm_pay.errors.flow_errors import PartialBroadcast, ValidationError
from charm_pay.utils.encoding import is_hex

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from charm_pay.chain.mempool.client import MempoolClient
    from charm_pay.config.settings import BroadcastConfig
    from charm_pay.prover.models import SignedTransactionPair

logger = logging.getLogger(__name__)


def _local_txid(raw_hex: str) -> str | None:
    try:
        return Transaction.from_hex(raw_hex).txid()
    except ValueError:
        return None


class Broadcaster:
    """Submits signed commit/spell pairs through the index relay."""

    def __init__(
        self,
        index: MempoolClient,
        config: BroadcastConfig,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._index = index
        self._config = config
        self._sleep = sleep

    async def submit_package(self, pair: SignedTransactionPair | Sequence[str]) -> list[str]:
        """Broadcast commit then spell.

        Args:
            pair: A :class:`SignedTransactionPair` or ``[commit_hex, spell_hex]``.

        Returns:
            ``[commit_txid, spell_txid]`` as reported by the relay.

        Raises:
            ValidationError: Not exactly two hex transactions (nothing sent),
                or the relay rejected the commit.
            TransportError: The commit could not be sent.
            PartialBroadcast: The commit was accepted but the spell was not.
        """
        transactions = list(pair) if isinstance(pair, (list, tuple)) else pair.as_list()
        if len(transactions) != 2:
            msg = f"Expected 2 transactions (commit + spell), got {len(transactions)}"
            raise ValidationError(msg, step="broadcast")
        for name, raw in zip(("commit", "spell"), transactions, strict=True):
            if not isinstance(raw, str) or not is_hex(raw):
                msg = f"The {name} transaction is not valid hex"
                raise ValidationError(msg, step="broadcast", detail=str(raw)[:64])

        commit_tx, spell_tx = transactions
        commit_txid = await self._submit(commit_tx, "commit")

        if self._config.propagation_delay > 0:
            await self._sleep(self._config.propagation_delay)

        try:
            spell_txid = await self._submit(spell_tx, "spell")
        except Exception as exc:
            logger.warning("Commit %s broadcast but spell failed: %s", commit_txid, exc)
            raise PartialBroadcast(commit_txid, spell_tx, reason=str(exc)) from exc

        return [commit_txid, spell_txid]

    async def resume_spell(self, partial: PartialBroadcast) -> list[str]:
        """Retry only the spell broadcast of a :class:`PartialBroadcast`.

        Raises:
            PartialBroadcast: The spell was rejected again.
        """
        logger.info("Retrying spell broadcast for commit %s", partial.commit_txid)
        try:
            spell_txid = await self._submit(partial.spell_tx, "spell")
        except Exception as exc:
            raise PartialBroadcast(
                partial.commit_txid, partial.spell_tx, reason=str(exc), result=partial.result
            ) from exc
        return [partial.commit_txid, spell_txid]

    async def _submit(self, raw_hex: str, label: str) -> str:
        txid = await self._index.broadcast(raw_hex)
        expected = _local_txid(raw_hex)
        if expected is not None and txid != expected:
            logger.warning(
                "Relay returned txid %s for the %s transaction, computed %s", txid, label, expected
            )
        logger.info("Broadcast %s transaction %s", label, txid)
        return txid
