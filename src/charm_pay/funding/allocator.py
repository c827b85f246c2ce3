"""Funding UTXO allocation with prover-conflict retry.

The prover holds an unbounded, invisible lock on every funding UTXO it has
seen. The allocator treats the conflict registry as an at-least-once cache:
claim an unused candidate, submit, and on a conflict move on to the next
one. When the current pool runs out it re-queries the index a bounded
number of times, then gives up with :class:`ExhaustionError`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from charm_pay.errors.flow_errors import ConflictError, ExhaustionError, NoFundingResources

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Collection, Sequence

    from charm_pay.chain.mempool.client import MempoolClient
    from charm_pay.config.settings import FundingConfig
    from charm_pay.funding.models import FundingResource
    from charm_pay.funding.registry import ConflictRegistry
    from charm_pay.prover.models import UnsignedTransactionPair
    from charm_pay.spells.models import Spell

    SpellFactory = Callable[[FundingResource], Spell]
    SpellSubmitter = Callable[[Spell, FundingResource], Awaitable[UnsignedTransactionPair]]

logger = logging.getLogger(__name__)


@dataclass
class ProofResult:
    """An accepted proof and the funding UTXO that paid for it.

    Attributes:
        funding: The accepted funding UTXO.
        spell: The spell the prover accepted.
        transactions: The unsigned commit/spell pair.
        tried: Every funding UTXO id offered during the operation, in order.
    """

    funding: FundingResource
    spell: Spell
    transactions: UnsignedTransactionPair
    tried: list[str] = field(default_factory=list)


class FundingAllocator:
    """Picks funding UTXOs and drives the conflict-retry loop.

    Usage::

        allocator = FundingAllocator(index, registry, config.funding)
        result = await allocator.attempt_with_retry(build, submit, address=addr)
        ...
        await allocator.release(result)
    """

    def __init__(
        self,
        index: MempoolClient,
        registry: ConflictRegistry,
        config: FundingConfig,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the allocator.

        Args:
            index: UTXO index used to (re)load candidates.
            registry: Shared registry of used funding UTXO ids.
            config: Retry budget and refresh delay.
            sleep: Delay function awaited before each pool refresh.
        """
        self._index = index
        self._registry = registry
        self._config = config
        self._sleep = sleep

    @property
    def registry(self) -> ConflictRegistry:
        return self._registry

    async def release(self, proof: ProofResult) -> None:
        """End the in-flight hold on the funding UTXO of a finished operation."""
        await self._registry.release(proof.funding.utxo_id)

    async def candidates(self, address: str) -> list[FundingResource]:
        """Spendable outputs of *address* from the index."""
        return await self._index.get_utxos(address)

    async def allocate(
        self,
        candidates: Sequence[FundingResource],
        *,
        exclude: Collection[str] = (),
    ) -> FundingResource:
        """Claim the first candidate not yet in the registry.

        If every candidate is registered as used, the registry is cleared
        once (outputs may have confirmed since the last run) and the claim
        retried against the same list. Ids held by running operations
        survive the clear, so they are never offered twice at once. Ids in
        *exclude* are never offered.

        Raises:
            ExhaustionError: No candidate could be claimed.
        """
        pool = [c for c in candidates if c.utxo_id not in exclude]
        if not pool:
            msg = "No untried funding candidates left"
            raise ExhaustionError(msg, tried=list(exclude))

        resource = await self._registry.claim_first(pool)
        if resource is None:
            logger.warning(
                "All %d funding candidates are marked used; clearing idle registry entries",
                len(pool),
            )
            await self._registry.clear()
            resource = await self._registry.claim_first(pool)
        if resource is None:
            msg = "Every funding candidate was claimed by a concurrent operation"
            raise ExhaustionError(msg, tried=list(exclude))

        logger.info("Allocated funding UTXO %s (%d sats)", resource.utxo_id, resource.value)
        return resource

    async def attempt_with_retry(
        self,
        build_spell: SpellFactory,
        submit: SpellSubmitter,
        *,
        address: str,
        candidates: Sequence[FundingResource] | None = None,
        reserved: Collection[str] = (),
        max_attempts: int | None = None,
        max_refresh_cycles: int | None = None,
    ) -> ProofResult:
        """Submit a spell, moving to a fresh funding UTXO on each conflict.

        Args:
            build_spell: Builds the spell for a given funding UTXO.
            submit: Sends the spell to the prover.
            address: Wallet address whose UTXOs fund the proof; used for
                the initial load (when *candidates* is None) and refreshes.
            candidates: Initial pool; loaded from the index when omitted.
            reserved: UTXO ids that must never fund a proof (the spell's own
                charm inputs).
            max_attempts: Candidates tried per pool (config default).
            max_refresh_cycles: Pool refreshes allowed (config default).

        Returns:
            The accepted :class:`ProofResult`. Its funding UTXO stays held in flight
            until :meth:`release`.

        Raises:
            NoFundingResources: The wallet has no spendable outputs at all.
            ExhaustionError: The retry/refresh budget ran out.
            Any non-conflict error from *submit*, unchanged.
        """
        if max_attempts is None:
            max_attempts = self._config.max_attempts
        if max_refresh_cycles is None:
            max_refresh_cycles = self._config.max_refresh_cycles

        pool = list(candidates) if candidates is not None else await self.candidates(address)
        pool = [c for c in pool if c.utxo_id not in reserved]
        if not pool:
            raise NoFundingResources(address)

        tried: list[str] = []
        for cycle in range(max_refresh_cycles + 1):
            for _ in range(max_attempts):
                try:
                    resource = await self.allocate(pool, exclude={*tried, *reserved})
                except ExhaustionError:
                    break
                tried.append(resource.utxo_id)

                accepted = False
                try:
                    spell = build_spell(resource)
                    transactions = await submit(spell, resource)
                    accepted = True
                except ConflictError:
                    logger.warning(
                        "Funding UTXO %s conflicted (attempt %d, cycle %d); trying next",
                        resource.utxo_id,
                        len(tried),
                        cycle,
                    )
                    continue
                finally:
                    if not accepted:
                        await self._registry.release(resource.utxo_id)
                return ProofResult(
                    funding=resource, spell=spell, transactions=transactions, tried=tried
                )

            if cycle == max_refresh_cycles:
                break
            logger.info(
                "Funding pool exhausted; refreshing in %.1fs (cycle %d of %d)",
                self._config.refresh_delay,
                cycle + 1,
                max_refresh_cycles,
            )
            await self._sleep(self._config.refresh_delay)
            pool = [c for c in await self.candidates(address) if c.utxo_id not in reserved]

        msg = (
            f"No funding UTXO accepted after {len(tried)} attempts "
            f"and {max_refresh_cycles} refreshes"
        )
        raise ExhaustionError(msg, tried=tried)
