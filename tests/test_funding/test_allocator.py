"""Tests for funding allocation and conflict retry — funding/allocator.py."""

from __future__ import annotations

import asyncio

import pytest

from charm_pay.config.settings import FundingConfig
from charm_pay.errors.flow_errors import (
    ConflictError,
    ExhaustionError,
    NoFundingResources,
    TransportError,
    ValidationError,
)
from charm_pay.funding.allocator import FundingAllocator
from charm_pay.funding.models import FundingResource
from charm_pay.funding.registry import ConflictRegistry
from charm_pay.prover.models import UnsignedTransactionPair
from charm_pay.spells.models import Spell, SpellInput

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_ADDRESS = "tb1qfunding"


def _res(tag: str, value: int = 100_000) -> FundingResource:
    return FundingResource(txid=tag * 64, vout=0, value=value)


A, B, C, D = _res("a"), _res("b"), _res("c"), _res("d")
_PAIR = UnsignedTransactionPair(commit_tx="00", spell_tx="01")


class _Index:
    """Serves a scripted sequence of UTXO pools, repeating the last one."""

    def __init__(self, *pools: list[FundingResource]) -> None:
        self.pools = list(pools)
        self.queries = 0

    async def get_utxos(self, address: str) -> list[FundingResource]:
        self.queries += 1
        if len(self.pools) > 1:
            return self.pools.pop(0)
        return list(self.pools[0]) if self.pools else []


class _Prover:
    """Raises the scripted error per funding id, accepts everything else."""

    def __init__(self, errors: dict[str, Exception] | None = None) -> None:
        self.errors = errors or {}
        self.offered: list[str] = []

    async def submit(self, spell: Spell, funding: FundingResource) -> UnsignedTransactionPair:
        self.offered.append(funding.utxo_id)
        error = self.errors.get(funding.utxo_id)
        if error is not None:
            raise error
        return _PAIR


def _conflict(res: FundingResource) -> ConflictError:
    return ConflictError("duplicate funding utxo", utxo_id=res.utxo_id)


def _build(funding: FundingResource) -> Spell:
    return Spell(apps={}, ins=[SpellInput(utxo_id=funding.utxo_id)], outs=[])


def _allocator(
    index: _Index,
    *,
    registry: ConflictRegistry | None = None,
    max_attempts: int = 5,
    max_refresh_cycles: int = 0,
    sleeps: list[float] | None = None,
) -> FundingAllocator:
    async def _sleep(seconds: float) -> None:
        if sleeps is not None:
            sleeps.append(seconds)

    config = FundingConfig(
        max_attempts=max_attempts, max_refresh_cycles=max_refresh_cycles, refresh_delay=2.5
    )
    if registry is None:
        registry = ConflictRegistry()
    return FundingAllocator(index, registry, config, sleep=_sleep)


# ---------------------------------------------------------------------------
# allocate
# ---------------------------------------------------------------------------


class TestAllocate:
    async def test_first_unused(self) -> None:
        registry = ConflictRegistry()
        await registry.mark_used(A.utxo_id)
        allocator = _allocator(_Index(), registry=registry)
        assert await allocator.allocate([A, B, C]) == B
        assert await registry.is_used(B.utxo_id)

    async def test_all_used_clears_registry_once(self) -> None:
        registry = ConflictRegistry()
        for res in (A, B):
            await registry.mark_used(res.utxo_id)
        await registry.mark_used("stale:0")
        allocator = _allocator(_Index(), registry=registry)

        assert await allocator.allocate([A, B]) == A
        assert await registry.used_ids() == [A.utxo_id]

    async def test_excluded_never_offered(self) -> None:
        registry = ConflictRegistry()
        await registry.mark_used(B.utxo_id)
        allocator = _allocator(_Index(), registry=registry)
        # B is used and A is excluded: the clear-and-retry may only yield B
        assert await allocator.allocate([A, B], exclude={A.utxo_id}) == B

    async def test_empty_pool(self) -> None:
        with pytest.raises(ExhaustionError):
            await _allocator(_Index()).allocate([])

    async def test_everything_excluded(self) -> None:
        with pytest.raises(ExhaustionError):
            await _allocator(_Index()).allocate([A], exclude=[A.utxo_id])


# ---------------------------------------------------------------------------
# attempt_with_retry
# ---------------------------------------------------------------------------


class TestConflictRetry:
    async def test_second_candidate_accepted(self) -> None:
        registry = ConflictRegistry()
        prover = _Prover({A.utxo_id: _conflict(A)})
        allocator = _allocator(_Index([A, B]), registry=registry)

        result = await allocator.attempt_with_retry(_build, prover.submit, address=_ADDRESS)

        assert result.funding == B
        assert result.spell.ins[0].utxo_id == B.utxo_id
        assert result.transactions == _PAIR
        assert result.tried == [A.utxo_id, B.utxo_id]
        assert prover.offered == [A.utxo_id, B.utxo_id]
        assert await registry.used_ids() == sorted([A.utxo_id, B.utxo_id])
        assert await registry.in_flight_ids() == [B.utxo_id]

    async def test_no_resource_offered_twice(self) -> None:
        prover = _Prover({r.utxo_id: _conflict(r) for r in (A, B, C)})
        allocator = _allocator(_Index([A, B, C]), max_attempts=10, max_refresh_cycles=2)

        with pytest.raises(ExhaustionError) as exc_info:
            await allocator.attempt_with_retry(_build, prover.submit, address=_ADDRESS)

        assert len(prover.offered) == len(set(prover.offered)) == 3
        assert exc_info.value.tried == prover.offered

    async def test_max_attempts_per_pool(self) -> None:
        prover = _Prover({r.utxo_id: _conflict(r) for r in (A, B, C, D)})
        allocator = _allocator(_Index([A, B, C, D]), max_attempts=2)

        with pytest.raises(ExhaustionError):
            await allocator.attempt_with_retry(_build, prover.submit, address=_ADDRESS)
        assert prover.offered == [A.utxo_id, B.utxo_id]

    async def test_refresh_finds_new_resource(self) -> None:
        sleeps: list[float] = []
        index = _Index([A], [A, C])
        prover = _Prover({A.utxo_id: _conflict(A)})
        allocator = _allocator(index, max_refresh_cycles=1, sleeps=sleeps)

        result = await allocator.attempt_with_retry(_build, prover.submit, address=_ADDRESS)

        assert result.funding == C
        assert prover.offered == [A.utxo_id, C.utxo_id]
        assert sleeps == [2.5]
        assert index.queries == 2

    async def test_refresh_budget_is_bounded(self) -> None:
        sleeps: list[float] = []
        index = _Index([A])
        prover = _Prover({A.utxo_id: _conflict(A)})
        allocator = _allocator(index, max_refresh_cycles=3, sleeps=sleeps)

        with pytest.raises(ExhaustionError) as exc_info:
            await allocator.attempt_with_retry(_build, prover.submit, address=_ADDRESS)

        assert sleeps == [2.5, 2.5, 2.5]
        assert index.queries == 4
        assert exc_info.value.code == "funding-exhausted"

    async def test_explicit_overrides(self) -> None:
        prover = _Prover({r.utxo_id: _conflict(r) for r in (A, B, C)})
        allocator = _allocator(_Index([A, B, C]), max_attempts=5)

        with pytest.raises(ExhaustionError):
            await allocator.attempt_with_retry(
                _build, prover.submit, address=_ADDRESS, max_attempts=1, max_refresh_cycles=0
            )
        assert prover.offered == [A.utxo_id]


class TestNonConflictErrors:
    @pytest.mark.parametrize(
        "error",
        [
            ValidationError("spell rejected", step="prove"),
            TransportError("prover down", step="prove"),
        ],
    )
    async def test_propagates_without_retry(self, error: Exception) -> None:
        prover = _Prover({A.utxo_id: error})
        allocator = _allocator(_Index([A, B]))

        with pytest.raises(type(error)):
            await allocator.attempt_with_retry(_build, prover.submit, address=_ADDRESS)
        assert prover.offered == [A.utxo_id]

    async def test_failed_attempt_releases_hold(self) -> None:
        registry = ConflictRegistry()
        prover = _Prover({A.utxo_id: TransportError("prover down", step="prove")})
        allocator = _allocator(_Index([A]), registry=registry)

        with pytest.raises(TransportError):
            await allocator.attempt_with_retry(_build, prover.submit, address=_ADDRESS)
        assert await registry.in_flight_ids() == []
        assert await registry.is_used(A.utxo_id)


class TestCandidatePool:
    async def test_no_funding_resources(self) -> None:
        allocator = _allocator(_Index([]))
        with pytest.raises(NoFundingResources) as exc_info:
            await allocator.attempt_with_retry(_build, _Prover().submit, address=_ADDRESS)
        assert exc_info.value.address == _ADDRESS
        assert isinstance(exc_info.value, ExhaustionError)

    async def test_explicit_candidates_skip_index(self) -> None:
        index = _Index([A])
        prover = _Prover()
        result = await _allocator(index).attempt_with_retry(
            _build, prover.submit, address=_ADDRESS, candidates=[B]
        )
        assert result.funding == B
        assert index.queries == 0

    async def test_reserved_ids_never_fund(self) -> None:
        prover = _Prover()
        allocator = _allocator(_Index([A, B]))
        result = await allocator.attempt_with_retry(
            _build, prover.submit, address=_ADDRESS, reserved=[A.utxo_id]
        )
        assert result.funding == B
        assert prover.offered == [B.utxo_id]

    async def test_only_reserved_is_no_funding(self) -> None:
        allocator = _allocator(_Index([A]))
        with pytest.raises(NoFundingResources):
            await allocator.attempt_with_retry(
                _build, _Prover().submit, address=_ADDRESS, reserved=[A.utxo_id]
            )

    async def test_stale_registry_is_cleared(self) -> None:
        registry = ConflictRegistry()
        await registry.mark_used(A.utxo_id)
        prover = _Prover()
        allocator = _allocator(_Index([A]), registry=registry)

        result = await allocator.attempt_with_retry(_build, prover.submit, address=_ADDRESS)
        assert result.funding == A


class TestConcurrentOperations:
    async def test_in_flight_funding_never_offered_twice(self) -> None:
        registry = ConflictRegistry()
        allocator = _allocator(_Index([A, B]), registry=registry)
        gate = asyncio.Event()
        submitting: list[str] = []

        async def submit(spell: Spell, funding: FundingResource) -> UnsignedTransactionPair:
            submitting.append(funding.utxo_id)
            await gate.wait()
            return _PAIR

        tasks = [
            asyncio.create_task(allocator.attempt_with_retry(_build, submit, address=_ADDRESS))
            for _ in range(3)
        ]
        for _ in range(10):
            await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert sorted(submitting) == sorted([A.utxo_id, B.utxo_id])
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], ExhaustionError)
        accepted = sorted(r.funding.utxo_id for r in results if not isinstance(r, Exception))
        assert accepted == sorted([A.utxo_id, B.utxo_id])

    async def test_release_ends_hold(self) -> None:
        registry = ConflictRegistry()
        allocator = _allocator(_Index([A]), registry=registry)

        result = await allocator.attempt_with_retry(_build, _Prover().submit, address=_ADDRESS)
        assert await registry.in_flight_ids() == [A.utxo_id]

        await allocator.release(result)
        assert await registry.in_flight_ids() == []
        assert await registry.is_used(A.utxo_id)
