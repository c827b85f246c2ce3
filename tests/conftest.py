"""Shared test fixtures for the charm-pay test suite."""

from __future__ import annotations

import pytest
from fakes import APP_VK, INDEX_URL, PROVER_URL, FakeChain, FakeProver, FakeWallet

from charm_pay.config.settings import (
    AppConfig,
    BroadcastConfig,
    ContractConfig,
    FundingConfig,
    IndexConfig,
    ProverConfig,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def prover_service() -> FakeProver:
    return FakeProver()


@pytest.fixture
def wallet() -> FakeWallet:
    return FakeWallet()


@pytest.fixture
async def index(chain: FakeChain):
    client = chain.client()
    yield client
    await client.close()


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    """Provide a test AppConfig with safe defaults and no delays."""
    binary = tmp_path / "subscription.wasm"
    binary.write_bytes(b"\x00asm\x01\x00\x00\x00")
    return AppConfig(
        debug=True,
        index=IndexConfig(url=INDEX_URL),
        prover=ProverConfig(url=PROVER_URL),
        contract=ContractConfig(app_vk=APP_VK, binary_path=str(binary)),
        funding=FundingConfig(max_attempts=3, max_refresh_cycles=1, refresh_delay=0),
        broadcast=BroadcastConfig(propagation_delay=0),
    )
