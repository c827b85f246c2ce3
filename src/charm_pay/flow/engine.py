"""CharmPayEngine — owns the clients behind a :class:`FlowOrchestrator`."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from charm_pay.chain.broadcaster import Broadcaster
from charm_pay.chain.explorer import Explorer
from charm_pay.chain.mempool.client import MempoolClient
from charm_pay.flow.orchestrator import FlowOrchestrator
from charm_pay.funding.allocator import FundingAllocator
from charm_pay.funding.registry import ConflictRegistry
from charm_pay.prover.binaries import binaries_map, load_binary
from charm_pay.prover.client import ProverClient
from charm_pay.wallet.client import WalletRpcClient
from charm_pay.wallet.signing import SigningAdapter

if TYPE_CHECKING:
    from charm_pay.config.settings import AppConfig
    from charm_pay.wallet.client import Wallet

logger = logging.getLogger(__name__)

# Error messages
_ERR_NOT_INITIALIZED = "Engine not initialized. Call initialize() first."


class CharmPayEngine:
    """Wires config, HTTP clients and the wallet into a ready orchestrator.

    Usage::

        engine = CharmPayEngine(config, address="tb1p...")
        await engine.initialize()
        try:
            result = await engine.flow.create_subscription(500_000)
        finally:
            await engine.close()
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        address: str,
        wallet: Wallet | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Application configuration.
            address: Wallet address that signs and pays proof fees.
            wallet: Signer to use; a :class:`WalletRpcClient` built from
                ``config.wallet`` when omitted.
        """
        self._config = config
        self._address = address
        self._wallet = wallet
        self._owns_wallet = wallet is None
        self._initialized = False

        self._index: MempoolClient | None = None
        self._prover: ProverClient | None = None
        self._registry: ConflictRegistry | None = None
        self._flow: FlowOrchestrator | None = None
        self.explorer = Explorer(config.explorer)

    async def initialize(self) -> None:
        """Load the contract binary and connect every client.

        Raises:
            RuntimeError: If already initialized.
            ValidationError: The contract binary or verification key is
                missing.
        """
        if self._initialized:
            msg = "Engine already initialized"
            raise RuntimeError(msg)

        contract = self._config.contract
        binaries = binaries_map(contract.app_vk, load_binary(contract.binary_path))

        self._index = MempoolClient(self._config.index)
        await self._index.connect()
        self._prover = ProverClient(self._config.prover, index=self._index)
        await self._prover.connect()

        if self._wallet is None:
            rpc = WalletRpcClient(self._config.wallet)
            await rpc.connect()
            self._wallet = rpc

        self._registry = ConflictRegistry(self._config.funding.registry_path or None)
        self._flow = FlowOrchestrator(
            app_vk=contract.app_vk,
            binaries=binaries,
            prover=self._prover,
            allocator=FundingAllocator(self._index, self._registry, self._config.funding),
            signer=SigningAdapter(self._wallet, self._index, signer_address=self._address),
            broadcaster=Broadcaster(self._index, self._config.broadcast),
        )
        self._initialized = True
        logger.info(
            "Engine ready on %s (index %s, prover %s)",
            self._config.network,
            self._config.index.url,
            self._config.prover.url,
        )

    async def close(self) -> None:
        """Close every client. Can be called multiple times."""
        if self._prover is not None:
            await self._prover.close()
            self._prover = None
        if self._index is not None:
            await self._index.close()
            self._index = None
        if self._owns_wallet and isinstance(self._wallet, WalletRpcClient):
            await self._wallet.close()
            self._wallet = None
        self._flow = None
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def flow(self) -> FlowOrchestrator:
        if self._flow is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._flow

    @property
    def registry(self) -> ConflictRegistry:
        if self._registry is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._registry
