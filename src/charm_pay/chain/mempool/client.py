"""mempool.space REST client — UTXOs, raw transactions, broadcast.

Async HTTP client for the public Esplora-style API served by mempool.space
(and compatible indexers):
- GET  /address/<addr>/utxo
- GET  /tx/<txid>/hex
- POST /tx  (raw hex body, txid returned as plain text)

The base URL selects the network, e.g. ``https://mempool.space/testnet4/api``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from charm_pay.errors.flow_errors import MissingPreviousOutput, TransportError, ValidationError
from charm_pay.funding.models import FundingResource
from charm_pay.utils.encoding import is_hex

if TYPE_CHECKING:
    from charm_pay.config.settings import IndexConfig

logger = logging.getLogger(__name__)


class MempoolClient:
    """Async HTTP client for the UTXO / transaction index.

    Usage::

        index = MempoolClient(config.index)
        await index.connect()
        try:
            utxos = await index.get_utxos("tb1q...")
            raw = await index.get_raw_tx(utxos[0].txid)
        finally:
            await index.close()
    """

    def __init__(self, config: IndexConfig) -> None:
        """Initialize the index client.

        Args:
            config: Index configuration (base url, timeout).
        """
        self._config = config
        self._client: httpx.AsyncClient | None = None

    async def connect(self) -> None:
        """Create the underlying HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=self._config.url.rstrip("/"),
            timeout=self._config.timeout,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def is_connected(self) -> bool:
        """Check if the HTTP client is active."""
        return self._client is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_utxos(self, address: str) -> list[FundingResource]:
        """Get spendable outputs for an address.

        Args:
            address: Bitcoin address string.

        Returns:
            List of FundingResource, in index order.

        Raises:
            TransportError: On network failure, a non-2xx response, or a body
                that is not a JSON list.
        """
        client = self._ensure_connected()
        path = f"/address/{address}/utxo"
        try:
            resp = await client.get(path)
        except httpx.HTTPError as exc:
            raise TransportError(f"UTXO query failed: {exc}", step="query-utxos", url=path) from exc
        if resp.status_code != 200:
            msg = f"UTXO query failed ({resp.status_code}): {resp.text[:200]}"
            raise TransportError(msg, step="query-utxos", url=path)

        try:
            items: list[dict[str, Any]] = resp.json()
        except ValueError as exc:
            msg = f"UTXO query returned a non-JSON body: {resp.text[:200]}"
            raise TransportError(msg, step="query-utxos", url=path) from exc
        if not isinstance(items, list):
            msg = f"UTXO query returned {type(items).__name__}, expected a list"
            raise TransportError(msg, step="query-utxos", url=path)
        return [FundingResource.from_dict(item) for item in items]

    async def get_raw_tx(self, txid: str) -> str:
        """Get raw transaction hex by txid.

        An HTML error page or any other non-hex body counts as not found.

        Args:
            txid: Transaction hash (hex).

        Returns:
            Raw transaction hex string.

        Raises:
            MissingPreviousOutput: If the index does not know the transaction.
            TransportError: On network failure.
        """
        client = self._ensure_connected()
        path = f"/tx/{txid}/hex"
        try:
            resp = await client.get(path)
        except httpx.HTTPError as exc:
            raise TransportError(
                f"Transaction fetch failed: {exc}", step="fetch-tx", url=path
            ) from exc

        text = resp.text.strip()
        if resp.status_code != 200 or not is_hex(text):
            logger.debug("Index returned no usable hex for %s (status %d)", txid, resp.status_code)
            raise MissingPreviousOutput(txid)
        return text

    async def broadcast(self, raw_tx_hex: str) -> str:
        """Broadcast a signed transaction.

        Args:
            raw_tx_hex: Signed transaction in hex format.

        Returns:
            The txid reported by the relay.

        Raises:
            ValidationError: If the relay rejects the transaction.
            TransportError: On network failure, a server error, or a 200
                response whose body is not a txid.
        """
        client = self._ensure_connected()
        try:
            resp = await client.post(
                "/tx",
                content=raw_tx_hex,
                headers={"Content-Type": "text/plain"},
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"Broadcast failed: {exc}", step="broadcast", url="/tx") from exc

        text = resp.text.strip()
        if resp.status_code >= 500:
            raise TransportError(
                f"Broadcast failed ({resp.status_code}): {text[:200]}", step="broadcast", url="/tx"
            )
        if resp.status_code != 200:
            raise ValidationError(
                f"Transaction rejected by the network: {text[:200]}",
                step="broadcast",
                detail=text,
            )
        txid = text.strip('"')
        if len(txid) != 64 or not is_hex(txid):
            raise TransportError(
                f"Relay accepted the broadcast but returned no txid: {text[:200]}",
                step="broadcast",
                url="/tx",
            )
        return txid

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _ensure_connected(self) -> httpx.AsyncClient:
        if self._client is None:
            msg = "MempoolClient is not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._client
