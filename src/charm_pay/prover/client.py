"""Prover HTTP client — submit a spell, receive the commit/spell pair.

Provides an async HTTP client for the Charms proving service:
- POST <prover url> — spell + binaries + previous transactions + funding
  UTXO, answered with two unsigned transactions.

Error classification:
- 409, or a 4xx naming the funding UTXO as duplicate/used/spent → ConflictError
- other 4xx → ValidationError
- 5xx and transport failures → TransportError
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any, NoReturn

import httpx

from charm_pay.errors.flow_errors import (
    ConflictError,
    MissingPreviousOutput,
    TransportError,
    ValidationError,
)
from charm_pay.prover.models import ProveRequest, UnsignedTransactionPair, normalize_prover_response

if TYPE_CHECKING:
    from charm_pay.chain.mempool.client import MempoolClient
    from charm_pay.config.settings import ProverConfig
    from charm_pay.funding.models import FundingResource
    from charm_pay.spells.models import Spell

logger = logging.getLogger(__name__)

_CONFLICT_PATTERN = re.compile(
    r"(duplicate|already\s+(used|spent|committed|in use)|conflict|double[\s-]?spend)",
    re.IGNORECASE,
)
_FUNDING_PATTERN = re.compile(r"(funding|utxo)", re.IGNORECASE)


class ProverClient:
    """Async HTTP client for the proving service.

    Usage::

        prover = ProverClient(config.prover, index=index)
        await prover.connect()
        try:
            pair = await prover.submit(spell, binaries, funding, change_address)
        finally:
            await prover.close()
    """

    def __init__(self, config: ProverConfig, *, index: MempoolClient | None = None) -> None:
        """Initialize the prover client.

        Args:
            config: Prover configuration (url, fee rate, chain, timeout).
            index: Used to fetch previous transactions missing from the
                caller's lookup table.
        """
        self._config = config
        self._index = index
        self._client: httpx.AsyncClient | None = None

    async def connect(self) -> None:
        """Create the underlying HTTP client."""
        self._client = httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
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

    async def submit(
        self,
        spell: Spell,
        binaries: dict[str, str],
        funding: FundingResource,
        change_address: str,
        *,
        previous_transactions: dict[str, str] | None = None,
    ) -> UnsignedTransactionPair:
        """Request a proof for *spell*, paid for by *funding*.

        Args:
            spell: The transition descriptor.
            binaries: App verification key → base64 contract binary.
            funding: Funding UTXO for this attempt.
            change_address: Address receiving funding change.
            previous_transactions: txid → raw hex lookup table. Missing
                entries are fetched from the index and added to it.

        Returns:
            The normalized commit/spell pair.

        Raises:
            ConflictError: The funding UTXO is already committed elsewhere.
            ValidationError: The prover rejected the spell or answered in an
                unrecognised shape.
            TransportError: Network failure or prover-side error.
            MissingPreviousOutput: A required previous transaction could not
                be found.
        """
        client = self._ensure_connected()
        lookup = previous_transactions if previous_transactions is not None else {}
        prev_txs = await self._collect_previous_transactions(spell, funding, lookup)

        request = ProveRequest(
            spell=spell,
            binaries=binaries,
            funding=funding,
            change_address=change_address,
            fee_rate=self._config.fee_rate,
            chain=self._config.chain,
            prev_txs=prev_txs,
        )
        logger.debug(
            "Prover request: funding=%s ins=%d outs=%d prev_txs=%d",
            funding.utxo_id,
            len(spell.ins),
            len(spell.outs),
            len(prev_txs),
        )

        try:
            response = await client.post(self._config.url, json=request.to_dict())
        except httpx.HTTPError as exc:
            raise TransportError(
                f"Cannot reach the prover at {self._config.url}: {exc}",
                step="prove",
                url=self._config.url,
            ) from exc

        if response.status_code == 200:
            try:
                data = response.json()
            except ValueError as exc:
                raise ValidationError(
                    "Prover returned a non-JSON body", step="prove", detail=response.text[:200]
                ) from exc
            pair = normalize_prover_response(data)
            logger.info("Proof received for funding %s", funding.utxo_id)
            return pair

        self._raise_for_status(response, funding)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _collect_previous_transactions(
        self, spell: Spell, funding: FundingResource, lookup: dict[str, str]
    ) -> list[str]:
        """Raw hex for every spell input's and the funding UTXO's creating tx."""
        if funding.raw_tx and funding.txid not in lookup:
            lookup[funding.txid] = funding.raw_tx

        txids = list(spell.input_txids)
        if funding.txid not in txids:
            txids.append(funding.txid)

        prev_txs: list[str] = []
        for txid in txids:
            if txid not in lookup:
                if self._index is None:
                    raise MissingPreviousOutput(txid)
                lookup[txid] = await self._index.get_raw_tx(txid)
            prev_txs.append(lookup[txid])
        return prev_txs

    def _ensure_connected(self) -> httpx.AsyncClient:
        """Return the HTTP client, raising if not connected."""
        if self._client is None:
            msg = "Prover client not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._client

    def _raise_for_status(self, response: httpx.Response, funding: FundingResource) -> NoReturn:
        """Raise the classified error for a non-200 prover response."""
        status = response.status_code
        detail = _error_detail(response)

        if status >= 500:
            raise TransportError(
                f"Prover error ({status}): {detail}", step="prove", url=self._config.url
            )
        if status == 409 or (_CONFLICT_PATTERN.search(detail) and _FUNDING_PATTERN.search(detail)):
            logger.warning("Prover rejected funding %s as conflicting: %s", funding.utxo_id, detail)
            raise ConflictError(
                f"Funding UTXO {funding.utxo_id} is already committed: {detail}",
                utxo_id=funding.utxo_id,
            )
        raise ValidationError(
            f"Prover rejected the spell ({status}): {detail}", step="prove", detail=detail
        )


def _error_detail(response: httpx.Response) -> str:
    """Best-effort error message from a JSON or plain-text body."""
    try:
        body: Any = response.json()
    except ValueError:
        return response.text.strip() or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body.get("detail") or body)
    return str(body)
