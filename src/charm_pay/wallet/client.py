"""Wallet signing RPC client.

Talks JSON-RPC 2.0 to a sats-connect compatible wallet bridge:
- ``signPsbt`` with ``{psbt, signInputs, broadcast}`` → ``{psbt, txid?}``

A user rejection (RPC error ``-32000``) or revoked access (``-32002``)
becomes :class:`SigningRejected`; any other RPC error is a
:class:`ValidationError`.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from charm_pay.errors.flow_errors import SigningRejected, TransportError, ValidationError

if TYPE_CHECKING:
    from charm_pay.config.settings import WalletConfig

logger = logging.getLogger(__name__)

# sats-connect RpcErrorCode values
RPC_USER_REJECTION = -32000
RPC_ACCESS_DENIED = -32002


@dataclass(frozen=True)
class SignedPsbt:
    """Wallet response to a signing request.

    Attributes:
        psbt: Base64 PSBT carrying the wallet's signatures.
        txid: Set when the wallet also broadcast the transaction.
    """

    psbt: str
    txid: str | None = None


class Wallet(Protocol):
    """Anything that can sign a PSBT on the user's behalf."""

    async def sign_psbt(
        self,
        psbt: str,
        sign_inputs: dict[str, list[int]],
        *,
        broadcast: bool = False,
    ) -> SignedPsbt: ...


class WalletRpcClient:
    """JSON-RPC client for a wallet bridge.

    Usage::

        wallet = WalletRpcClient(config.wallet)
        await wallet.connect()
        try:
            signed = await wallet.sign_psbt(psbt_b64, {address: [0, 1]})
        finally:
            await wallet.close()
    """

    def __init__(self, config: WalletConfig) -> None:
        self._config = config
        self._client: httpx.AsyncClient | None = None
        self._ids = itertools.count(1)

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

    async def sign_psbt(
        self,
        psbt: str,
        sign_inputs: dict[str, list[int]],
        *,
        broadcast: bool = False,
    ) -> SignedPsbt:
        """Ask the wallet to sign the listed inputs of *psbt*.

        Args:
            psbt: Base64 PSBT.
            sign_inputs: Address → input indexes the wallet should sign.
            broadcast: Let the wallet broadcast after signing.

        Raises:
            SigningRejected: The user declined.
            ValidationError: Any other wallet-side error.
            TransportError: The wallet bridge is unreachable.
        """
        result = await self._call(
            "signPsbt",
            {"psbt": psbt, "signInputs": sign_inputs, "broadcast": broadcast},
        )
        signed = result.get("psbt") if isinstance(result, dict) else None
        if not isinstance(signed, str) or not signed:
            msg = "Wallet returned no signed PSBT"
            raise ValidationError(msg, step="sign", detail=str(result)[:200])
        return SignedPsbt(psbt=signed, txid=result.get("txid"))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _call(self, method: str, params: dict[str, Any]) -> Any:
        client = self._ensure_connected()
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await client.post(self._config.url, json=payload)
        except httpx.HTTPError as exc:
            raise TransportError(
                f"Wallet unreachable: {exc}", step="sign", url=self._config.url
            ) from exc

        try:
            body = resp.json()
        except ValueError as exc:
            raise TransportError(
                f"Wallet returned a non-JSON body ({resp.status_code})",
                step="sign",
                url=self._config.url,
            ) from exc
        if not isinstance(body, dict):
            msg = f"Wallet returned {type(body).__name__}, expected a JSON-RPC object"
            raise ValidationError(msg, step="sign", detail=str(body)[:200])

        error = body.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            if code in (RPC_USER_REJECTION, RPC_ACCESS_DENIED):
                logger.info("User rejected wallet request %s", method)
                raise SigningRejected(f"Wallet request was rejected: {message}")
            raise ValidationError(f"Wallet error ({code}): {message}", step="sign", detail=message)
        if resp.status_code != 200:
            raise TransportError(
                f"Wallet RPC failed ({resp.status_code})", step="sign", url=self._config.url
            )
        return body.get("result")

    def _ensure_connected(self) -> httpx.AsyncClient:
        if self._client is None:
            msg = "WalletRpcClient is not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._client
