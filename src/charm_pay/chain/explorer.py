"""Block explorer links (mempool.space layout)."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from charm_pay.config.settings import ExplorerConfig


class Explorer:
    """Builds explorer URLs for transactions, addresses and blocks."""

    def __init__(self, config: ExplorerConfig) -> None:
        self._base = config.url.rstrip("/")

    def tx_url(self, txid: str) -> str:
        return f"{self._base}/tx/{txid}"

    def address_url(self, address: str) -> str:
        return f"{self._base}/address/{address}"

    def block_url(self, block_hash: str) -> str:
        return f"{self._base}/block/{block_hash}"

    def output_url(self, utxo_id: str) -> str:
        """Link to the transaction of a ``txid:vout`` id, anchored at the output."""
        txid, _, vout = utxo_id.partition(":")
        url = self.tx_url(txid)
        return f"{url}#vout={vout}" if vout else url
