"""Chain access — UTXO index, package broadcast, explorer links."""

from charm_pay.chain.broadcaster import Broadcaster
from charm_pay.chain.explorer import Explorer
from charm_pay.chain.mempool.client import MempoolClient

__all__ = ["Broadcaster", "Explorer", "MempoolClient"]
