"""Conflict registry — funding UTXOs already offered to the prover.

The prover locks a funding UTXO once it has seen it and never tells the
client when the lock is released. The registry remembers every UTXO id this
client has submitted so it is not offered again. Ids claimed by an operation
that has not finished yet are held in flight; :meth:`ConflictRegistry.clear`
never drops those, only :meth:`ConflictRegistry.release` does.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from charm_pay.funding.models import FundingResource

logger = logging.getLogger(__name__)


class ConflictRegistry:
    """Set of used funding UTXO ids, optionally persisted to a JSON file.

    ``claim_first`` is a check-then-mark under one lock, so two concurrent
    flows never claim the same id. A claimed id stays in flight until the
    claiming operation calls :meth:`release`.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        """Initialize the registry.

        Args:
            path: JSON file to load from and write through to. ``None`` or
                empty keeps the registry in memory only.
        """
        self._path = Path(path) if path else None
        self._lock = asyncio.Lock()
        self._used: set[str] = self._load()
        self._in_flight: set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def claim_first(self, candidates: Iterable[FundingResource]) -> FundingResource | None:
        """Atomically pick the first unused candidate and mark it used.

        The claimed id is also held in flight until :meth:`release`.

        Returns:
            The claimed resource, or None if every candidate is already used.
        """
        async with self._lock:
            for resource in candidates:
                if resource.utxo_id not in self._used:
                    self._used.add(resource.utxo_id)
                    self._in_flight.add(resource.utxo_id)
                    self._save()
                    return resource
            return None

    async def release(self, *utxo_ids: str) -> None:
        """End the in-flight hold on *utxo_ids*. They stay marked used."""
        async with self._lock:
            self._in_flight.difference_update(utxo_ids)

    async def mark_used(self, utxo_id: str) -> None:
        """Record *utxo_id* as used."""
        async with self._lock:
            if utxo_id not in self._used:
                self._used.add(utxo_id)
                self._save()

    async def is_used(self, utxo_id: str) -> bool:
        async with self._lock:
            return utxo_id in self._used

    async def clear(self) -> None:
        """Forget every used id that no running operation holds."""
        async with self._lock:
            logger.info(
                "Clearing conflict registry (%d entries, %d in flight kept)",
                len(self._used),
                len(self._in_flight),
            )
            self._used = set(self._in_flight)
            self._save()

    async def used_ids(self) -> list[str]:
        """Snapshot of the used ids, sorted."""
        async with self._lock:
            return sorted(self._used)

    async def in_flight_ids(self) -> list[str]:
        """Snapshot of the ids held by running operations, sorted."""
        async with self._lock:
            return sorted(self._in_flight)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> set[str]:
        if self._path is None or not self._path.exists():
            return set()
        data = json.loads(self._path.read_text(encoding="utf-8") or "[]")
        if not isinstance(data, list):
            msg = f"Conflict registry file {self._path} must contain a JSON list"
            raise ValueError(msg)
        return {str(item) for item in data}

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(sorted(self._used)), encoding="utf-8")
