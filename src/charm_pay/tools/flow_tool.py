#!/usr/bin/env python3
"""Charm Pay Tool — inspect funding and run subscription transitions.

A standalone CLI for operators. Settings come from ``CHARMPAY_*``
environment variables or the YAML file named by ``CHARMPAY_CONFIG_PATH``:

    # List candidate funding UTXOs for an address
    python -m charm_pay.tools.flow_tool utxos <address>

    # Fetch a previous transaction as the prover would see it
    python -m charm_pay.tools.flow_tool prev-tx <txid>

    # Show or clear the conflict registry
    python -m charm_pay.tools.flow_tool registry [show|clear]

    # App identity a funding UTXO would produce
    python -m charm_pay.tools.flow_tool app-id <txid:vout>

    # Run transitions through the configured wallet bridge; the
    # subscription state is read from / written to <state.json>
    python -m charm_pay.tools.flow_tool create <address> <total_sats> <state.json>
    python -m charm_pay.tools.flow_tool pay <state.json> <amount_sats> <recipient>
    python -m charm_pay.tools.flow_tool cancel <state.json>

    # Finish a transition whose commit was broadcast but whose spell was
    # not; reads <state.json>.pending written by the failed run
    python -m charm_pay.tools.flow_tool resume <state.json>
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from charm_pay.config.settings import AppConfig
from charm_pay.errors.charm_errors import CharmPayError
from charm_pay.errors.flow_errors import PartialBroadcast

if TYPE_CHECKING:
    from charm_pay.flow.engine import CharmPayEngine
    from charm_pay.flow.models import FlowResult


def _cmd_utxos(config: AppConfig, address: str) -> None:
    """List spendable outputs and mark the ones already in the registry."""
    from charm_pay.chain.mempool.client import MempoolClient
    from charm_pay.funding.registry import ConflictRegistry

    async def _run() -> None:
        registry = ConflictRegistry(config.funding.registry_path or None)
        index = MempoolClient(config.index)
        await index.connect()
        try:
            utxos = await index.get_utxos(address)
            if not utxos:
                print(f"No UTXOs found for {address}")
                return
            print(f"UTXOs for {address}:")
            print("-" * 96)
            total = 0
            for u in utxos:
                used = "used" if await registry.is_used(u.utxo_id) else ""
                print(f"  {u.utxo_id}  {u.value:>12,} sats  {used}")
                total += u.value
            print("-" * 96)
            print(f"  Total: {total:>12,} sats  ({total / 1e8:.8f} BTC)  [{len(utxos)} UTXOs]")
        finally:
            await index.close()

    asyncio.run(_run())


def _cmd_prev_tx(config: AppConfig, txid: str) -> None:
    """Print the raw hex of a transaction and a short decode."""
    from charm_pay.bitcoin.transaction import Transaction
    from charm_pay.chain.mempool.client import MempoolClient

    async def _run() -> None:
        index = MempoolClient(config.index)
        await index.connect()
        try:
            raw = await index.get_raw_tx(txid)
        finally:
            await index.close()
        tx = Transaction.from_hex(raw)
        print(f"txid:     {tx.txid()}")
        print(f"size:     {tx.size} bytes  (segwit: {tx.has_witness})")
        print(f"inputs:   {len(tx.inputs)}")
        for inp in tx.inputs:
            print(f"  {inp.outpoint}")
        print(f"outputs:  {len(tx.outputs)}")
        for i, out in enumerate(tx.outputs):
            print(f"  [{i}] {out.value:>12,} sats  {out.script_pubkey.hex()}")
        print()
        print(raw)

    asyncio.run(_run())


def _cmd_registry(config: AppConfig, action: str) -> None:
    """Show or clear the persisted conflict registry."""
    from charm_pay.funding.registry import ConflictRegistry

    if not config.funding.registry_path:
        print("No registry_path configured; the registry only lives in memory.")
        sys.exit(1)

    async def _run() -> None:
        registry = ConflictRegistry(config.funding.registry_path)
        if action == "clear":
            await registry.clear()
            print(f"Cleared {config.funding.registry_path}")
            return
        ids = await registry.used_ids()
        print(f"{len(ids)} used funding UTXOs:")
        for utxo_id in ids:
            print(f"  {utxo_id}")

    asyncio.run(_run())


def _cmd_app_id(utxo_id: str) -> None:
    from charm_pay.funding.models import parse_utxo_id
    from charm_pay.spells.builder import derive_app_id

    parse_utxo_id(utxo_id)
    print(derive_app_id(utxo_id))


def _pending_path(state_path: Path) -> Path:
    return state_path.with_name(f"{state_path.name}.pending")


def _write_pending(state_path: Path, partial: PartialBroadcast) -> Path:
    """Save an interrupted transition next to its state file."""
    pending = _pending_path(state_path)
    data = {
        "commit_txid": partial.commit_txid,
        "spell_tx": partial.spell_tx,
        "reason": partial.reason,
        "result": partial.result.to_dict() if partial.result is not None else None,
    }
    pending.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return pending


def _read_pending(state_path: Path) -> PartialBroadcast:
    from charm_pay.flow.models import result_from_dict

    pending = _pending_path(state_path)
    if not pending.exists():
        msg = f"No interrupted transition recorded at {pending}"
        raise ValueError(msg)
    data = json.loads(pending.read_text(encoding="utf-8"))
    result = result_from_dict(data["result"]) if data.get("result") else None
    return PartialBroadcast(
        data["commit_txid"], data["spell_tx"], reason=data.get("reason", ""), result=result
    )


def _report(engine: CharmPayEngine, result: FlowResult, state_path: Path) -> None:
    state_path.write_text(json.dumps(result.state.to_dict(), indent=2), encoding="utf-8")
    print(f"Commit: {engine.explorer.tx_url(result.commit_txid)}")
    print(f"Spell:  {engine.explorer.tx_url(result.spell_txid)}")
    print(f"Funding UTXO: {result.funding_utxo}  (tried {len(result.tried)})")
    print(f"Remaining: {result.state.remaining_balance:,} sats")
    print(f"State written to {state_path}")


def _cmd_transition(config: AppConfig, cmd: str, args: list[str]) -> None:
    """Run create / pay / cancel through :class:`CharmPayEngine`."""
    from charm_pay.flow.engine import CharmPayEngine
    from charm_pay.flow.models import SubscriptionState

    if cmd == "create":
        address, total, state_path = args[0], int(args[1]), Path(args[2])
        state = None
    else:
        state_path = Path(args[0])
        state = SubscriptionState.from_dict(json.loads(state_path.read_text(encoding="utf-8")))
        address = state.subscriber_address

    async def _run() -> None:
        engine = CharmPayEngine(config, address=address)
        await engine.initialize()
        try:
            if cmd == "create":
                result = await engine.flow.create_subscription(total)
            elif cmd == "pay":
                result = await engine.flow.execute_payment(state, int(args[1]), args[2])
            else:
                result = await engine.flow.cancel_subscription(state)
        except PartialBroadcast as exc:
            pending = _write_pending(state_path, exc)
            print(f"Commit {exc.commit_txid} is on chain; run `resume {state_path}` to finish")
            print(f"Pending transition written to {pending}")
            raise
        finally:
            await engine.close()
        _report(engine, result, state_path)

    asyncio.run(_run())


def _cmd_resume(config: AppConfig, state_path: Path) -> None:
    """Re-broadcast the spell of an interrupted transition and write its state."""
    from charm_pay.flow.engine import CharmPayEngine

    partial = _read_pending(state_path)
    if partial.result is None:
        msg = f"Interrupted transition at {_pending_path(state_path)} has no recorded result"
        raise ValueError(msg)

    async def _run() -> None:
        engine = CharmPayEngine(config, address=partial.result.state.subscriber_address)
        await engine.initialize()
        try:
            result = await engine.flow.resume_spell_broadcast(partial)
        finally:
            await engine.close()
        _pending_path(state_path).unlink()
        _report(engine, result, state_path)

    asyncio.run(_run())


_USAGE = {
    "utxos": ("utxos <address>", 1),
    "prev-tx": ("prev-tx <txid>", 1),
    "app-id": ("app-id <txid:vout>", 1),
    "create": ("create <address> <total_sats> <state.json>", 3),
    "pay": ("pay <state.json> <amount_sats> <recipient>", 3),
    "cancel": ("cancel <state.json>", 1),
    "resume": ("resume <state.json>", 1),
}


def main() -> None:
    """CLI entry point."""
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    cmd = sys.argv[1].lower()
    args = sys.argv[2:]
    config = AppConfig()
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if cmd in _USAGE and len(args) < _USAGE[cmd][1]:
        print(f"Usage: flow_tool {_USAGE[cmd][0]}")
        sys.exit(1)

    try:
        if cmd == "utxos":
            _cmd_utxos(config, args[0])
        elif cmd == "prev-tx":
            _cmd_prev_tx(config, args[0])
        elif cmd == "registry":
            _cmd_registry(config, args[0] if args else "show")
        elif cmd == "app-id":
            _cmd_app_id(args[0])
        elif cmd in ("create", "pay", "cancel"):
            _cmd_transition(config, cmd, args)
        elif cmd == "resume":
            _cmd_resume(config, Path(args[0]))
        else:
            print(f"Unknown command: {cmd}")
            print(__doc__)
            sys.exit(1)
    except CharmPayError as exc:
        print(f"Error: {exc.describe()}")
        sys.exit(1)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
