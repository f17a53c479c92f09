"""
Command line entry point.

    fassets-bridge run                  serve until interrupted
    fassets-bridge demo --amount 100    simulated bridge, end to end
    fassets-bridge status <bridge-id>   record and transition history
    fassets-bridge reconcile            one expiry sweep + recovery pass

Configuration comes from the environment (see BridgeSettings.from_env).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import replace

from fassets_bridge.canonical_json import sha256_hex
from fassets_bridge.config import BridgeSettings, SettlementMode
from fassets_bridge.errors import RecordNotFoundError
from fassets_bridge.runtime import BridgeRuntime, configure_logging

logger = logging.getLogger(__name__)


async def _run(settings: BridgeSettings) -> None:
    runtime = BridgeRuntime(settings)
    await runtime.start()
    try:
        await asyncio.Event().wait()
    finally:
        await runtime.stop()


async def _demo(settings: BridgeSettings, amount: str, wallet: str, vault: str) -> int:
    settings = replace(settings, settlement_mode=SettlementMode.SIMULATED, db_path=":memory:")
    runtime = BridgeRuntime(settings)
    await runtime.start(reconcile=False)
    try:
        instruction = await runtime.open_bridge(wallet, vault, amount)
        print(json.dumps(instruction.to_dict(), indent=2))

        tx_hash = sha256_hex(f"demo-payment:{instruction.bridge_id}").upper()
        runtime.on_ledger_payment(
            tx_hash,
            "rDemoUser",
            instruction.destination,
            instruction.amount_raw,
            instruction.memo,
        )
        await runtime.drain()

        record = runtime.store.get_bridge(instruction.bridge_id)
        print(json.dumps(record.to_row(), indent=2))
        return 0 if record.status == "vault_minted" else 1
    finally:
        await runtime.stop()


def _status(settings: BridgeSettings, bridge_id: str) -> int:
    runtime = BridgeRuntime(settings)
    try:
        record = runtime.store.get_bridge(bridge_id)
        history = runtime.store.history(bridge_id)
    except RecordNotFoundError as exc:
        logger.error(str(exc))
        return 1
    finally:
        runtime.store.close()
    print(json.dumps(record.to_row(), indent=2))
    print(json.dumps(history, indent=2))
    return 0


async def _reconcile(settings: BridgeSettings) -> int:
    runtime = BridgeRuntime(settings)
    try:
        sweep = await runtime.reconciliation.sweep_expired()
        recovery = await runtime.reconciliation.recover_all()
    finally:
        await runtime.stop()
    print(
        json.dumps(
            {
                "cancelled": sweep.cancelled,
                "recovered": [
                    {"id": o.record_id, "action": str(o.action), "status": str(o.status)}
                    for o in recovery.outcomes
                ],
                "failures": recovery.failures,
                "exhausted": recovery.exhausted,
            },
            indent=2,
        )
    )
    return 1 if recovery.failures else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="fassets-bridge", description="XRP to FXRP bridge engine")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("run", help="Serve until interrupted")

    demo = commands.add_parser("demo", help="Run one simulated bridge end to end")
    demo.add_argument("--amount", default="100", help="XRP to bridge")
    demo.add_argument("--wallet", default="0x000000000000000000000000000000000000dEaD")
    demo.add_argument("--vault", default="shxrp")

    status = commands.add_parser("status", help="Show a bridge record")
    status.add_argument("bridge_id")

    commands.add_parser("reconcile", help="Run one sweep and recovery pass")

    args = parser.parse_args(argv)
    configure_logging(args.log_level.upper())
    settings = BridgeSettings.from_env()

    if args.command == "run":
        try:
            asyncio.run(_run(settings))
        except KeyboardInterrupt:
            logger.info("Interrupted")
        return 0
    if args.command == "demo":
        return asyncio.run(_demo(settings, args.amount, args.wallet, args.vault))
    if args.command == "status":
        return _status(settings, args.bridge_id)
    return asyncio.run(_reconcile(settings))


if __name__ == "__main__":
    raise SystemExit(main())
