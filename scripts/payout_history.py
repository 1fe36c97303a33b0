#!/usr/bin/env python3
"""Operator tool for payout history and one-off payout cycles.

``pending`` and ``mark-notified`` serve notification consumers that tell
miners about their payouts; ``run-once`` runs a payout cycle immediately
instead of waiting for the next scheduled slot.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

SCRIPT_ROOT = Path(__file__).resolve().parents[1]
if str(SCRIPT_ROOT) not in sys.path:
    sys.path.insert(0, str(SCRIPT_ROOT))

from poolpayouts.config import ConfigError, load_settings, to_async_database_url  # noqa: E402
from poolpayouts.ledger_client import LedgerConnectionError  # noqa: E402
from poolpayouts.main import build_ledger_client, build_store, configure_logging  # noqa: E402
from poolpayouts.orchestrator import CycleResult, PayoutOrchestrator  # noqa: E402
from poolpayouts.signer import SignerError  # noqa: E402
from poolpayouts.store import BalanceStore, StoreUnavailable  # noqa: E402

logger = logging.getLogger("payout_history")


async def list_pending(store: BalanceStore, address: str) -> List[Dict[str, Any]]:
    return [asdict(record) for record in await store.list_unnotified_payments(address)]


async def mark_notified(store: BalanceStore, payment_ids: List[int]) -> int:
    for payment_id in payment_ids:
        await store.mark_notified(payment_id)
    return len(payment_ids)


def summarize_cycle(result: CycleResult) -> Dict[str, Any]:
    return {
        "status": result.status,
        "final_state": result.final_state.value,
        "transaction_id": result.transaction_id,
        "transactions": list(result.broadcast),
        "outputs": [{"address": output.address, "amount": str(output.amount)} for output in result.outputs],
        "total": str(result.total),
        "failures": [str(failure) for failure in result.failures],
        "error": str(result.error) if result.error else None,
    }


async def run_once() -> Dict[str, Any]:
    settings = load_settings()
    ledger_client = build_ledger_client(settings)
    store = build_store(settings, ledger_client.address)
    try:
        await ledger_client.connect()
        orchestrator = PayoutOrchestrator(store, ledger_client, minimum_payout=settings.minimum_payout)
        return summarize_cycle(await orchestrator.run_cycle())
    finally:
        await ledger_client.close()
        await store.close()


def _store_from_args(args: argparse.Namespace) -> BalanceStore:
    url = args.database_url or os.environ.get("DATABASE_URL")
    if not url:
        raise ConfigError("DATABASE_URL is not set (pass --database-url)")
    return BalanceStore.from_url(to_async_database_url(url))


async def _run_store_command(args: argparse.Namespace) -> Any:
    store = _store_from_args(args)
    try:
        if args.command == "pending":
            return await list_pending(store, args.address)
        if args.command == "mark-notified":
            return {"marked": await mark_notified(store, args.payment_ids)}
        if args.command == "init-schema":
            await store.create_schema()
            return {"schema": "ok"}
        raise ValueError(f"unknown command {args.command}")
    finally:
        await store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--database-url", help="Overrides DATABASE_URL for store commands")
    sub = parser.add_subparsers(dest="command", required=True)

    pending = sub.add_parser("pending", help="List payments not yet notified for an address")
    pending.add_argument("address")

    mark = sub.add_parser("mark-notified", help="Mark payment ids as notified")
    mark.add_argument("payment_ids", nargs="+", type=int)

    sub.add_parser("init-schema", help="Create the balances and payments tables if missing")
    sub.add_parser("run-once", help="Run one payout cycle now")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(debug=os.environ.get("DEBUG") == "1")

    try:
        if args.command == "run-once":
            payload: Any = asyncio.run(run_once())
        else:
            payload = asyncio.run(_run_store_command(args))
    except (ConfigError, SignerError, LedgerConnectionError, StoreUnavailable) as exc:
        logger.error("%s", exc)
        return 1

    if isinstance(payload, list):
        for item in payload:
            print(json.dumps(item, sort_keys=True))
    else:
        print(json.dumps(payload, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
