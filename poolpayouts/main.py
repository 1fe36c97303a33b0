"""CLI entrypoint for the pool payout engine."""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Optional

from .config import ConfigError, PayoutSettings, load_settings
from .ledger_client import LedgerConnectionError, Web3LedgerClient
from .orchestrator import PayoutOrchestrator
from .scheduler import PayoutScheduler
from .signer import LocalSigner, SignerError
from .store import BalanceStore

logger = logging.getLogger(__name__)


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
        force=True,
    )


def build_ledger_client(settings: PayoutSettings) -> Web3LedgerClient:
    signer = LocalSigner.from_key(settings.treasury_private_key.get_secret_value())
    logger.debug("Derived pool address %s", signer.address)
    return Web3LedgerClient(
        settings.node_urls,
        settings.network,
        signer,
        settling_delay_seconds=settings.settling_delay_seconds,
        connect_timeout_seconds=settings.connect_timeout_seconds,
        dry_run=settings.dry_run,
    )


def build_store(settings: PayoutSettings, pool_address: str) -> BalanceStore:
    return BalanceStore.from_url(
        settings.async_database_url,
        excluded_addresses=[*settings.pool_addresses, pool_address],
    )


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - non-unix loops
            logger.debug("Signal handler for %s not supported on this platform", signum)


async def run(
    settings: PayoutSettings,
    ledger_client: Optional[Web3LedgerClient] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Connect, schedule payouts and block until ``stop_event`` is set (SIGINT/SIGTERM by default)."""
    if ledger_client is None:
        ledger_client = build_ledger_client(settings)
    store = build_store(settings, ledger_client.address)
    try:
        logger.debug("Connecting to ledger nodes %s", ", ".join(settings.node_urls))
        await ledger_client.connect()

        orchestrator = PayoutOrchestrator(store, ledger_client, minimum_payout=settings.minimum_payout)
        scheduler = PayoutScheduler(
            orchestrator,
            settings.payout_interval_minutes,
            settings.progress_interval_minutes,
        )
        if stop_event is None:
            stop_event = asyncio.Event()
            _install_signal_handlers(stop_event)

        scheduler.start()
        logger.debug("Payout engine fully initialized and running")
        await stop_event.wait()
        logger.info("Shutdown requested")
        await scheduler.stop()
    finally:
        await ledger_client.close()
        await store.close()


def main() -> int:
    configure_logging()
    logger.info("Starting pool payout engine")

    try:
        settings = load_settings()
    except ConfigError as exc:
        logger.error("%s", exc)
        return 1
    if settings.debug:
        configure_logging(debug=True)
        logger.debug("DEBUG mode enabled")
    logger.info(
        "Network %s, %s node(s), payout every %s minutes%s",
        settings.network,
        len(settings.node_urls),
        settings.payout_interval_minutes,
        " (dry-run)" if settings.dry_run else "",
    )

    try:
        ledger_client = build_ledger_client(settings)
    except (SignerError, ValueError) as exc:
        logger.error("Invalid ledger configuration: %s", exc)
        return 1

    try:
        asyncio.run(run(settings, ledger_client))
    except LedgerConnectionError as exc:
        logger.error("Ledger connection error: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Payout engine stopped via keyboard interrupt")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
