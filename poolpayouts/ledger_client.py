"""Ledger client used to broadcast payout batches.

The payout core only depends on the :class:`LedgerClient` protocol. The
:class:`Web3LedgerClient` adapter talks to an EVM JSON-RPC node through
web3.py and signs with the treasury key.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Protocol, Sequence, Tuple

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.middleware.proof_of_authority import ExtraDataToPOAMiddleware

from .signer import Signer

logger = logging.getLogger(__name__)

WEI_PER_ETH = Decimal(10) ** 18
TRANSFER_GAS = 21_000


class LedgerConnectionError(ConnectionError):
    pass


class SubmissionFailed(RuntimeError):
    """A batch could not be fully broadcast.

    ``broadcast`` lists the transactions of the batch that were already sent
    before the failure; those are not rolled back and need manual
    reconciliation.
    """

    def __init__(self, message: str, *, broadcast: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.broadcast: Tuple[str, ...] = tuple(broadcast)


@dataclass(frozen=True)
class PaymentOutput:
    address: str
    amount: int


@dataclass(frozen=True)
class BatchReceipt:
    transaction_ids: Tuple[str, ...]

    @property
    def transaction_id(self) -> str:
        """Id of the final transaction, which represents the whole batch."""
        return self.transaction_ids[-1]


class LedgerClient(Protocol):
    @property
    def is_ready(self) -> bool: ...

    async def connect(self) -> None: ...

    async def submit_batch(self, outputs: Sequence[PaymentOutput]) -> Optional[BatchReceipt]: ...

    async def on_reconnect(self) -> None: ...

    async def close(self) -> None: ...


def format_amount(amount: int) -> str:
    return f"{amount} wei ({Decimal(amount) / WEI_PER_ETH:f} ETH)"


def _build_web3(url: str, timeout: float) -> AsyncWeb3:
    web3 = AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": timeout}))
    # Rollups and clique chains return oversized extraData
    web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return web3


class Web3LedgerClient:
    def __init__(
        self,
        node_urls: Sequence[str],
        network: str,
        signer: Signer,
        *,
        settling_delay_seconds: float = 5.0,
        connect_timeout_seconds: float = 10.0,
        dry_run: bool = False,
        web3_factory: Optional[Callable[[str], Any]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not node_urls:
            raise ValueError("at least one node url is required")
        try:
            self.chain_id = int(network)
        except ValueError as exc:
            raise ValueError(f"network must be a numeric chain id, got {network!r}") from exc
        self.node_urls = list(node_urls)
        self.signer = signer
        self.settling_delay_seconds = settling_delay_seconds
        self.connect_timeout_seconds = connect_timeout_seconds
        self.dry_run = dry_run
        self._web3_factory = web3_factory or (lambda url: _build_web3(url, connect_timeout_seconds))
        self._sleep = sleep

        self.web3: Optional[Any] = None
        self.endpoint: Optional[str] = None
        self._next_nonce: Optional[int] = None

    @property
    def address(self) -> str:
        return self.signer.address

    @property
    def is_ready(self) -> bool:
        return self.web3 is not None

    async def _check_node(self, web3: Any) -> None:
        if not await web3.is_connected():
            raise LedgerConnectionError("node did not answer")
        chain_id = int(await web3.eth.chain_id)
        if chain_id != self.chain_id:
            raise LedgerConnectionError(f"node is on chain {chain_id}, expected {self.chain_id}")
        if await web3.eth.syncing:
            raise LedgerConnectionError("node is not synchronized")

    async def connect(self) -> None:
        """Connect to the first configured node that is reachable and synced."""
        errors: List[str] = []
        for url in self.node_urls:
            logger.debug("Attempting ledger connection to %s", url)
            web3 = self._web3_factory(url)
            try:
                await asyncio.wait_for(self._check_node(web3), timeout=self.connect_timeout_seconds)
            except asyncio.TimeoutError:
                errors.append(f"{url}: timed out after {self.connect_timeout_seconds:g} seconds")
            except Exception as exc:
                errors.append(f"{url}: {exc}")
            else:
                self.web3 = web3
                self.endpoint = url
                logger.info("Connected to ledger node %s (chain %s)", url, self.chain_id)
                await self.on_reconnect()
                return
            await _disconnect(web3)

        raise LedgerConnectionError("No usable ledger node: " + "; ".join(errors))

    async def on_reconnect(self) -> None:
        """Drop local tracking state and start tracking the pool address again."""
        if self.web3 is None:
            raise LedgerConnectionError("Ledger client is not connected")
        self._next_nonce = None
        logger.debug("Cleared tracking state; tracking pool address %s", self.address)
        self._next_nonce = int(await self.web3.eth.get_transaction_count(self.address, "pending"))
        logger.debug("Pool address %s next nonce %s", self.address, self._next_nonce)

    async def _fee_fields(self) -> dict[str, int]:
        gas_price = int(await self.web3.eth.gas_price)
        try:
            priority_fee = int(await self.web3.eth.max_priority_fee)
        except Exception:  # pragma: no cover - legacy nodes without eth_maxPriorityFeePerGas
            return {"gasPrice": gas_price * 2}
        return {
            "maxPriorityFeePerGas": priority_fee,
            "maxFeePerGas": max(gas_price, priority_fee) * 2,
        }

    async def _build_transaction(self, output: PaymentOutput) -> dict[str, Any]:
        if output.amount <= 0:
            raise ValueError(f"refusing non-positive output for {output.address}")
        try:
            to_checksum = Web3.to_checksum_address(output.address)
        except ValueError as exc:
            raise ValueError(f"Invalid recipient address {output.address}") from exc

        if self._next_nonce is None:
            self._next_nonce = int(await self.web3.eth.get_transaction_count(self.address, "pending"))

        tx: dict[str, Any] = {
            "chainId": self.chain_id,
            "nonce": self._next_nonce,
            "to": to_checksum,
            "value": output.amount,
            "gas": TRANSFER_GAS,
        }
        tx.update(await self._fee_fields())
        return tx

    async def submit_batch(self, outputs: Sequence[PaymentOutput]) -> Optional[BatchReceipt]:
        """Broadcast one transfer per output, pausing after each broadcast.

        The pause keeps the next transaction from racing the previous one
        while it is still unconfirmed.
        """
        outputs = list(outputs)
        if not outputs:
            raise ValueError("submit_batch requires at least one output")

        if self.dry_run:
            logger.info(
                "Dry-run batch: would send %s outputs totalling %s from %s",
                len(outputs),
                format_amount(sum(output.amount for output in outputs)),
                self.address,
            )
            return None

        if self.web3 is None:
            raise SubmissionFailed("Ledger client is not connected")

        sent: List[str] = []
        total = len(outputs)
        for index, output in enumerate(outputs, start=1):
            try:
                tx = await self._build_transaction(output)
                logger.debug("Signing transaction %s/%s nonce=%s to %s", index, total, tx["nonce"], tx["to"])
                raw_tx = self.signer.sign_transaction(tx)
                tx_hash = Web3.to_hex(await self.web3.eth.send_raw_transaction(raw_tx))
            except Exception as exc:
                # the next batch re-reads the pending nonce
                self._next_nonce = None
                raise SubmissionFailed(
                    f"Transaction {index}/{total} to {output.address} failed: {exc}",
                    broadcast=sent,
                ) from exc

            sent.append(tx_hash)
            self._next_nonce = tx["nonce"] + 1
            logger.debug("Submitted tx %s (%s/%s) value=%s", tx_hash, index, total, format_amount(output.amount))
            await self._sleep(self.settling_delay_seconds)
            logger.debug("Waited %s seconds after tx %s", self.settling_delay_seconds, tx_hash)

        return BatchReceipt(tuple(sent))

    async def close(self) -> None:
        if self.web3 is not None:
            await _disconnect(self.web3)
        self.web3 = None
        self._next_nonce = None


async def _disconnect(web3: Any) -> None:
    disconnect = getattr(getattr(web3, "provider", None), "disconnect", None)
    if not callable(disconnect):
        return
    try:
        await disconnect()
    except Exception as exc:  # pragma: no cover - best-effort cleanup
        logger.debug("Ignoring error while closing ledger provider: %s", exc)
