"""Payout cycle: snapshot balances, broadcast one batch, zero what was paid."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .batcher import build_payment_outputs, total_amount
from .ledger_client import LedgerClient, PaymentOutput, SubmissionFailed, format_amount
from .store import BalanceStore, StoreUnavailable

logger = logging.getLogger(__name__)


class CycleState(str, Enum):
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    BATCHING = "batching"
    SUBMITTING = "submitting"
    SETTLING = "settling"
    RECORDING = "recording"
    ABORTED_NO_OUTPUTS = "aborted_no_outputs"
    FAILED = "failed"


class PartialRecordingFailure(RuntimeError):
    """A reset or history write failed for one address after a confirmed batch."""

    def __init__(self, address: str, step: str, cause: BaseException) -> None:
        super().__init__(f"{step} failed for {address}: {cause}")
        self.address = address
        self.step = step
        self.cause = cause


@dataclass
class CycleResult:
    status: str
    final_state: CycleState = CycleState.IDLE
    outputs: List[PaymentOutput] = field(default_factory=list)
    transaction_id: Optional[str] = None
    broadcast: List[str] = field(default_factory=list)
    failures: List[PartialRecordingFailure] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def total(self) -> int:
        return total_amount(self.outputs)


class PayoutOrchestrator:
    def __init__(
        self,
        store: BalanceStore,
        ledger_client: LedgerClient,
        minimum_payout: int = 0,
    ) -> None:
        self.store = store
        self.ledger_client = ledger_client
        self.minimum_payout = minimum_payout
        self.state = CycleState.IDLE
        self.last_result: Optional[CycleResult] = None
        self._busy = False

    def is_busy(self) -> bool:
        return self._busy

    def is_ready(self) -> bool:
        return bool(self.ledger_client.is_ready)

    async def run_cycle(self) -> CycleResult:
        """Run one payout cycle.

        Only one cycle runs at a time: a call made while another is in flight
        returns ``skipped_busy`` without touching the store or the ledger.
        Store and submission errors end the cycle and are reported in the
        result instead of being raised.
        """
        if self._busy:
            logger.warning("Payout cycle already running (state=%s); dropping trigger", self.state.value)
            return CycleResult(status="skipped_busy", final_state=self.state)
        if not self.is_ready():
            logger.error("Ledger connection is not established; skipping payout cycle")
            return CycleResult(status="skipped_not_ready")

        self._busy = True
        try:
            result = await self._run()
        finally:
            self._busy = False
            self.state = CycleState.IDLE
        self.last_result = result
        return result

    async def _run(self) -> CycleResult:
        logger.info("Starting payout cycle")

        self.state = CycleState.SNAPSHOTTING
        try:
            balances = await self.store.list_payable_balances()
        except StoreUnavailable as exc:
            logger.error("Payout cycle failed while reading balances: %s", exc)
            return CycleResult(status="failed", final_state=CycleState.FAILED, error=exc)
        logger.debug("Retrieved %s balances", len(balances))

        self.state = CycleState.BATCHING
        outputs = build_payment_outputs(balances, self.minimum_payout)
        if not outputs:
            logger.info("No payments found for current payout cycle")
            return CycleResult(status="no_outputs", final_state=CycleState.ABORTED_NO_OUTPUTS)
        for output in outputs:
            logger.info("Processing balance %s for address %s", format_amount(output.amount), output.address)

        self.state = CycleState.SUBMITTING
        logger.debug("Submitting %s payments totalling %s", len(outputs), format_amount(total_amount(outputs)))
        try:
            receipt = await self.ledger_client.submit_batch(outputs)
        except SubmissionFailed as exc:
            logger.error("Payout submission failed; no balances were reset: %s", exc)
            if exc.broadcast:
                logger.error(
                    "Transactions broadcast before the failure need manual reconciliation: %s",
                    ", ".join(exc.broadcast),
                )
            return CycleResult(
                status="failed",
                final_state=CycleState.FAILED,
                outputs=outputs,
                broadcast=list(exc.broadcast),
                error=exc,
            )

        self.state = CycleState.SETTLING
        if receipt is None or not receipt.transaction_ids:
            logger.warning("No transaction id returned for the batch; leaving balances unchanged")
            return CycleResult(status="no_receipt", final_state=CycleState.IDLE, outputs=outputs)
        transaction_id = receipt.transaction_id
        logger.info(
            "Sent %s payments in %s transactions. Transaction ID: %s",
            len(outputs),
            len(receipt.transaction_ids),
            transaction_id,
        )

        self.state = CycleState.RECORDING
        failures: List[PartialRecordingFailure] = []
        for output in outputs:
            failures.extend(await self._settle_output(output, transaction_id))

        if failures:
            logger.warning(
                "Payout cycle finished with %s recording failures (tx=%s)",
                len(failures),
                transaction_id,
            )
        logger.info(
            "Payout cycle complete: paid=%s total=%s tx=%s",
            len(outputs),
            format_amount(total_amount(outputs)),
            transaction_id,
        )
        return CycleResult(
            status="completed",
            final_state=CycleState.IDLE,
            outputs=outputs,
            transaction_id=transaction_id,
            broadcast=list(receipt.transaction_ids),
            failures=failures,
        )

    async def _settle_output(self, output: PaymentOutput, transaction_id: str) -> List[PartialRecordingFailure]:
        # reset first, then history; the pair is not atomic
        failures: List[PartialRecordingFailure] = []
        try:
            await self.store.reset_balance(output.address)
            logger.info("Reset balance for address %s", output.address)
        except StoreUnavailable as exc:
            failure = PartialRecordingFailure(output.address, "reset", exc)
            logger.error("%s (tx=%s)", failure, transaction_id)
            failures.append(failure)

        try:
            await self.store.record_payment(output.address, output.amount, transaction_id)
            logger.debug("Recorded payment of %s to %s", format_amount(output.amount), output.address)
        except StoreUnavailable as exc:
            failure = PartialRecordingFailure(output.address, "record", exc)
            logger.error("%s (tx=%s)", failure, transaction_id)
            failures.append(failure)
        return failures
