import asyncio
from typing import Dict, List, Optional, Sequence

from poolpayouts.ledger_client import BatchReceipt, PaymentOutput, SubmissionFailed
from poolpayouts.store import BalanceRecord, StoreUnavailable


class FakeStore:
    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self.balances: Dict[str, int] = dict(balances or {})
        self.payments: List[tuple] = []
        self.calls: List[tuple] = []
        self.fail_snapshot = False
        self.fail_reset_for: set[str] = set()
        self.fail_record_for: set[str] = set()
        self.snapshot_gate: Optional[asyncio.Event] = None

    async def list_payable_balances(self):
        self.calls.append(("list",))
        if self.snapshot_gate is not None:
            await self.snapshot_gate.wait()
        if self.fail_snapshot:
            raise StoreUnavailable("connection refused")
        return [BalanceRecord(address, amount) for address, amount in self.balances.items() if address != "pool"]

    async def reset_balance(self, address: str):
        self.calls.append(("reset", address))
        if address in self.fail_reset_for:
            raise StoreUnavailable("update timed out")
        if address in self.balances:
            self.balances[address] = 0

    async def record_payment(self, address: str, amount: int, transaction_id: str):
        self.calls.append(("record", address, amount, transaction_id))
        if address in self.fail_record_for:
            raise StoreUnavailable("insert timed out")
        self.payments.append((address, amount, transaction_id))
        return len(self.payments)

    async def close(self):
        return None


class FakeLedgerClient:
    address = "0x" + "ab" * 20

    def __init__(
        self,
        transaction_ids: Sequence[str] = ("T1",),
        *,
        ready: bool = True,
        error: Optional[SubmissionFailed] = None,
        dry_run: bool = False,
    ):
        self.transaction_ids = tuple(transaction_ids)
        self.ready = ready
        self.error = error
        self.dry_run = dry_run
        self.submitted: List[List[PaymentOutput]] = []
        self.on_submit = None
        self.connect_error: Optional[Exception] = None
        self.closed = False

    @property
    def is_ready(self) -> bool:
        return self.ready

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.ready = True

    async def submit_batch(self, outputs):
        self.submitted.append(list(outputs))
        if self.on_submit is not None:
            self.on_submit()
        if self.error is not None:
            raise self.error
        if self.dry_run:
            return None
        return BatchReceipt(self.transaction_ids)

    async def on_reconnect(self):
        return None

    async def close(self):
        self.ready = False
        self.closed = True
