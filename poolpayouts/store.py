"""SQL adapter for the pool's balance and payment tables.

Balances are credited by the pool's share accounting, which lives outside this
process. The payout engine only snapshots them, zeroes the ones it paid and
appends payment history. Each call runs in its own short transaction and no
transaction spans a snapshot and the resets that follow it, so a credit that
lands between the two is zeroed by the reset while history keeps the
snapshot amount.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Callable, Iterable, List

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

metadata = MetaData()

balances_table = Table(
    "balances",
    metadata,
    Column("address", String(128), primary_key=True),
    Column("available_balance", Numeric(78, 0), nullable=False, default=0),
)

payments_table = Table(
    "payments",
    metadata,
    # SQLite only autoincrements INTEGER primary keys
    Column("id", BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True),
    Column("address", String(128), nullable=False, index=True),
    Column("amount", Numeric(78, 0), nullable=False),
    Column("tx_id", String(128), nullable=False),
    Column("timestamp", BigInteger, nullable=False),
    Column("notified", Boolean, nullable=False, default=False),
)


class StoreUnavailable(RuntimeError):
    pass


@dataclass(frozen=True)
class BalanceRecord:
    address: str
    payable_amount: int


@dataclass(frozen=True)
class PaymentRecord:
    id: int
    address: str
    amount: int
    transaction_id: str
    timestamp: int
    notified: bool


def _to_int(value: object) -> int:
    if value is None:
        return 0
    return int(Decimal(str(value)))


class BalanceStore:
    def __init__(
        self,
        engine: AsyncEngine,
        excluded_addresses: Iterable[str] = ("pool",),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.excluded_addresses: List[str] = []
        for address in excluded_addresses:
            if address and address not in self.excluded_addresses:
                self.excluded_addresses.append(address)
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, excluded_addresses: Iterable[str] = ("pool",)) -> "BalanceStore":
        engine = create_async_engine(url, pool_pre_ping=True)
        return cls(engine, excluded_addresses=excluded_addresses)

    @asynccontextmanager
    async def _transaction(self, action: str) -> AsyncIterator[AsyncConnection]:
        try:
            async with self.engine.begin() as conn:
                yield conn
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            raise StoreUnavailable(f"{action} failed: {exc}") from exc

    async def create_schema(self) -> None:
        async with self._transaction("create schema") as conn:
            await conn.run_sync(metadata.create_all)

    async def list_payable_balances(self) -> List[BalanceRecord]:
        stmt = select(balances_table.c.address, balances_table.c.available_balance)
        if self.excluded_addresses:
            # hex addresses are stored in either checksum or lower case
            excluded = sorted({address.lower() for address in self.excluded_addresses})
            stmt = stmt.where(func.lower(balances_table.c.address).not_in(excluded))
        stmt = stmt.order_by(balances_table.c.address)
        async with self._transaction("list balances") as conn:
            result = await conn.execute(stmt)
            rows = result.all()
        balances = [BalanceRecord(address=row.address, payable_amount=_to_int(row.available_balance)) for row in rows]
        logger.debug("Read %s balance rows (excluded=%s)", len(balances), self.excluded_addresses)
        return balances

    async def reset_balance(self, address: str) -> None:
        stmt = (
            update(balances_table)
            .where(balances_table.c.address == address)
            .values(available_balance=0)
        )
        async with self._transaction(f"reset balance for {address}") as conn:
            await conn.execute(stmt)

    async def record_payment(self, address: str, amount: int, transaction_id: str) -> int:
        if amount < 0:
            raise ValueError("amount must be non-negative")
        stmt = insert(payments_table).values(
            address=address,
            amount=amount,
            tx_id=transaction_id,
            timestamp=int(self._clock()),
            notified=False,
        )
        async with self._transaction(f"record payment for {address}") as conn:
            result = await conn.execute(stmt)
            payment_id = result.inserted_primary_key[0]
        return int(payment_id)

    async def list_unnotified_payments(self, address: str) -> List[PaymentRecord]:
        stmt = (
            select(payments_table)
            .where(payments_table.c.address == address)
            .where(payments_table.c.notified.is_(False))
            .order_by(payments_table.c.id)
        )
        async with self._transaction(f"list payments for {address}") as conn:
            result = await conn.execute(stmt)
            rows = result.all()
        return [
            PaymentRecord(
                id=int(row.id),
                address=row.address,
                amount=_to_int(row.amount),
                transaction_id=row.tx_id,
                timestamp=int(row.timestamp),
                notified=bool(row.notified),
            )
            for row in rows
        ]

    async def mark_notified(self, payment_id: int) -> None:
        stmt = update(payments_table).where(payments_table.c.id == payment_id).values(notified=True)
        async with self._transaction(f"mark payment {payment_id} notified") as conn:
            await conn.execute(stmt)

    async def close(self) -> None:
        await self.engine.dispose()
