"""Turn a balance snapshot into the outputs of one payout batch."""
from __future__ import annotations

import logging
from typing import Iterable, List, Sequence

from .ledger_client import PaymentOutput
from .store import BalanceRecord

logger = logging.getLogger(__name__)


def build_payment_outputs(balances: Iterable[BalanceRecord], minimum_payout: int = 0) -> List[PaymentOutput]:
    """Keep every positive balance at or above ``minimum_payout``, in snapshot order.

    Balances below the floor are left out and keep accruing in the store. An
    address listed more than once only contributes its first row.
    """
    if minimum_payout < 0:
        raise ValueError("minimum_payout must be non-negative")

    outputs: List[PaymentOutput] = []
    seen: set[str] = set()
    for record in balances:
        if record.payable_amount <= 0:
            continue
        if record.address in seen:
            logger.warning("Duplicate balance row for %s ignored", record.address)
            continue
        seen.add(record.address)
        if record.payable_amount < minimum_payout:
            logger.debug(
                "Balance %s for %s below minimum payout %s; deferring",
                record.payable_amount,
                record.address,
                minimum_payout,
            )
            continue
        outputs.append(PaymentOutput(address=record.address, amount=record.payable_amount))
    return outputs


def total_amount(outputs: Sequence[PaymentOutput]) -> int:
    return sum(output.amount for output in outputs)
