import asyncio

import pytest

from fakes import FakeLedgerClient, FakeStore
from poolpayouts.ledger_client import PaymentOutput, SubmissionFailed
from poolpayouts.orchestrator import CycleState, PayoutOrchestrator


@pytest.mark.anyio("asyncio")
async def test_cycle_pays_positive_balances_and_resets_them():
    store = FakeStore({"A": 500, "B": 0, "C": 1200})
    client = FakeLedgerClient(("T0", "T1"))
    orchestrator = PayoutOrchestrator(store, client)

    result = await orchestrator.run_cycle()

    assert result.status == "completed"
    assert result.transaction_id == "T1"
    assert client.submitted == [[PaymentOutput("A", 500), PaymentOutput("C", 1200)]]
    assert store.calls == [
        ("list",),
        ("reset", "A"),
        ("record", "A", 500, "T1"),
        ("reset", "C"),
        ("record", "C", 1200, "T1"),
    ]
    assert store.balances == {"A": 0, "B": 0, "C": 0}
    assert store.payments == [("A", 500, "T1"), ("C", 1200, "T1")]
    assert orchestrator.state is CycleState.IDLE
    assert not orchestrator.is_busy()


@pytest.mark.anyio("asyncio")
async def test_submission_failure_leaves_store_untouched():
    store = FakeStore({"A": 500, "C": 1200})
    error = SubmissionFailed("broadcast rejected", broadcast=["T0"])
    orchestrator = PayoutOrchestrator(store, FakeLedgerClient(error=error))

    result = await orchestrator.run_cycle()

    assert result.status == "failed"
    assert result.final_state is CycleState.FAILED
    assert result.broadcast == ["T0"]
    assert result.error is error
    assert store.calls == [("list",)]
    assert store.balances == {"A": 500, "C": 1200}
    assert store.payments == []


@pytest.mark.anyio("asyncio")
async def test_empty_batch_skips_ledger():
    store = FakeStore({"A": 0, "B": 0})
    client = FakeLedgerClient()
    orchestrator = PayoutOrchestrator(store, client)

    result = await orchestrator.run_cycle()

    assert result.status == "no_outputs"
    assert result.final_state is CycleState.ABORTED_NO_OUTPUTS
    assert client.submitted == []
    assert store.calls == [("list",)]


@pytest.mark.anyio("asyncio")
async def test_store_unavailable_fails_cycle_without_submitting():
    store = FakeStore({"A": 500})
    store.fail_snapshot = True
    client = FakeLedgerClient()
    orchestrator = PayoutOrchestrator(store, client)

    result = await orchestrator.run_cycle()

    assert result.status == "failed"
    assert client.submitted == []
    assert orchestrator.state is CycleState.IDLE


@pytest.mark.anyio("asyncio")
async def test_recording_failure_does_not_stop_other_addresses():
    store = FakeStore({"A": 500, "C": 1200})
    store.fail_reset_for.add("A")
    orchestrator = PayoutOrchestrator(store, FakeLedgerClient())

    result = await orchestrator.run_cycle()

    assert result.status == "completed"
    assert [(f.address, f.step) for f in result.failures] == [("A", "reset")]
    assert ("record", "A", 500, "T1") in store.calls
    assert store.balances == {"A": 500, "C": 0}
    assert store.payments == [("A", 500, "T1"), ("C", 1200, "T1")]


@pytest.mark.anyio("asyncio")
async def test_history_records_snapshot_amount():
    store = FakeStore({"A": 500})
    client = FakeLedgerClient()

    def credit_during_submit():
        store.balances["A"] += 200

    client.on_submit = credit_during_submit
    orchestrator = PayoutOrchestrator(store, client)

    await orchestrator.run_cycle()

    assert store.payments == [("A", 500, "T1")]
    # the reward credited mid-cycle is wiped by the reset
    assert store.balances["A"] == 0


@pytest.mark.anyio("asyncio")
async def test_second_trigger_while_running_is_dropped():
    store = FakeStore({"A": 500})
    store.snapshot_gate = asyncio.Event()
    client = FakeLedgerClient()
    orchestrator = PayoutOrchestrator(store, client)

    first = asyncio.create_task(orchestrator.run_cycle())
    while not orchestrator.is_busy():
        await asyncio.sleep(0)
    calls_before = list(store.calls)

    second = await orchestrator.run_cycle()

    assert second.status == "skipped_busy"
    assert store.calls == calls_before
    assert orchestrator.state is CycleState.SNAPSHOTTING

    store.snapshot_gate.set()
    result = await first
    assert result.status == "completed"
    assert len(client.submitted) == 1


@pytest.mark.anyio("asyncio")
async def test_cycle_skipped_when_ledger_not_ready():
    store = FakeStore({"A": 500})
    orchestrator = PayoutOrchestrator(store, FakeLedgerClient(ready=False))

    result = await orchestrator.run_cycle()

    assert result.status == "skipped_not_ready"
    assert store.calls == []
    assert not orchestrator.is_ready()


@pytest.mark.anyio("asyncio")
async def test_missing_transaction_id_keeps_balances():
    store = FakeStore({"A": 500})
    orchestrator = PayoutOrchestrator(store, FakeLedgerClient(dry_run=True))

    result = await orchestrator.run_cycle()

    assert result.status == "no_receipt"
    assert result.final_state is CycleState.IDLE
    assert store.balances == {"A": 500}
    assert store.payments == []


@pytest.mark.anyio("asyncio")
async def test_minimum_payout_leaves_small_balances_accruing():
    store = FakeStore({"A": 50, "B": 5000})
    client = FakeLedgerClient()
    orchestrator = PayoutOrchestrator(store, client, minimum_payout=100)

    result = await orchestrator.run_cycle()

    assert result.outputs == [PaymentOutput("B", 5000)]
    assert store.balances == {"A": 50, "B": 0}
