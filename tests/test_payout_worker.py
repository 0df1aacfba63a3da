"""
Tests for the payout worker: pool gate, jitter, per-entry isolation and
the failed-entry policy.
"""
import uuid
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select

from argus.config import get_settings
from argus.exceptions import RpcFailure
from argus.models import (
    AuditLog,
    PaymentRecord,
    PaymentStatus,
    ReferenceType,
    WithdrawalQueueEntry,
    WithdrawalStatus,
)
from argus.services.escrow_ledger import EscrowLedger
from argus.services.payout_worker import PayoutWorker
from argus.services.withdrawal_scheduler import WithdrawalScheduler
from conftest import NOW, FakeBackend, zaddr

D = Decimal
LATER = NOW + timedelta(hours=49)


async def _queue(session_factory, backend, amount="7.3", delays=(5, 3, 1, 2), address=None):
    """Fund a new source and queue one withdrawal; delays are in hours."""
    hours = iter(delays)
    async with session_factory() as session:
        source_id = uuid.uuid4()
        await EscrowLedger(session).credit(source_id, D("100"), ReferenceType.BOUNTY)
        scheduler = WithdrawalScheduler(
            session,
            backend,
            delay_fn=lambda: timedelta(hours=next(hours)),
            clock=lambda: NOW,
        )
        plan = await scheduler.request_withdrawal(source_id, D(amount), address or zaddr(1))
        await session.commit()
    return plan


def _worker(session_factory, backend, clock=LATER, **overrides):
    settings = get_settings().model_copy(update=overrides)
    sleeps = []

    async def record_sleep(seconds):
        sleeps.append(seconds)

    worker = PayoutWorker(
        session_factory,
        backend,
        settings=settings,
        jitter_fn=lambda: 7.0,
        sleep=record_sleep,
        clock=lambda: clock,
        delay_fn=lambda: timedelta(hours=4),
    )
    return worker, sleeps


async def _entries(session_factory, payment_id) -> list[WithdrawalQueueEntry]:
    async with session_factory() as session:
        result = await session.execute(
            select(WithdrawalQueueEntry)
            .where(WithdrawalQueueEntry.payment_id == payment_id)
            .order_by(WithdrawalQueueEntry.scheduled_for)
        )
        return list(result.scalars().all())


async def _payment_status(session_factory, payment_id) -> PaymentStatus:
    async with session_factory() as session:
        return (await session.get(PaymentRecord, payment_id)).status


# ═══════════════════════════════════════════════════════
#  Happy path
# ═══════════════════════════════════════════════════════


async def test_processes_due_entries_in_schedule_order(session_factory, backend):
    plan = await _queue(session_factory, backend)
    worker, sleeps = _worker(session_factory, backend)

    result = await worker.process_withdrawals()

    assert result.processed == 4
    assert result.failed == 0
    assert result.errors == []
    assert result.skipped_reason is None

    assert [amount for _, amount, _ in backend.sent] == [D("1"), D("0.25"), D("1"), D("5")]
    assert all(address == zaddr(1) for address, _, _ in backend.sent)
    assert all(memo == get_settings().PAYOUT_MEMO for _, _, memo in backend.sent)
    # jitter before every send except the first
    assert sleeps == [7.0, 7.0, 7.0]

    entries = await _entries(session_factory, plan.payment_id)
    assert all(e.status == WithdrawalStatus.COMPLETED for e in entries)
    assert all(e.tx_id and e.operation_id for e in entries)
    assert all(e.attempts == 1 for e in entries)
    assert all(e.completed_at == LATER for e in entries)
    assert await _payment_status(session_factory, plan.payment_id) == PaymentStatus.SUCCESS


async def test_entries_from_several_sources_form_the_pool(session_factory, backend):
    plans = [
        await _queue(session_factory, backend, amount="2.5", delays=(i + 1,), address=zaddr(i))
        for i in range(3)
    ]
    worker, _ = _worker(session_factory, backend)

    result = await worker.process_withdrawals()

    assert result.processed == 3
    assert [address for address, _, _ in backend.sent] == [zaddr(0), zaddr(1), zaddr(2)]
    for plan in plans:
        assert await _payment_status(session_factory, plan.payment_id) == PaymentStatus.SUCCESS


async def test_state_changes_are_audited(session_factory, backend):
    await _queue(session_factory, backend)
    worker, _ = _worker(session_factory, backend)
    await worker.process_withdrawals()

    async with session_factory() as session:
        logs = (
            await session.execute(
                select(AuditLog).where(
                    AuditLog.table_name == "withdrawal_queue",
                    AuditLog.action == "UPDATE",
                )
            )
        ).scalars().all()
    assert logs
    assert all(zaddr(1) not in (log.snapshot or "") for log in logs)


# ═══════════════════════════════════════════════════════
#  Gates
# ═══════════════════════════════════════════════════════


async def test_pool_gate_holds_back_small_batches(session_factory, backend):
    plan = await _queue(session_factory, backend, amount="2.5", delays=(1,))
    worker, _ = _worker(session_factory, backend)

    result = await worker.process_withdrawals()

    assert result.skipped_reason == "insufficient_pool"
    assert result.processed == 0
    assert backend.sent == []
    [entry] = await _entries(session_factory, plan.payment_id)
    assert entry.status == WithdrawalStatus.PENDING
    assert entry.attempts == 0


async def test_only_due_entries_count_towards_the_pool(session_factory, backend):
    await _queue(session_factory, backend)
    worker, _ = _worker(session_factory, backend, clock=NOW + timedelta(hours=2, minutes=30))

    result = await worker.process_withdrawals()

    assert result.skipped_reason == "insufficient_pool"
    assert backend.sent == []


async def test_chain_not_synced_skips_run(session_factory):
    backend = FakeBackend(synced=False)
    await _queue(session_factory, backend)
    worker, _ = _worker(session_factory, backend)

    result = await worker.process_withdrawals()

    assert result.skipped_reason == "chain_not_ready"
    assert result.errors == ["Blockchain not synced"]
    assert backend.sent == []


async def test_chain_check_error_skips_run(session_factory):
    backend = FakeBackend(synced=RpcFailure("Zcash RPC getblockchaininfo failed: connection refused"))
    await _queue(session_factory, backend)
    worker, _ = _worker(session_factory, backend)

    result = await worker.process_withdrawals()

    assert result.skipped_reason == "chain_not_ready"
    assert backend.sent == []


async def test_overlapping_run_is_skipped(session_factory, backend):
    await _queue(session_factory, backend)
    worker, _ = _worker(session_factory, backend)

    async with worker._lock:
        assert worker.is_running
        result = await worker.process_withdrawals()

    assert result.skipped_reason == "already_running"
    assert backend.sent == []


async def test_batch_size_limits_a_run(session_factory, backend):
    plan = await _queue(session_factory, backend)
    worker, _ = _worker(session_factory, backend, WORKER_BATCH_SIZE=2, MIN_POOL_SIZE=2)

    result = await worker.process_withdrawals()

    assert result.processed == 2
    statuses = [e.status for e in await _entries(session_factory, plan.payment_id)]
    assert statuses == [
        WithdrawalStatus.COMPLETED,
        WithdrawalStatus.COMPLETED,
        WithdrawalStatus.PENDING,
        WithdrawalStatus.PENDING,
    ]
    assert await _payment_status(session_factory, plan.payment_id) == PaymentStatus.PROCESSING


# ═══════════════════════════════════════════════════════
#  Failures
# ═══════════════════════════════════════════════════════


async def test_failed_send_does_not_stop_the_batch(session_factory):
    backend = FakeBackend(fail_amounts=["0.25"])
    plan = await _queue(session_factory, backend)
    worker, sleeps = _worker(session_factory, backend)

    result = await worker.process_withdrawals()

    assert result.processed == 3
    assert result.failed == 1
    assert len(result.errors) == 1
    assert "Transaction failed" in result.errors[0]
    assert len(backend.sent) == 4
    assert len(sleeps) == 3

    entries = await _entries(session_factory, plan.payment_id)
    failed = [e for e in entries if e.status == WithdrawalStatus.FAILED]
    assert [e.denomination for e in failed] == [D("0.25")]
    assert failed[0].error_message == "Transaction failed: tx unpaid action limit exceeded"
    assert failed[0].tx_id is None
    assert await _payment_status(session_factory, plan.payment_id) == PaymentStatus.FAILED


async def test_insufficient_wallet_balance_leaves_entries_pending(session_factory):
    backend = FakeBackend(balance=D("2"))
    plan = await _queue(session_factory, backend)
    worker, _ = _worker(session_factory, backend)

    result = await worker.process_withdrawals()

    assert result.processed == 2
    assert result.failed == 0
    assert len(result.errors) == 2
    assert all("Insufficient escrow balance" in e for e in result.errors)
    assert [amount for _, amount, _ in backend.sent] == [D("1"), D("0.25")]

    entries = await _entries(session_factory, plan.payment_id)
    pending = [e for e in entries if e.status == WithdrawalStatus.PENDING]
    assert sorted(e.denomination for e in pending) == [D("1"), D("5")]
    assert all(e.attempts == 0 for e in pending)


async def test_manual_policy_leaves_failed_entries_for_operator(session_factory):
    backend = FakeBackend(fail_amounts=["0.25"])
    plan = await _queue(session_factory, backend)
    worker, _ = _worker(session_factory, backend, FAILED_ENTRY_POLICY="manual")

    await worker.process_withdrawals()

    entries = await _entries(session_factory, plan.payment_id)
    assert [e.status for e in entries if e.denomination == D("0.25")] == [WithdrawalStatus.FAILED]


async def test_requeue_policy_reschedules_failed_entry(session_factory):
    backend = FakeBackend(fail_amounts=["0.25"])
    plan = await _queue(session_factory, backend)
    worker, _ = _worker(session_factory, backend, FAILED_ENTRY_POLICY="requeue", MAX_ENTRY_ATTEMPTS=3)

    result = await worker.process_withdrawals()
    assert result.failed == 1

    entries = await _entries(session_factory, plan.payment_id)
    [requeued] = [e for e in entries if e.denomination == D("0.25")]
    assert requeued.status == WithdrawalStatus.PENDING
    assert requeued.attempts == 1
    assert requeued.scheduled_for == LATER + timedelta(hours=4)
    assert requeued.error_message.startswith("Transaction failed")
    assert await _payment_status(session_factory, plan.payment_id) == PaymentStatus.PROCESSING


async def test_requeue_policy_stops_at_max_attempts(session_factory):
    backend = FakeBackend(fail_amounts=["0.25"])
    plan = await _queue(session_factory, backend)
    worker, _ = _worker(session_factory, backend, FAILED_ENTRY_POLICY="requeue", MAX_ENTRY_ATTEMPTS=1)

    await worker.process_withdrawals()

    entries = await _entries(session_factory, plan.payment_id)
    [entry] = [e for e in entries if e.denomination == D("0.25")]
    assert entry.status == WithdrawalStatus.FAILED


async def test_timed_out_operation_is_never_requeued(session_factory):
    backend = FakeBackend(stuck_amounts=["0.25"])
    plan = await _queue(session_factory, backend)
    worker, _ = _worker(session_factory, backend, FAILED_ENTRY_POLICY="requeue")

    result = await worker.process_withdrawals()

    assert result.processed == 3
    assert result.failed == 1
    entries = await _entries(session_factory, plan.payment_id)
    [entry] = [e for e in entries if e.denomination == D("0.25")]
    assert entry.status == WithdrawalStatus.FAILED
    assert entry.operation_id == "opid-2"
    assert "still pending after 3 polls" in entry.error_message


class _PollingDropsBackend(FakeBackend):
    """Accepts every send, then loses the connection while polling."""

    async def get_operation_status(self, operation_id):
        raise RpcFailure("connection reset while polling")


class _RejectingBackend(FakeBackend):
    """The node refuses the 0.25 submission outright."""

    async def send_payment(self, to_address, amount, memo=""):
        if Decimal(amount) == D("0.25"):
            raise RpcFailure("Zcash RPC error: Insufficient funds")
        return await super().send_payment(to_address, amount, memo)


class _BrokenBackend(FakeBackend):
    async def send_payment(self, to_address, amount, memo=""):
        raise RuntimeError("boom")


async def test_failure_after_submission_is_never_requeued(session_factory):
    backend = _PollingDropsBackend()
    plan = await _queue(session_factory, backend)
    worker, _ = _worker(session_factory, backend, FAILED_ENTRY_POLICY="requeue")

    result = await worker.process_withdrawals()

    assert result.processed == 0
    assert result.failed == 4
    assert len(backend.sent) == 4
    entries = await _entries(session_factory, plan.payment_id)
    assert all(e.status == WithdrawalStatus.FAILED for e in entries)
    assert sorted(e.operation_id for e in entries) == ["opid-1", "opid-2", "opid-3", "opid-4"]
    assert all(e.error_message == "connection reset while polling" for e in entries)

    # nothing is due again, so nothing can be paid twice
    again = await worker.process_withdrawals()
    assert again.skipped_reason == "insufficient_pool"
    assert len(backend.sent) == 4


async def test_rejected_submission_is_requeued(session_factory):
    backend = _RejectingBackend()
    plan = await _queue(session_factory, backend)
    worker, _ = _worker(session_factory, backend, FAILED_ENTRY_POLICY="requeue")

    result = await worker.process_withdrawals()

    assert result.processed == 3
    assert result.failed == 1
    entries = await _entries(session_factory, plan.payment_id)
    [entry] = [e for e in entries if e.denomination == D("0.25")]
    assert entry.status == WithdrawalStatus.PENDING
    assert entry.operation_id is None
    assert entry.attempts == 1
    assert entry.scheduled_for == LATER + timedelta(hours=4)


async def test_unexpected_backend_error_marks_entries_failed(session_factory):
    backend = _BrokenBackend()
    plan = await _queue(session_factory, backend)
    worker, _ = _worker(session_factory, backend, FAILED_ENTRY_POLICY="requeue")

    result = await worker.process_withdrawals()

    assert result.processed == 0
    assert result.failed == 4
    assert all("RuntimeError: boom" in e for e in result.errors)
    entries = await _entries(session_factory, plan.payment_id)
    assert all(e.status == WithdrawalStatus.FAILED for e in entries)
    assert all(e.error_message == "RuntimeError: boom" for e in entries)
    assert await _payment_status(session_factory, plan.payment_id) == PaymentStatus.FAILED

    # failed, not stuck in processing: the operator can still retry
    async with session_factory() as session:
        scheduler = WithdrawalScheduler(session, backend, clock=lambda: LATER)
        retried = await scheduler.retry_failed_entry(entries[0].id)
        assert retried.status == WithdrawalStatus.PENDING


# ═══════════════════════════════════════════════════════
#  Status
# ═══════════════════════════════════════════════════════


async def test_payout_status(session_factory, backend):
    await _queue(session_factory, backend)
    worker, _ = _worker(session_factory, backend, clock=NOW + timedelta(hours=2, minutes=30))

    status = await worker.get_payout_status()

    assert status.chain_ready is True
    assert status.escrow_balance == D("1000")
    assert status.pending_count == 4
    assert status.due_count == 2
    assert status.processing_count == 0
    assert status.failed_count == 0


async def test_payout_status_when_node_down(session_factory):
    backend = FakeBackend(synced=RpcFailure("Zcash RPC getblockchaininfo timed out"))
    worker, _ = _worker(session_factory, backend)

    status = await worker.get_payout_status()

    assert status.chain_ready is False
    assert status.escrow_balance == 0
    assert status.pending_count == 0
