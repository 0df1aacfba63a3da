"""
Argus Escrow — Payout Worker
Executes due withdrawal entries against the payout backend.

Privacy rules enforced per run:
  - Nothing is sent unless at least MIN_POOL_SIZE entries are due together
  - Sends within a run are separated by a random jitter
  - Each entry succeeds or fails on its own; one bad send never stops the batch
"""
import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from argus.config import Settings, get_settings
from argus.encryption import mask_address
from argus.exceptions import (
    ArgusError,
    ChainNotReady,
    InsufficientPoolSize,
    OperationFailed,
    RpcFailure,
    RpcTimeout,
)
from argus.models import WithdrawalQueueEntry, WithdrawalStatus, utcnow
from argus.services.payout_backend import PayoutBackend
from argus.services.withdrawal_scheduler import random_withdrawal_delay, refresh_payment_status

logger = logging.getLogger("argus.payouts")

_system_rng = random.SystemRandom()


@dataclass
class PayoutRunResult:
    processed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None


@dataclass(frozen=True)
class PayoutStatus:
    chain_ready: bool
    escrow_balance: Decimal
    pending_count: int
    due_count: int
    processing_count: int
    failed_count: int


@dataclass(frozen=True)
class _DueEntry:
    id: uuid.UUID
    payment_id: uuid.UUID
    denomination: Decimal
    recipient_address: str


class PayoutWorker:
    """
    One instance per process. ``process_withdrawals`` is safe to call from
    an HTTP trigger and a periodic job at the same time: overlapping calls
    return immediately with ``skipped_reason="already_running"``, and each
    entry is claimed under its row lock before anything is sent.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        backend: PayoutBackend,
        settings: Optional[Settings] = None,
        jitter_fn: Optional[Callable[[], float]] = None,
        sleep=asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
        delay_fn: Callable[[], timedelta] = random_withdrawal_delay,
    ):
        self._session_factory = session_factory
        self._backend = backend
        self._settings = settings or get_settings()
        self._jitter_fn = jitter_fn or self._random_jitter
        self._sleep = sleep
        self._clock = clock
        self._delay_fn = delay_fn
        self._lock = asyncio.Lock()

    def _random_jitter(self) -> float:
        return _system_rng.uniform(
            self._settings.SEND_JITTER_MIN_SECONDS,
            self._settings.SEND_JITTER_MAX_SECONDS,
        )

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    # ═══════════════════════════════════════════════════
    #  RUN
    # ═══════════════════════════════════════════════════

    async def process_withdrawals(self) -> PayoutRunResult:
        """Run one payout cycle. Never raises; problems are reported in the result."""
        if self._lock.locked():
            logger.info("[Payout] Run already in progress, skipping")
            return PayoutRunResult(skipped_reason="already_running")

        async with self._lock:
            try:
                return await self._run()
            except Exception as exc:
                logger.exception("[Payout] Run aborted")
                return PayoutRunResult(errors=[f"Payout run aborted: {exc}"])

    async def _run(self) -> PayoutRunResult:
        result = PayoutRunResult()
        logger.info("[Payout] Starting payout run...")

        if not await self._chain_ready():
            err = ChainNotReady()
            logger.warning("[Payout] %s, skipping run", err.message)
            result.skipped_reason = "chain_not_ready"
            result.errors.append(err.message)
            return result

        try:
            wallet = await self._backend.get_balance()
        except RpcFailure as exc:
            logger.error("[Payout] Could not read escrow balance: %s", exc.message)
            result.skipped_reason = "balance_unavailable"
            result.errors.append(exc.message)
            return result
        available = wallet.available
        logger.info("[Payout] Escrow wallet balance: %s %s", available, self._backend.asset.upper())

        due = await self._due_entries()
        if len(due) < self._settings.MIN_POOL_SIZE:
            gate = InsufficientPoolSize(len(due), self._settings.MIN_POOL_SIZE)
            logger.info("[Payout] %s", gate.message)
            result.skipped_reason = "insufficient_pool"
            return result

        logger.info("[Payout] Processing %d due withdrawals", len(due))
        sent = 0
        for entry in due:
            if available < entry.denomination:
                message = f"Insufficient escrow balance for withdrawal {entry.id}"
                logger.error("[Payout] %s (need %s, have %s)", message, entry.denomination, available)
                result.errors.append(message)
                continue

            try:
                if not await self._claim(entry):
                    logger.info("[Payout] Entry %s already claimed, skipping", entry.id)
                    continue
                if sent:
                    await self._sleep(self._jitter_fn())
                sent += 1
                ok = await self._execute(entry, result)
            except Exception as exc:
                logger.exception("[Payout] Unexpected error on withdrawal %s", entry.id)
                result.failed += 1
                result.errors.append(f"Failed to process withdrawal {entry.id}: {exc}")
                continue
            if ok:
                available -= entry.denomination

        logger.info(
            "[Payout] ✅ Run complete: %d processed, %d failed",
            result.processed,
            result.failed,
        )
        return result

    async def _chain_ready(self) -> bool:
        try:
            return await self._backend.is_chain_synced()
        except RpcFailure as exc:
            logger.error("[Payout] Chain status check failed: %s", exc.message)
            return False

    async def _due_entries(self) -> list[_DueEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WithdrawalQueueEntry)
                .where(
                    WithdrawalQueueEntry.status == WithdrawalStatus.PENDING,
                    WithdrawalQueueEntry.asset == self._backend.asset,
                    WithdrawalQueueEntry.scheduled_for <= self._clock(),
                )
                .order_by(WithdrawalQueueEntry.scheduled_for.asc())
                .limit(self._settings.WORKER_BATCH_SIZE)
            )
            return [
                _DueEntry(e.id, e.payment_id, e.denomination, e.recipient_address)
                for e in result.scalars().all()
            ]

    async def _locked_entry(self, session: AsyncSession, entry_id: uuid.UUID) -> Optional[WithdrawalQueueEntry]:
        result = await session.execute(
            select(WithdrawalQueueEntry)
            .where(WithdrawalQueueEntry.id == entry_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _claim(self, entry: _DueEntry) -> bool:
        """pending → processing, committed before the send goes out."""
        async with self._session_factory() as session:
            async with session.begin():
                row = await self._locked_entry(session, entry.id)
                if row is None or row.status != WithdrawalStatus.PENDING:
                    return False
                row.status = WithdrawalStatus.PROCESSING
                row.processed_at = self._clock()
                row.attempts = (row.attempts or 0) + 1
                await session.flush()
                await refresh_payment_status(session, entry.payment_id)
        return True

    async def _execute(self, entry: _DueEntry, result: PayoutRunResult) -> bool:
        operation_id = None
        try:
            operation_id = await self._backend.send_payment(
                entry.recipient_address, entry.denomination, self._settings.PAYOUT_MEMO
            )
            await self._store_operation(entry, operation_id)
            tx_id = await self._backend.wait_for_operation(operation_id)
        except ArgusError as exc:
            await self._fail(entry, operation_id, exc.message, self._can_resend(exc, operation_id), result)
            return False
        except Exception as exc:
            logger.exception("[Payout] Unexpected error on withdrawal %s", entry.id)
            await self._fail(entry, operation_id, f"{type(exc).__name__}: {exc}", False, result)
            return False

        await self._mark_completed(entry, tx_id)
        result.processed += 1
        logger.info(
            "[Payout] ✅ Sent %s %s to %s, tx %s",
            entry.denomination, self._backend.asset.upper(), mask_address(entry.recipient_address), tx_id,
        )
        return True

    @staticmethod
    def _can_resend(exc: ArgusError, operation_id: Optional[str]) -> bool:
        """
        Only two failures prove nothing went out: the node rejected the
        submission, or it reported the operation itself as failed. Once an
        operation id exists, anything else leaves the outcome unknown.
        """
        if isinstance(exc, OperationFailed):
            return True
        return operation_id is None and isinstance(exc, RpcFailure) and not isinstance(exc, RpcTimeout)

    async def _fail(
        self,
        entry: _DueEntry,
        operation_id: Optional[str],
        message: str,
        retryable: bool,
        result: PayoutRunResult,
    ) -> None:
        await self._mark_failed(entry, message, retryable=retryable)
        result.failed += 1
        result.errors.append(f"Failed to process withdrawal {entry.id}: {message}")
        logger.error(
            "[Payout] ❌ Withdrawal %s (%s %s, operation %s) failed: %s",
            entry.id, entry.denomination, self._backend.asset.upper(), operation_id, message,
        )

    async def _store_operation(self, entry: _DueEntry, operation_id: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                row = await self._locked_entry(session, entry.id)
                row.operation_id = operation_id

    async def _mark_completed(self, entry: _DueEntry, tx_id: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                row = await self._locked_entry(session, entry.id)
                row.status = WithdrawalStatus.COMPLETED
                row.tx_id = tx_id
                row.completed_at = self._clock()
                row.error_message = None
                await session.flush()
                await refresh_payment_status(session, entry.payment_id)

    async def _mark_failed(self, entry: _DueEntry, message: str, retryable: bool) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                row = await self._locked_entry(session, entry.id)
                row.error_message = message
                if (
                    retryable
                    and self._settings.FAILED_ENTRY_POLICY == "requeue"
                    and row.attempts < self._settings.MAX_ENTRY_ATTEMPTS
                ):
                    row.status = WithdrawalStatus.PENDING
                    row.scheduled_for = self._clock() + self._delay_fn()
                    row.operation_id = None
                    logger.info(
                        "[Payout] Re-queued withdrawal %s for %s (attempt %d of %d)",
                        entry.id, row.scheduled_for, row.attempts, self._settings.MAX_ENTRY_ATTEMPTS,
                    )
                else:
                    row.status = WithdrawalStatus.FAILED
                await session.flush()
                await refresh_payment_status(session, entry.payment_id)

    # ═══════════════════════════════════════════════════
    #  STATUS
    # ═══════════════════════════════════════════════════

    async def get_payout_status(self) -> PayoutStatus:
        """Operator snapshot of node readiness, pool balance and queue depth."""
        chain_ready = await self._chain_ready()
        balance = Decimal("0")
        if chain_ready:
            try:
                balance = (await self._backend.get_balance()).available
            except RpcFailure as exc:
                logger.error("[Payout] Could not read escrow balance: %s", exc.message)

        async with self._session_factory() as session:
            rows = await session.execute(
                select(WithdrawalQueueEntry.status, func.count(WithdrawalQueueEntry.id))
                .where(WithdrawalQueueEntry.asset == self._backend.asset)
                .group_by(WithdrawalQueueEntry.status)
            )
            counts = {status: count for status, count in rows.all()}
            due = await session.execute(
                select(func.count(WithdrawalQueueEntry.id)).where(
                    WithdrawalQueueEntry.status == WithdrawalStatus.PENDING,
                    WithdrawalQueueEntry.asset == self._backend.asset,
                    WithdrawalQueueEntry.scheduled_for <= self._clock(),
                )
            )
            due_count = due.scalar_one()

        return PayoutStatus(
            chain_ready=chain_ready,
            escrow_balance=balance,
            pending_count=counts.get(WithdrawalStatus.PENDING, 0),
            due_count=due_count,
            processing_count=counts.get(WithdrawalStatus.PROCESSING, 0),
            failed_count=counts.get(WithdrawalStatus.FAILED, 0),
        )
