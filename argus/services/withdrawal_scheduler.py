"""
Argus Escrow — Withdrawal Scheduler
Admits a withdrawal request and scatters it over time:
  - One queue entry per denomination
  - Each entry gets its own random delay (1–48h), so a source's total never
    shows up as a single on-chain event
  - Ledger debit, payment record and queue entries are written in one
    transaction, under the source's balance row lock
"""
import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from argus.config import get_settings
from argus.encryption import mask_address
from argus.exceptions import (
    DuplicateRequest,
    InvalidAddress,
    InvalidEntryState,
    WithdrawalNotFound,
)
from argus.models import (
    IN_FLIGHT_STATUSES,
    PaymentRecord,
    PaymentStatus,
    ReferenceType,
    WithdrawalQueueEntry,
    WithdrawalStatus,
    utcnow,
)
from argus.services.denominations import to_decimal, validate_payout_amount
from argus.services.escrow_ledger import EscrowLedger
from argus.services.payout_backend import PayoutBackend

logger = logging.getLogger("argus.withdrawals")

_system_rng = random.SystemRandom()


def random_withdrawal_delay(
    rng: Optional[random.Random] = None,
    min_hours: Optional[float] = None,
    max_hours: Optional[float] = None,
) -> timedelta:
    """
    Draw one execution delay, uniform in [min_hours, max_hours].

    Pass a seeded ``random.Random`` for reproducible schedules.
    """
    settings = get_settings()
    low = settings.WITHDRAWAL_DELAY_MIN_HOURS if min_hours is None else min_hours
    high = settings.WITHDRAWAL_DELAY_MAX_HOURS if max_hours is None else max_hours
    return timedelta(hours=(rng or _system_rng).uniform(low, high))


def derive_payment_status(statuses: Iterable[WithdrawalStatus]) -> PaymentStatus:
    """Aggregate status of a payment from its queue entries."""
    statuses = list(statuses)
    if not statuses:
        return PaymentStatus.PENDING
    if all(s == WithdrawalStatus.PENDING for s in statuses):
        return PaymentStatus.SCHEDULED
    if all(s == WithdrawalStatus.COMPLETED for s in statuses):
        return PaymentStatus.SUCCESS
    if all(s not in IN_FLIGHT_STATUSES for s in statuses):
        return PaymentStatus.FAILED
    return PaymentStatus.PROCESSING


async def refresh_payment_status(session: AsyncSession, payment_id: uuid.UUID) -> PaymentStatus:
    """Re-derive and store a payment's status from its entries."""
    result = await session.execute(
        select(WithdrawalQueueEntry.status).where(WithdrawalQueueEntry.payment_id == payment_id)
    )
    status = derive_payment_status(result.scalars().all())
    payment = await session.get(PaymentRecord, payment_id)
    if payment is not None and payment.status != status:
        payment.status = status
        payment.updated_at = utcnow()
        await session.flush()
    return status


@dataclass(frozen=True)
class ScheduledDenomination:
    entry_id: uuid.UUID
    denomination: Decimal
    scheduled_for: datetime


@dataclass(frozen=True)
class WithdrawalPlan:
    """What a successful withdrawal request returns to the source."""

    payment_id: uuid.UUID
    requested_amount: Decimal
    total: Decimal
    remainder: Decimal
    denominations: list[Decimal]
    schedule: list[ScheduledDenomination]


@dataclass
class WithdrawalStatusView:
    """A payment with every entry, so partial completion stays visible."""

    payment: PaymentRecord
    entries: list[WithdrawalQueueEntry] = field(default_factory=list)

    def count(self, status: WithdrawalStatus) -> int:
        return sum(1 for e in self.entries if e.status == status)

    @property
    def completed_amount(self) -> Decimal:
        return sum(
            (e.denomination for e in self.entries if e.status == WithdrawalStatus.COMPLETED),
            Decimal("0"),
        )


class WithdrawalScheduler:
    """Turns withdrawal requests into time-scattered queue entries."""

    def __init__(
        self,
        session: AsyncSession,
        backend: PayoutBackend,
        delay_fn: Callable[[], timedelta] = random_withdrawal_delay,
        clock: Callable[[], datetime] = utcnow,
        tolerance=None,
    ):
        self._session = session
        self._backend = backend
        self._delay_fn = delay_fn
        self._clock = clock
        self._tolerance = to_decimal(
            get_settings().DENOMINATION_TOLERANCE if tolerance is None else tolerance
        )

    async def _has_in_flight(
        self, source_id: uuid.UUID, exclude_payment: Optional[uuid.UUID] = None
    ) -> bool:
        query = select(func.count(WithdrawalQueueEntry.id)).where(
            WithdrawalQueueEntry.source_id == source_id,
            WithdrawalQueueEntry.status.in_(IN_FLIGHT_STATUSES),
        )
        if exclude_payment is not None:
            query = query.where(WithdrawalQueueEntry.payment_id != exclude_payment)
        result = await self._session.execute(query)
        return result.scalar_one() > 0

    async def request_withdrawal(
        self,
        source_id: uuid.UUID,
        amount,
        recipient_address: str,
        reason: str = "withdrawal",
    ) -> WithdrawalPlan:
        """
        Validate, debit and queue a withdrawal.

        Checks run in order (address, in-flight withdrawal, denominations,
        balance) and every one of them fails before anything is written.
        """
        amount = to_decimal(amount)
        recipient_address = (recipient_address or "").strip()
        if not self._backend.validate_address(recipient_address):
            raise InvalidAddress(
                "Invalid shielded address. Must be a Sapling (zs1…) or unified (u1…) address."
            )

        ledger = EscrowLedger(self._session)
        # Serialises this check-then-act with other requests for the source
        await ledger.lock_balance(source_id)
        if await self._has_in_flight(source_id):
            raise DuplicateRequest(
                "You already have a pending withdrawal. Please wait for it to complete."
            )

        breakdown = validate_payout_amount(amount, self._tolerance)

        payment_id = uuid.uuid4()
        await ledger.debit(
            source_id,
            breakdown.total,
            ReferenceType.WITHDRAWAL,
            reference_id=payment_id,
            note=f"Withdrawal queued as {len(breakdown.denominations)} denominations",
        )

        now = self._clock()
        payment = PaymentRecord(
            id=payment_id,
            source_id=source_id,
            amount=breakdown.total,
            requested_amount=amount,
            remainder=breakdown.remainder,
            reason=reason,
            recipient_address=recipient_address,
            recipient_chain=self._backend.asset,
            status=PaymentStatus.SCHEDULED,
            created_at=now,
            updated_at=now,
        )
        self._session.add(payment)

        entries = []
        for denomination in breakdown.denominations:
            entry = WithdrawalQueueEntry(
                id=uuid.uuid4(),
                payment=payment,
                source_id=source_id,
                denomination=denomination,
                asset=self._backend.asset,
                recipient_address=recipient_address,
                queued_at=now,
                scheduled_for=now + self._delay_fn(),
                status=WithdrawalStatus.PENDING,
                attempts=0,
            )
            entries.append(entry)
        self._session.add_all(entries)
        await self._session.flush()

        schedule = sorted(
            (ScheduledDenomination(e.id, e.denomination, e.scheduled_for) for e in entries),
            key=lambda s: s.scheduled_for,
        )
        logger.info(
            "Payment %s: %s ZEC to %s as %d withdrawals over %.1fh (remainder %s)",
            payment_id,
            breakdown.total,
            mask_address(recipient_address),
            len(entries),
            (schedule[-1].scheduled_for - now).total_seconds() / 3600,
            breakdown.remainder,
        )
        return WithdrawalPlan(
            payment_id=payment_id,
            requested_amount=amount,
            total=breakdown.total,
            remainder=breakdown.remainder,
            denominations=list(breakdown.denominations),
            schedule=schedule,
        )

    async def _entries(self, payment_id: uuid.UUID) -> list[WithdrawalQueueEntry]:
        result = await self._session.execute(
            select(WithdrawalQueueEntry)
            .where(WithdrawalQueueEntry.payment_id == payment_id)
            .order_by(WithdrawalQueueEntry.scheduled_for)
        )
        return list(result.scalars().all())

    async def get_withdrawal_status(
        self, payment_id: uuid.UUID, source_id: Optional[uuid.UUID] = None
    ) -> WithdrawalStatusView:
        """Payment and per-denomination entries. Scoped to ``source_id`` when given."""
        payment = await self._session.get(PaymentRecord, payment_id)
        if payment is None or (source_id is not None and payment.source_id != source_id):
            raise WithdrawalNotFound(payment_id)
        return WithdrawalStatusView(payment=payment, entries=await self._entries(payment_id))

    async def get_in_flight_withdrawal(self, source_id: uuid.UUID) -> Optional[WithdrawalStatusView]:
        """The source's withdrawal that still has pending or processing entries."""
        result = await self._session.execute(
            select(WithdrawalQueueEntry.payment_id)
            .where(
                WithdrawalQueueEntry.source_id == source_id,
                WithdrawalQueueEntry.status.in_(IN_FLIGHT_STATUSES),
            )
            .limit(1)
        )
        payment_id = result.scalar_one_or_none()
        if payment_id is None:
            return None
        return await self.get_withdrawal_status(payment_id)

    async def retry_failed_entry(self, entry_id: uuid.UUID) -> WithdrawalQueueEntry:
        """
        Operator action: put a failed entry back in the queue with a fresh delay.

        Refused while the source has another withdrawal in flight. The source's
        balance row is locked first, in the same order as request_withdrawal.
        """
        source_id = (
            await self._session.execute(
                select(WithdrawalQueueEntry.source_id).where(WithdrawalQueueEntry.id == entry_id)
            )
        ).scalar_one_or_none()
        if source_id is None:
            raise WithdrawalNotFound(entry_id)
        await EscrowLedger(self._session).lock_balance(source_id)

        result = await self._session.execute(
            select(WithdrawalQueueEntry)
            .where(WithdrawalQueueEntry.id == entry_id)
            .with_for_update()
        )
        entry = result.scalar_one()
        if entry.status != WithdrawalStatus.FAILED:
            raise InvalidEntryState(
                f"Only failed entries can be retried (entry is {entry.status.value})"
            )
        if await self._has_in_flight(source_id, exclude_payment=entry.payment_id):
            raise DuplicateRequest(
                "The source has another withdrawal in progress; retry once it completes."
            )

        entry.status = WithdrawalStatus.PENDING
        entry.scheduled_for = self._clock() + self._delay_fn()
        entry.error_message = None
        entry.processed_at = None
        entry.operation_id = None
        await self._session.flush()
        await refresh_payment_status(self._session, entry.payment_id)

        logger.info("Re-queued failed entry %s for %s", entry_id, entry.scheduled_for)
        return entry
