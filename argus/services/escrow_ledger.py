"""
Argus Escrow — Escrow Ledger
Authoritative per-source balances. Every balance change is paired with an
immutable EscrowTransaction carrying the resulting balance.

Concurrency:
  - Pessimistic row locking (SELECT … FOR UPDATE) on the source's balance row
  - The caller owns the transaction; nothing here commits
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from argus.exceptions import InsufficientBalance
from argus.models import (
    EscrowBalance,
    EscrowTransaction,
    ReferenceType,
    TransactionType,
    utcnow,
)
from argus.services.denominations import to_decimal
from argus.services.price_oracle import PriceOracle

logger = logging.getLogger("argus.escrow")

ZERO = Decimal("0")


@dataclass(frozen=True)
class BalanceView:
    """Read-only balance snapshot; zero-valued for sources never credited."""

    source_id: uuid.UUID
    balance: Decimal = ZERO
    total_earned: Decimal = ZERO
    total_withdrawn: Decimal = ZERO
    updated_at: Optional[datetime] = None


class EscrowLedger:
    """Credit/debit operations over EscrowBalance and EscrowTransaction."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _insert_zero_balance(self, source_id: uuid.UUID) -> None:
        """INSERT … ON CONFLICT DO NOTHING, so concurrent first credits never collide."""
        if self._session.get_bind().dialect.name == "sqlite":
            insert = sqlite_insert
        else:
            insert = pg_insert
        await self._session.execute(
            insert(EscrowBalance)
            .values(
                id=uuid.uuid4(),
                source_id=source_id,
                balance=ZERO,
                total_earned=ZERO,
                total_withdrawn=ZERO,
                updated_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["source_id"])
        )

    async def lock_balance(
        self, source_id: uuid.UUID, create: bool = False
    ) -> Optional[EscrowBalance]:
        """
        Lock the source's balance row for the rest of the transaction.

        With ``create`` a zero-valued row is inserted when none exists.
        """
        if create:
            await self._insert_zero_balance(source_id)
        result = await self._session.execute(
            select(EscrowBalance)
            .where(EscrowBalance.source_id == source_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    def _record(
        self,
        balance: EscrowBalance,
        tx_type: TransactionType,
        amount: Decimal,
        reference_type,
        reference_id,
        note,
    ) -> EscrowTransaction:
        entry = EscrowTransaction(
            source_id=balance.source_id,
            type=tx_type,
            amount=amount,
            reference_type=ReferenceType(reference_type) if reference_type else None,
            reference_id=reference_id,
            balance_after=balance.balance,
            note=note,
            created_at=utcnow(),
        )
        self._session.add(entry)
        return entry

    async def credit(
        self,
        source_id: uuid.UUID,
        amount,
        reference_type,
        reference_id: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Decimal:
        """Add ``amount`` to the balance and lifetime earnings. Returns the new balance."""
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValueError("Credit amount must be positive")

        balance = await self.lock_balance(source_id, create=True)
        balance.balance = balance.balance + amount
        balance.total_earned = balance.total_earned + amount
        balance.updated_at = utcnow()
        self._record(balance, TransactionType.CREDIT, amount, reference_type, reference_id, note)
        await self._session.flush()

        logger.info("Credited %s ZEC to source %s → balance %s", amount, source_id, balance.balance)
        return balance.balance

    async def debit(
        self,
        source_id: uuid.UUID,
        amount,
        reference_type,
        reference_id: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Decimal:
        """
        Remove ``amount`` from the balance. Returns the new balance.

        Raises InsufficientBalance without touching any row when the
        balance does not cover the amount.
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValueError("Debit amount must be positive")

        balance = await self.lock_balance(source_id)
        available = balance.balance if balance is not None else ZERO
        if balance is None or amount > available:
            raise InsufficientBalance(available=available, requested=amount)

        balance.balance = balance.balance - amount
        balance.total_withdrawn = balance.total_withdrawn + amount
        balance.updated_at = utcnow()
        self._record(balance, TransactionType.DEBIT, amount, reference_type, reference_id, note)
        await self._session.flush()

        logger.info("Debited %s ZEC from source %s → balance %s", amount, source_id, balance.balance)
        return balance.balance

    async def get_balance(self, source_id: uuid.UUID) -> BalanceView:
        """Current balance without locking or creating anything."""
        result = await self._session.execute(
            select(EscrowBalance).where(EscrowBalance.source_id == source_id)
        )
        balance = result.scalar_one_or_none()
        if balance is None:
            return BalanceView(source_id=source_id)
        return BalanceView(
            source_id=source_id,
            balance=balance.balance,
            total_earned=balance.total_earned,
            total_withdrawn=balance.total_withdrawn,
            updated_at=balance.updated_at,
        )

    async def get_transactions(
        self, source_id: uuid.UUID, limit: int = 20, offset: int = 0
    ) -> list[EscrowTransaction]:
        """Ledger history, newest first."""
        result = await self._session.execute(
            select(EscrowTransaction)
            .where(EscrowTransaction.source_id == source_id)
            .order_by(EscrowTransaction.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def credit_bounty_reward(
        self,
        source_id: uuid.UUID,
        bounty_id: uuid.UUID,
        reward_usd,
        oracle: PriceOracle,
        asset: str = "zec",
    ) -> Decimal:
        """Convert a USD bounty reward into ZEC and credit it to the fulfilling source."""
        amount = await oracle.convert(reward_usd, asset)
        return await self.credit(
            source_id,
            amount,
            ReferenceType.BOUNTY,
            reference_id=bounty_id,
            note=f"Bounty reward ${to_decimal(reward_usd)} → {amount} {asset.upper()}",
        )
