"""
Argus Escrow — SQLAlchemy ORM Models
All tables use UUID primary keys. Amounts are ZEC stored as Numeric(18, 8).
"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import relationship

from argus.database import Base
from argus.encryption import EncryptedString


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


AMOUNT = Numeric(18, 8)


# ═══════════════════════════════════════════════════════
#  ENUMS
# ═══════════════════════════════════════════════════════


class TransactionType(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class ReferenceType(str, enum.Enum):
    BOUNTY = "bounty"
    TIP = "tip"
    SUBSCRIPTION = "subscription"
    WITHDRAWAL = "withdrawal"
    ADJUSTMENT = "adjustment"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class WithdrawalStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


IN_FLIGHT_STATUSES = (WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING)


# ═══════════════════════════════════════════════════════
#  MODELS
# ═══════════════════════════════════════════════════════


class EscrowBalance(Base):
    """Withdrawable balance of one source. balance == total_earned - total_withdrawn."""
    __tablename__ = "escrow_balances"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    source_id = Column(Uuid, unique=True, nullable=False)
    balance = Column(AMOUNT, default=0, nullable=False)
    total_earned = Column(AMOUNT, default=0, nullable=False)
    total_withdrawn = Column(AMOUNT, default=0, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<EscrowBalance {self.source_id} — {self.balance} ZEC>"


class EscrowTransaction(Base):
    """Append-only ledger entry; never updated once written."""
    __tablename__ = "escrow_transactions"
    __table_args__ = (
        Index("idx_escrow_transactions_source", "source_id", "created_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    source_id = Column(Uuid, nullable=False)
    type = Column(SAEnum(TransactionType, name="escrow_tx_type_enum"), nullable=False)
    amount = Column(AMOUNT, nullable=False)
    reference_type = Column(
        SAEnum(ReferenceType, name="escrow_reference_type_enum"), nullable=True
    )
    reference_id = Column(Uuid, nullable=True)  # bounty id, payment id, …
    balance_after = Column(AMOUNT, nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<EscrowTransaction {self.type.value} {self.amount} → {self.balance_after}>"


class PaymentRecord(Base):
    """Parent of one withdrawal; status is derived from its queue entries."""
    __tablename__ = "payment_records"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    source_id = Column(Uuid, nullable=False, index=True)
    amount = Column(AMOUNT, nullable=False)  # achieved payout total
    requested_amount = Column(AMOUNT, nullable=False)
    remainder = Column(AMOUNT, default=0, nullable=False)  # kept as platform fee
    reason = Column(String(32), nullable=False, default="withdrawal")
    recipient_address = Column(EncryptedString, nullable=False)
    recipient_chain = Column(String(16), nullable=False, default="zec")
    status = Column(
        SAEnum(PaymentStatus, name="payment_status_enum"),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    entries = relationship(
        "WithdrawalQueueEntry",
        back_populates="payment",
        order_by="WithdrawalQueueEntry.scheduled_for",
    )

    def __repr__(self) -> str:
        return f"<PaymentRecord {self.id} — {self.amount} ZEC ({self.status.value})>"


class WithdrawalQueueEntry(Base):
    """One denomination of a withdrawal, executed independently at scheduled_for."""
    __tablename__ = "withdrawal_queue"
    __table_args__ = (
        Index("idx_withdrawal_queue_due", "status", "scheduled_for"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id = Column(
        Uuid, ForeignKey("payment_records.id", ondelete="CASCADE"), nullable=False
    )
    source_id = Column(Uuid, nullable=False, index=True)
    denomination = Column(AMOUNT, nullable=False)
    asset = Column(String(16), nullable=False, default="zec")
    recipient_address = Column(EncryptedString, nullable=False)
    queued_at = Column(DateTime, default=utcnow, nullable=False)
    scheduled_for = Column(DateTime, nullable=False)
    status = Column(
        SAEnum(WithdrawalStatus, name="withdrawal_status_enum"),
        default=WithdrawalStatus.PENDING,
        nullable=False,
    )
    attempts = Column(Integer, default=0, nullable=False)
    operation_id = Column(String(128), nullable=True)
    tx_id = Column(String(128), nullable=True)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    payment = relationship("PaymentRecord", back_populates="entries")

    def __repr__(self) -> str:
        return f"<WithdrawalQueueEntry {self.denomination} {self.asset} ({self.status.value})>"


class SourcePaymentAddress(Base):
    """Payout address registered by a source."""
    __tablename__ = "source_payment_addresses"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    source_id = Column(Uuid, nullable=False, index=True)
    chain = Column(String(16), nullable=False, default="zec")
    address = Column(EncryptedString, nullable=False)
    is_primary = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<SourcePaymentAddress {self.chain} for {self.source_id}>"


class AuditLog(Base):
    """Immutable audit trail for payment and withdrawal state changes."""
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    action = Column(String(20), nullable=False)  # INSERT, UPDATE
    table_name = Column(String(100), nullable=False)
    record_id = Column(String(64), nullable=False)
    changes = Column(Text, nullable=True)  # JSON: {"field": {"old": ..., "new": ...}}
    snapshot = Column(Text, nullable=True)  # JSON: full row snapshot at time of event
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} {self.table_name} [{self.record_id}]>"
