"""
Argus Escrow — Escrow & Payout Pydantic Schemas
Request/response models for the source-facing and internal escrow endpoints.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from argus.models import ReferenceType


# ═══════════════════════════════════════════════════════
#  Requests
# ═══════════════════════════════════════════════════════


class WalletRegisterRequest(BaseModel):
    """Register the shielded address a source wants to be paid at."""

    model_config = {"extra": "forbid"}

    z_address: str = Field(..., min_length=10, max_length=512)

    @field_validator("z_address")
    @classmethod
    def strip_address(cls, v: str) -> str:
        return v.strip()


class WithdrawalRequest(BaseModel):
    """Input for a withdrawal; falls back to the primary registered address."""

    model_config = {"extra": "forbid"}

    amount: Decimal = Field(..., gt=0, description="Requested amount in ZEC")
    z_address: Optional[str] = Field(None, max_length=512)

    @field_validator("z_address")
    @classmethod
    def strip_address(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return v.strip() or None


class CreditRequest(BaseModel):
    """Internal credit, e.g. a fulfilled bounty. Exactly one of amount / amount_usd."""

    model_config = {"extra": "forbid"}

    source_id: UUID
    amount: Optional[Decimal] = Field(None, gt=0, description="Amount in ZEC")
    amount_usd: Optional[Decimal] = Field(None, gt=0, description="Amount in USD, converted at the oracle price")
    reference_type: ReferenceType = ReferenceType.BOUNTY
    reference_id: Optional[UUID] = None
    note: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def one_amount(self):
        if (self.amount is None) == (self.amount_usd is None):
            raise ValueError("Provide exactly one of amount or amount_usd")
        return self


# ═══════════════════════════════════════════════════════
#  Responses
# ═══════════════════════════════════════════════════════


class WalletRegisterResponse(BaseModel):
    z_address: str
    address_type: str
    is_primary: bool
    created: bool
    warning: Optional[str] = None


class InFlightWithdrawal(BaseModel):
    payment_id: str
    amount: float
    status: str
    completed: int
    total: int


class BalanceResponse(BaseModel):
    source_id: str
    balance: float
    total_earned: float
    total_withdrawn: float
    currency: str = "ZEC"
    z_address: Optional[str] = None
    pending_withdrawal: Optional[InFlightWithdrawal] = None


class TransactionItem(BaseModel):
    id: str
    type: str
    amount: float
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    balance_after: float
    note: Optional[str] = None
    created_at: datetime


class TransactionListResponse(BaseModel):
    transactions: list[TransactionItem]
    limit: int
    offset: int


class DenominationQuoteResponse(BaseModel):
    """Preview of how an amount would be split; nothing is reserved."""

    amount: float
    denominations: list[float]
    total: float
    remainder: float
    within_tolerance: bool


class ScheduledDenominationOut(BaseModel):
    entry_id: str
    denomination: float
    scheduled_for: datetime


class WithdrawalResponse(BaseModel):
    payment_id: str
    requested_amount: float
    total: float
    remainder: float
    denominations: list[float]
    schedule: list[ScheduledDenominationOut]
    message: str


class WithdrawalEntryOut(BaseModel):
    entry_id: str
    denomination: float
    status: str
    scheduled_for: datetime
    attempts: int
    tx_id: Optional[str] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None


class WithdrawalStatusResponse(BaseModel):
    payment_id: str
    status: str
    amount: float
    requested_amount: float
    created_at: datetime
    completed_count: int
    failed_count: int
    pending_count: int
    processing_count: int
    completed_amount: float
    entries: list[WithdrawalEntryOut]


class CreditResponse(BaseModel):
    source_id: str
    amount: float
    balance: float
    currency: str = "ZEC"


class PayoutStatusResponse(BaseModel):
    chain_ready: bool
    escrow_balance: float
    pending_count: int
    due_count: int
    processing_count: int
    failed_count: int
    worker_running: bool


class PayoutRunResponse(BaseModel):
    processed: int
    failed: int
    errors: list[str]
    skipped_reason: Optional[str] = None


class RetryEntryResponse(BaseModel):
    entry_id: str
    status: str
    scheduled_for: datetime
    attempts: int


class EscrowWalletResponse(BaseModel):
    """Escrow funds split by where they sit on chain."""

    asset: str
    deposit_address: Optional[str] = None
    pool_address: Optional[str] = None
    transparent: float
    shielded: float
    available: float
    pending: float
    total: float


class ShieldResponse(BaseModel):
    shielded: bool
    operation_id: Optional[str] = None
    amount: float = 0
