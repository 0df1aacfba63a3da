"""
Argus Escrow — Escrow & Payout Router
Source-facing endpoints (JWT bearer):
  - Balance, ledger history, payout address registration
  - Denomination quotes and withdrawal requests / status
Internal endpoints (X-Internal-Key):
  - Credits from the bounty service
  - Payout worker status, manual trigger and failed-entry retry
  - Escrow wallet balances and shielding of incoming deposits
"""
import logging
import uuid
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from argus.auth import get_current_source, require_internal_key
from argus.config import get_settings
from argus.database import get_db
from argus.exceptions import InvalidAddress
from argus.middleware.rate_limit import (
    RATE_LIMIT_READ,
    RATE_LIMIT_WITHDRAW,
    RATE_LIMIT_WRITE,
    limiter,
)
from argus.models import WithdrawalQueueEntry, WithdrawalStatus
from argus.schemas.escrow import (
    BalanceResponse,
    CreditRequest,
    CreditResponse,
    DenominationQuoteResponse,
    EscrowWalletResponse,
    InFlightWithdrawal,
    PayoutRunResponse,
    PayoutStatusResponse,
    RetryEntryResponse,
    ScheduledDenominationOut,
    ShieldResponse,
    TransactionItem,
    TransactionListResponse,
    WalletRegisterRequest,
    WalletRegisterResponse,
    WithdrawalEntryOut,
    WithdrawalRequest,
    WithdrawalResponse,
    WithdrawalStatusResponse,
)
from argus.services.denominations import calculate_denominations
from argus.services.escrow_ledger import EscrowLedger
from argus.services.payout_backend import PayoutBackend
from argus.services.payout_worker import PayoutWorker
from argus.services.price_oracle import PriceOracle
from argus.services.source_registry import SourceRegistry
from argus.services.withdrawal_scheduler import WithdrawalScheduler, WithdrawalStatusView
from argus.services.zcash import validate_zcash_address

logger = logging.getLogger("argus.escrow")

router = APIRouter(prefix="/api/escrow", tags=["Escrow"])


# ── Application-scoped services (set up in the lifespan) ──

def get_payout_backend(request: Request) -> PayoutBackend:
    return request.app.state.payout_backend


def get_payout_worker(request: Request) -> PayoutWorker:
    return request.app.state.payout_worker


def get_price_oracle(request: Request) -> PriceOracle:
    return request.app.state.price_oracle


def _entry_out(entry: WithdrawalQueueEntry) -> WithdrawalEntryOut:
    return WithdrawalEntryOut(
        entry_id=str(entry.id),
        denomination=float(entry.denomination),
        status=entry.status.value,
        scheduled_for=entry.scheduled_for,
        attempts=entry.attempts or 0,
        tx_id=entry.tx_id,
        error_message=entry.error_message,
        completed_at=entry.completed_at,
    )


def _status_out(view: WithdrawalStatusView) -> WithdrawalStatusResponse:
    payment = view.payment
    return WithdrawalStatusResponse(
        payment_id=str(payment.id),
        status=payment.status.value,
        amount=float(payment.amount),
        requested_amount=float(payment.requested_amount),
        created_at=payment.created_at,
        completed_count=view.count(WithdrawalStatus.COMPLETED),
        failed_count=view.count(WithdrawalStatus.FAILED),
        pending_count=view.count(WithdrawalStatus.PENDING),
        processing_count=view.count(WithdrawalStatus.PROCESSING),
        completed_amount=float(view.completed_amount),
        entries=[_entry_out(e) for e in view.entries],
    )


# ═══════════════════════════════════════════════════════
#  GET /api/escrow/balance
# ═══════════════════════════════════════════════════════

@router.get("/balance", response_model=BalanceResponse)
@limiter.limit(RATE_LIMIT_READ)
async def get_balance(
    request: Request,
    source_id: uuid.UUID = Depends(get_current_source),
    db: AsyncSession = Depends(get_db),
    backend: PayoutBackend = Depends(get_payout_backend),
):
    """Escrow balance, payout address and any withdrawal still in flight."""
    view = await EscrowLedger(db).get_balance(source_id)
    address = await SourceRegistry(db, backend).resolve_payout_address(source_id)
    in_flight = await WithdrawalScheduler(db, backend).get_in_flight_withdrawal(source_id)

    pending = None
    if in_flight is not None:
        pending = InFlightWithdrawal(
            payment_id=str(in_flight.payment.id),
            amount=float(in_flight.payment.amount),
            status=in_flight.payment.status.value,
            completed=in_flight.count(WithdrawalStatus.COMPLETED),
            total=len(in_flight.entries),
        )

    return BalanceResponse(
        source_id=str(source_id),
        balance=float(view.balance),
        total_earned=float(view.total_earned),
        total_withdrawn=float(view.total_withdrawn),
        z_address=address,
        pending_withdrawal=pending,
    )


# ═══════════════════════════════════════════════════════
#  GET /api/escrow/transactions
# ═══════════════════════════════════════════════════════

@router.get("/transactions", response_model=TransactionListResponse)
@limiter.limit(RATE_LIMIT_READ)
async def list_transactions(
    request: Request,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    source_id: uuid.UUID = Depends(get_current_source),
    db: AsyncSession = Depends(get_db),
):
    """Ledger history, newest first."""
    rows = await EscrowLedger(db).get_transactions(source_id, limit=limit, offset=offset)
    return TransactionListResponse(
        transactions=[
            TransactionItem(
                id=str(tx.id),
                type=tx.type.value,
                amount=float(tx.amount),
                reference_type=tx.reference_type.value if tx.reference_type else None,
                reference_id=str(tx.reference_id) if tx.reference_id else None,
                balance_after=float(tx.balance_after),
                note=tx.note,
                created_at=tx.created_at,
            )
            for tx in rows
        ],
        limit=limit,
        offset=offset,
    )


# ═══════════════════════════════════════════════════════
#  POST /api/escrow/wallet
# ═══════════════════════════════════════════════════════

@router.post("/wallet", response_model=WalletRegisterResponse)
@limiter.limit(RATE_LIMIT_WRITE)
async def register_wallet(
    request: Request,
    payload: WalletRegisterRequest,
    source_id: uuid.UUID = Depends(get_current_source),
    db: AsyncSession = Depends(get_db),
    backend: PayoutBackend = Depends(get_payout_backend),
):
    """Register (or re-select) the shielded address payouts go to."""
    record, created = await SourceRegistry(db, backend).register_address(source_id, payload.z_address)
    check = validate_zcash_address(record.address)
    return WalletRegisterResponse(
        z_address=record.address,
        address_type=check.type,
        is_primary=record.is_primary,
        created=created,
        warning=check.warning,
    )


# ═══════════════════════════════════════════════════════
#  GET /api/escrow/denominations
# ═══════════════════════════════════════════════════════

@router.get("/denominations", response_model=DenominationQuoteResponse)
@limiter.limit(RATE_LIMIT_READ)
async def quote_denominations(
    request: Request,
    amount: Decimal = Query(..., gt=0),
    source_id: uuid.UUID = Depends(get_current_source),
):
    """Preview the split of ``amount``. Nothing is reserved or debited."""
    breakdown = calculate_denominations(amount, get_settings().DENOMINATION_TOLERANCE)
    return DenominationQuoteResponse(
        amount=float(breakdown.amount),
        denominations=[float(d) for d in breakdown.denominations],
        total=float(breakdown.total),
        remainder=float(breakdown.remainder),
        within_tolerance=breakdown.within_tolerance,
    )


# ═══════════════════════════════════════════════════════
#  POST /api/escrow/withdraw
# ═══════════════════════════════════════════════════════

@router.post("/withdraw", response_model=WithdrawalResponse)
@limiter.limit(RATE_LIMIT_WITHDRAW)
async def request_withdrawal(
    request: Request,
    payload: WithdrawalRequest,
    source_id: uuid.UUID = Depends(get_current_source),
    db: AsyncSession = Depends(get_db),
    backend: PayoutBackend = Depends(get_payout_backend),
):
    """
    Queue a withdrawal as independently scheduled denominations.

    A supplied address becomes the source's primary payout address;
    without one, the primary registered address is used.
    """
    registry = SourceRegistry(db, backend)
    address = payload.z_address
    if address:
        await registry.register_address(source_id, address)
    else:
        address = await registry.resolve_payout_address(source_id)
        if not address:
            raise InvalidAddress("No payout address registered. Provide a shielded z-address.")

    plan = await WithdrawalScheduler(db, backend).request_withdrawal(source_id, payload.amount, address)

    settings = get_settings()
    return WithdrawalResponse(
        payment_id=str(plan.payment_id),
        requested_amount=float(plan.requested_amount),
        total=float(plan.total),
        remainder=float(plan.remainder),
        denominations=[float(d) for d in plan.denominations],
        schedule=[
            ScheduledDenominationOut(
                entry_id=str(s.entry_id),
                denomination=float(s.denomination),
                scheduled_for=s.scheduled_for,
            )
            for s in plan.schedule
        ],
        message=(
            f"Withdrawal of {plan.total} ZEC scheduled as {len(plan.denominations)} "
            f"payments over the next {settings.WITHDRAWAL_DELAY_MIN_HOURS:g}–"
            f"{settings.WITHDRAWAL_DELAY_MAX_HOURS:g} hours."
        ),
    )


# ═══════════════════════════════════════════════════════
#  GET /api/escrow/withdraw/{payment_id}
# ═══════════════════════════════════════════════════════

@router.get("/withdraw/{payment_id}", response_model=WithdrawalStatusResponse)
@limiter.limit(RATE_LIMIT_READ)
async def get_withdrawal_status(
    request: Request,
    payment_id: uuid.UUID,
    source_id: uuid.UUID = Depends(get_current_source),
    db: AsyncSession = Depends(get_db),
    backend: PayoutBackend = Depends(get_payout_backend),
):
    """Status of one withdrawal with its per-denomination breakdown."""
    view = await WithdrawalScheduler(db, backend).get_withdrawal_status(payment_id, source_id=source_id)
    return _status_out(view)


# ═══════════════════════════════════════════════════════
#  POST /api/escrow/credit  (internal)
# ═══════════════════════════════════════════════════════

@router.post(
    "/credit",
    response_model=CreditResponse,
    dependencies=[Depends(require_internal_key)],
)
async def credit_source(
    payload: CreditRequest,
    db: AsyncSession = Depends(get_db),
    backend: PayoutBackend = Depends(get_payout_backend),
    oracle: PriceOracle = Depends(get_price_oracle),
):
    """Credit a source's escrow, in ZEC or in USD at the oracle price."""
    amount = payload.amount
    note = payload.note
    if amount is None:
        amount = await oracle.convert(payload.amount_usd, backend.asset)
        note = note or f"${payload.amount_usd} at oracle price"
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Converted amount rounds to zero.")

    balance = await EscrowLedger(db).credit(
        payload.source_id,
        amount,
        payload.reference_type,
        reference_id=payload.reference_id,
        note=note,
    )
    return CreditResponse(
        source_id=str(payload.source_id),
        amount=float(amount),
        balance=float(balance),
    )


# ═══════════════════════════════════════════════════════
#  ADMIN  (internal)
# ═══════════════════════════════════════════════════════

@router.get(
    "/admin/status",
    response_model=PayoutStatusResponse,
    dependencies=[Depends(require_internal_key)],
)
async def payout_status(worker: PayoutWorker = Depends(get_payout_worker)):
    """Node readiness, escrow pool balance and queue depth."""
    status = await worker.get_payout_status()
    return PayoutStatusResponse(
        chain_ready=status.chain_ready,
        escrow_balance=float(status.escrow_balance),
        pending_count=status.pending_count,
        due_count=status.due_count,
        processing_count=status.processing_count,
        failed_count=status.failed_count,
        worker_running=worker.is_running,
    )


@router.post(
    "/admin/process",
    response_model=PayoutRunResponse,
    dependencies=[Depends(require_internal_key)],
)
async def trigger_payouts(worker: PayoutWorker = Depends(get_payout_worker)):
    """Run one payout cycle now."""
    result = await worker.process_withdrawals()
    logger.info(
        "Manual payout run: %d processed, %d failed, skipped=%s",
        result.processed, result.failed, result.skipped_reason,
    )
    return PayoutRunResponse(
        processed=result.processed,
        failed=result.failed,
        errors=result.errors,
        skipped_reason=result.skipped_reason,
    )


@router.post(
    "/admin/withdrawals/{entry_id}/retry",
    response_model=RetryEntryResponse,
    dependencies=[Depends(require_internal_key)],
)
async def retry_withdrawal_entry(
    entry_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    backend: PayoutBackend = Depends(get_payout_backend),
):
    """Put a failed entry back in the queue with a fresh random delay."""
    entry = await WithdrawalScheduler(db, backend).retry_failed_entry(entry_id)
    return RetryEntryResponse(
        entry_id=str(entry.id),
        status=entry.status.value,
        scheduled_for=entry.scheduled_for,
        attempts=entry.attempts,
    )


@router.get(
    "/admin/wallet",
    response_model=EscrowWalletResponse,
    dependencies=[Depends(require_internal_key)],
)
async def escrow_wallet(backend: PayoutBackend = Depends(get_payout_backend)):
    """Escrow funds on the deposit address vs. the shielded payout pool."""
    balance = await backend.get_balance()
    return EscrowWalletResponse(
        asset=backend.asset,
        deposit_address=backend.deposit_address,
        pool_address=backend.pool_address,
        transparent=float(balance.transparent),
        shielded=float(balance.shielded),
        available=float(balance.available),
        pending=float(balance.pending),
        total=float(balance.total),
    )


@router.post(
    "/admin/shield",
    response_model=ShieldResponse,
    dependencies=[Depends(require_internal_key)],
)
async def shield_deposits(backend: PayoutBackend = Depends(get_payout_backend)):
    """Sweep deposits into the shielded pool so they can fund payouts."""
    shielded = await backend.shield_incoming()
    if shielded is None:
        return ShieldResponse(shielded=False)
    logger.info("Shielding %s %s, operation %s", shielded.amount, backend.asset.upper(), shielded.operation_id)
    return ShieldResponse(
        shielded=True,
        operation_id=shielded.operation_id,
        amount=float(shielded.amount),
    )
