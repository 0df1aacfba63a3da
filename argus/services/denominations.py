"""
Argus Escrow — Fixed Denomination Calculator
Splits payouts into standard ZEC denominations so that no payout carries a
unique, fingerprintable amount. Pure functions, no I/O.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from itertools import combinations_with_replacement

from argus.exceptions import AmountTooSmall

ZEC_DENOMINATIONS: tuple[Decimal, ...] = tuple(
    Decimal(d) for d in ("0.1", "0.25", "0.5", "1", "2.5", "5", "10", "25")
)
MIN_DENOMINATION = min(ZEC_DENOMINATIONS)

DENOMINATION_EPSILON = Decimal("0.0001")
DEFAULT_TOLERANCE = Decimal("0.01")

# Units of a denomination the fallback search may give back to smaller ones.
MAX_GIVE_BACK = 2

_DESCENDING = tuple(sorted(ZEC_DENOMINATIONS, reverse=True))


@dataclass(frozen=True)
class DenominationBreakdown:
    """Result of splitting an amount into denominations."""

    amount: Decimal
    denominations: list[Decimal] = field(default_factory=list)
    total: Decimal = Decimal("0")
    remainder: Decimal = Decimal("0")
    within_tolerance: bool = False


def to_decimal(value) -> Decimal:
    """Convert floats via their repr so 0.1 stays 0.1."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _fit(remaining: Decimal, denomination: Decimal) -> int:
    """How many units of ``denomination`` fit into ``remaining`` (epsilon tolerant)."""
    if remaining < denomination - DENOMINATION_EPSILON:
        return 0
    return int((remaining + DENOMINATION_EPSILON) // denomination)


def _greedy(amount: Decimal) -> list[Decimal]:
    result: list[Decimal] = []
    remaining = amount
    for denom in _DESCENDING:
        count = _fit(remaining, denom)
        result.extend([denom] * count)
        remaining -= denom * count
    return result


def _best_fill(amount: Decimal) -> list[Decimal]:
    """
    Largest achievable total <= amount, searched largest-first.

    Each denomination tries its greedy count, then up to MAX_GIVE_BACK fewer
    units. The first leaf visited is the plain greedy fill, and ties keep the
    earliest leaf, so the result only differs from greedy when it pays more.
    """
    best: list[Decimal] = []
    best_total = Decimal("-1")
    picked: list[Decimal] = []

    def visit(index: int, remaining: Decimal) -> bool:
        nonlocal best, best_total
        if index == len(_DESCENDING) or remaining < DENOMINATION_EPSILON:
            total = amount - remaining
            if total > best_total:
                best, best_total = list(picked), total
            return remaining < DENOMINATION_EPSILON

        denom = _DESCENDING[index]
        fit = _fit(remaining, denom)
        for count in range(fit, max(fit - MAX_GIVE_BACK, 0) - 1, -1):
            picked.extend([denom] * count)
            exact = visit(index + 1, remaining - denom * count)
            del picked[len(picked) - count:]
            if exact:
                return True
        return False

    visit(0, amount)
    return best


def split_into_denominations(amount, tolerance=DEFAULT_TOLERANCE) -> list[Decimal]:
    """
    Break ``amount`` into standard denominations, largest first.

    The sum never exceeds ``amount`` (beyond DENOMINATION_EPSILON). Greedy
    largest-first is used whenever its leftover stays under the tolerance;
    otherwise a bounded search recovers the better combination (0.3 pays
    0.1 + 0.1 + 0.1 rather than 0.25).
    """
    amount = to_decimal(amount)
    tolerance = to_decimal(tolerance)
    if amount < 0:
        raise ValueError("amount must be >= 0")
    if amount < MIN_DENOMINATION - DENOMINATION_EPSILON:
        return []

    greedy = _greedy(amount)
    remainder = amount - sum(greedy, Decimal("0"))
    if remainder < max(DENOMINATION_EPSILON, tolerance * amount):
        return greedy
    return _best_fill(amount)


def calculate_denominations(amount, tolerance=DEFAULT_TOLERANCE) -> DenominationBreakdown:
    """Denominations, achieved total and remainder (kept as platform fee)."""
    amount = to_decimal(amount)
    tolerance = to_decimal(tolerance)
    denominations = split_into_denominations(amount, tolerance)
    total = sum(denominations, Decimal("0"))
    return DenominationBreakdown(
        amount=amount,
        denominations=denominations,
        total=total,
        remainder=amount - total,
        within_tolerance=bool(denominations) and total >= amount * (1 - tolerance),
    )


def validate_payout_amount(amount, tolerance=DEFAULT_TOLERANCE) -> DenominationBreakdown:
    """
    Breakdown for ``amount``, or AmountTooSmall when it cannot be paid.

    Rejects amounts below the smallest denomination and amounts whose
    remainder would exceed ``tolerance`` of the request.
    """
    breakdown = calculate_denominations(amount, tolerance)
    if not breakdown.denominations:
        raise AmountTooSmall(
            f"Amount {breakdown.amount} ZEC is below minimum denomination "
            f"({MIN_DENOMINATION} ZEC)"
        )
    if not breakdown.within_tolerance:
        raise AmountTooSmall(
            f"Amount cannot be fully represented in fixed denominations. "
            f"Maximum: {breakdown.total} ZEC"
        )
    return breakdown


def valid_payout_amounts(max_parts: int = 3, limit=Decimal("100")) -> list[Decimal]:
    """Amounts payable exactly with up to ``max_parts`` denominations, ascending."""
    limit = to_decimal(limit)
    amounts = set()
    for parts in range(1, max_parts + 1):
        for combo in combinations_with_replacement(ZEC_DENOMINATIONS, parts):
            total = sum(combo, Decimal("0"))
            if total <= limit:
                amounts.add(total)
    return sorted(amounts)
