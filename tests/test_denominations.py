"""
Tests for the fixed denomination calculator.
"""
import random
from decimal import Decimal

import pytest

from argus.exceptions import AmountTooSmall
from argus.services.denominations import (
    ZEC_DENOMINATIONS,
    calculate_denominations,
    split_into_denominations,
    valid_payout_amounts,
    validate_payout_amount,
)

D = Decimal


class TestSplitIntoDenominations:
    def test_greedy_largest_first(self):
        assert split_into_denominations(D("7.3")) == [D("5"), D("1"), D("1"), D("0.25")]

    def test_exact_amount(self):
        assert split_into_denominations(D("13.35")) == [D("10"), D("2.5"), D("0.5"), D("0.25"), D("0.1")]

    def test_single_denomination(self):
        assert split_into_denominations(D("25")) == [D("25")]

    def test_large_amount_repeats_top_denomination(self):
        assert split_into_denominations(D("60")) == [D("25"), D("25"), D("10")]

    def test_below_minimum_is_empty(self):
        assert split_into_denominations(D("0.05")) == []
        assert split_into_denominations(D("0")) == []

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            split_into_denominations(D("-1"))

    def test_float_input(self):
        assert split_into_denominations(0.3) == split_into_denominations(D("0.3"))

    def test_fallback_when_greedy_leaves_too_much(self):
        # greedy would pay 0.25 and leave 0.05 (17%)
        result = split_into_denominations(D("0.3"))
        assert sum(result) == D("0.3")
        assert all(d in ZEC_DENOMINATIONS for d in result)

    def test_fallback_keeps_largest_first_order(self):
        result = split_into_denominations(D("0.8"))
        assert sum(result) == D("0.8")
        assert result == sorted(result, reverse=True)

    def test_deterministic(self):
        assert split_into_denominations(D("42.85")) == split_into_denominations(D("42.85"))


class TestCalculateDenominations:
    def test_breakdown(self):
        breakdown = calculate_denominations(D("7.3"))
        assert breakdown.total == D("7.25")
        assert breakdown.remainder == D("0.05")
        assert breakdown.within_tolerance is True

    def test_sum_never_exceeds_amount(self):
        rng = random.Random(1234)
        for _ in range(300):
            amount = D(rng.randint(10, 100_000)) / 100
            breakdown = calculate_denominations(amount)
            assert breakdown.total <= amount
            assert breakdown.remainder == amount - breakdown.total
            assert all(d in ZEC_DENOMINATIONS for d in breakdown.denominations)

    def test_sums_of_denominations_stay_within_tolerance(self):
        rng = random.Random(42)
        for _ in range(300):
            parts = [rng.choice(ZEC_DENOMINATIONS) for _ in range(rng.randint(1, 4))]
            amount = sum(parts, D("0"))
            breakdown = calculate_denominations(amount)
            assert breakdown.total <= amount
            assert amount - breakdown.total <= amount * D("0.01"), amount
            assert breakdown.within_tolerance

    def test_below_minimum(self):
        breakdown = calculate_denominations(D("0.05"))
        assert breakdown.denominations == []
        assert breakdown.total == 0
        assert breakdown.within_tolerance is False


class TestValidatePayoutAmount:
    def test_valid(self):
        breakdown = validate_payout_amount(D("7.3"))
        assert breakdown.denominations == [D("5"), D("1"), D("1"), D("0.25")]

    def test_below_minimum(self):
        with pytest.raises(AmountTooSmall) as exc:
            validate_payout_amount(D("0.05"))
        assert "below minimum denomination" in exc.value.message
        assert exc.value.code == "AMOUNT_TOO_SMALL"

    def test_remainder_above_tolerance(self):
        # 0.19 pays at most 0.1
        with pytest.raises(AmountTooSmall) as exc:
            validate_payout_amount(D("0.19"))
        assert "Maximum: 0.1" in exc.value.message

    def test_custom_tolerance(self):
        assert validate_payout_amount(D("0.19"), tolerance=D("0.5")).total == D("0.1")


def test_valid_payout_amounts():
    amounts = valid_payout_amounts()
    assert amounts == sorted(amounts)
    assert D("0.1") in amounts
    assert D("0.35") in amounts
    assert D("75") in amounts
    assert D("0.15") not in amounts
    assert max(amounts) <= D("100")
    assert all(calculate_denominations(a).total == a for a in amounts)
