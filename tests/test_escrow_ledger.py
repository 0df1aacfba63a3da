"""
Tests for the escrow ledger: credits, debits and balance invariants.
"""
import random
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from argus.exceptions import InsufficientBalance
from argus.models import EscrowBalance, EscrowTransaction, ReferenceType, TransactionType
from argus.services.escrow_ledger import EscrowLedger
from argus.services.price_oracle import FixedPriceOracle

D = Decimal


async def _transaction_count(session, source_id) -> int:
    result = await session.execute(
        select(func.count(EscrowTransaction.id)).where(EscrowTransaction.source_id == source_id)
    )
    return result.scalar_one()


async def test_unknown_source_has_zero_balance(session):
    view = await EscrowLedger(session).get_balance(uuid.uuid4())
    assert view.balance == 0
    assert view.total_earned == 0
    assert view.total_withdrawn == 0
    assert view.updated_at is None


async def test_credit_creates_balance_and_transaction(session):
    ledger = EscrowLedger(session)
    source_id = uuid.uuid4()
    bounty_id = uuid.uuid4()

    new_balance = await ledger.credit(source_id, D("2.5"), ReferenceType.BOUNTY, reference_id=bounty_id)
    assert new_balance == D("2.5")

    view = await ledger.get_balance(source_id)
    assert view.balance == D("2.5")
    assert view.total_earned == D("2.5")

    [tx] = await ledger.get_transactions(source_id)
    assert tx.type == TransactionType.CREDIT
    assert tx.amount == D("2.5")
    assert tx.balance_after == D("2.5")
    assert tx.reference_type == ReferenceType.BOUNTY
    assert tx.reference_id == bounty_id


async def test_first_credit_tolerates_a_row_created_concurrently(session_factory):
    source_id = uuid.uuid4()
    async with session_factory() as winner:
        await EscrowLedger(winner).credit(source_id, D("1"), ReferenceType.BOUNTY)
        await winner.commit()

    async with session_factory() as session:
        ledger = EscrowLedger(session)
        # the losing request's insert runs after the winner's row exists
        await ledger._insert_zero_balance(source_id)
        assert await ledger.credit(source_id, D("2"), ReferenceType.BOUNTY) == D("3")
        await session.commit()

        rows = await session.execute(
            select(func.count(EscrowBalance.id)).where(EscrowBalance.source_id == source_id)
        )
        assert rows.scalar_one() == 1
        assert (await ledger.get_balance(source_id)).total_earned == D("3")


async def test_debit_reduces_balance(session):
    ledger = EscrowLedger(session)
    source_id = uuid.uuid4()
    await ledger.credit(source_id, D("10"), ReferenceType.TIP)

    assert await ledger.debit(source_id, D("7.25"), ReferenceType.WITHDRAWAL) == D("2.75")

    view = await ledger.get_balance(source_id)
    assert view.balance == D("2.75")
    assert view.total_earned == D("10")
    assert view.total_withdrawn == D("7.25")


async def test_debit_over_balance_changes_nothing(session):
    ledger = EscrowLedger(session)
    source_id = uuid.uuid4()
    await ledger.credit(source_id, D("1"), ReferenceType.BOUNTY)

    with pytest.raises(InsufficientBalance) as exc:
        await ledger.debit(source_id, D("1.5"), ReferenceType.WITHDRAWAL)
    assert exc.value.available == D("1")
    assert exc.value.requested == D("1.5")

    view = await ledger.get_balance(source_id)
    assert view.balance == D("1")
    assert view.total_withdrawn == 0
    assert await _transaction_count(session, source_id) == 1


async def test_debit_without_balance_row(session):
    source_id = uuid.uuid4()
    with pytest.raises(InsufficientBalance):
        await EscrowLedger(session).debit(source_id, D("0.1"), ReferenceType.WITHDRAWAL)

    result = await session.execute(select(EscrowBalance).where(EscrowBalance.source_id == source_id))
    assert result.scalar_one_or_none() is None


@pytest.mark.parametrize("amount", [D("0"), D("-1")])
async def test_non_positive_amounts_rejected(session, amount):
    ledger = EscrowLedger(session)
    with pytest.raises(ValueError):
        await ledger.credit(uuid.uuid4(), amount, ReferenceType.BOUNTY)
    with pytest.raises(ValueError):
        await ledger.debit(uuid.uuid4(), amount, ReferenceType.WITHDRAWAL)


async def test_random_interleaving_keeps_invariants(session):
    ledger = EscrowLedger(session)
    rng = random.Random(7)
    source_id = uuid.uuid4()
    expected = D("0")
    applied = 0

    for _ in range(60):
        amount = D(rng.randint(1, 500)) / 100
        if rng.random() < 0.5:
            await ledger.credit(source_id, amount, ReferenceType.BOUNTY)
            expected += amount
            applied += 1
        else:
            try:
                await ledger.debit(source_id, amount, ReferenceType.WITHDRAWAL)
            except InsufficientBalance:
                assert amount > expected
            else:
                expected -= amount
                applied += 1

        view = await ledger.get_balance(source_id)
        assert view.balance == expected
        assert view.balance >= 0
        assert view.balance == view.total_earned - view.total_withdrawn

    assert await _transaction_count(session, source_id) == applied


async def test_transactions_pagination(session):
    ledger = EscrowLedger(session)
    source_id = uuid.uuid4()
    for i in range(5):
        await ledger.credit(source_id, D("1"), ReferenceType.TIP, note=f"tip {i}")

    first = await ledger.get_transactions(source_id, limit=2)
    rest = await ledger.get_transactions(source_id, limit=10, offset=2)
    assert len(first) == 2
    assert len(rest) == 3
    assert {tx.note for tx in first + rest} == {f"tip {i}" for i in range(5)}


async def test_transactions_scoped_to_source(session):
    ledger = EscrowLedger(session)
    a, b = uuid.uuid4(), uuid.uuid4()
    await ledger.credit(a, D("1"), ReferenceType.TIP)
    await ledger.credit(b, D("2"), ReferenceType.TIP)

    [tx] = await ledger.get_transactions(a)
    assert tx.source_id == a


async def test_credit_bounty_reward_converts_usd(session):
    ledger = EscrowLedger(session)
    source_id = uuid.uuid4()
    bounty_id = uuid.uuid4()
    oracle = FixedPriceOracle({("zec", "USD"): D("30")})

    balance = await ledger.credit_bounty_reward(source_id, bounty_id, D("75"), oracle)
    assert balance == D("2.5")

    [tx] = await ledger.get_transactions(source_id)
    assert tx.reference_type == ReferenceType.BOUNTY
    assert tx.reference_id == bounty_id
    assert tx.amount == D("2.5")


async def test_price_oracle_truncates_to_zatoshi():
    oracle = FixedPriceOracle({("zec", "USD"): D("30")})
    assert await oracle.convert(D("10"), "zec") == D("0.33333333")
    with pytest.raises(ValueError):
        await oracle.get_price("btc")
