import asyncio
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from r6cash.errors import Conflict, InsufficientFunds, InvalidInput, NotFound
from r6cash.ledger import (
    apply_ledger_entry,
    from_cents,
    ledger_drift,
    list_transactions,
    release_funds,
    reserve_funds,
    to_cents,
    to_money,
)
from r6cash.models import Game, Transaction, TransactionType


def test_to_money_rounds_half_up():
    assert to_money("1.005") == Decimal("1.01")
    assert to_money(2) == Decimal("2.00")
    assert to_money(Decimal("0.725")) == Decimal("0.73")


@pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", float("inf")])
def test_to_money_rejects_non_finite(value):
    with pytest.raises(InvalidInput):
        to_money(value)


def test_cents_conversion():
    assert to_cents(Decimal("23.97")) == 2397
    assert from_cents(2500) == Decimal("25.00")


async def test_credit_and_debit_record_balances(database, create_user, get_balance):
    user_id = await create_user("50")

    async with database.transaction() as session:
        entry = await apply_ledger_entry(session, user_id, Decimal("20"), TransactionType.GAME_STAKE)
        assert entry.amount == Decimal("-20.00")
        assert entry.balance_before == Decimal("50.00")
        assert entry.balance_after == Decimal("30.00")

    balance, reserved = await get_balance(user_id)
    assert balance == Decimal("30.00")
    assert reserved == Decimal("0")

    async with database.session() as session:
        rows = await list_transactions(session, user_id)
    assert [r.type for r in rows].count(TransactionType.GAME_STAKE) == 1
    assert sum(r.amount for r in rows) == balance


@pytest.mark.parametrize("amount", ["0", "-5"])
async def test_non_positive_amount_rejected(database, create_user, amount):
    user_id = await create_user("10")
    with pytest.raises(InvalidInput):
        async with database.transaction() as session:
            await apply_ledger_entry(session, user_id, Decimal(amount), TransactionType.DEPOSIT)


async def test_unknown_profile_not_found(database):
    with pytest.raises(NotFound):
        async with database.transaction() as session:
            await apply_ledger_entry(session, uuid.uuid4(), Decimal("5"), TransactionType.DEPOSIT)


async def test_overdraft_writes_nothing(database, create_user, get_balance):
    user_id = await create_user("10")

    with pytest.raises(InsufficientFunds):
        async with database.transaction() as session:
            await apply_ledger_entry(session, user_id, Decimal("20"), TransactionType.GAME_STAKE)

    balance, _ = await get_balance(user_id)
    assert balance == Decimal("10.00")
    async with database.session() as session:
        count = await session.scalar(
            select(func.count(Transaction.id)).where(Transaction.user_id == user_id)
        )
    assert count == 1  # sólo el depósito inicial


async def test_reserved_funds_are_not_spendable(database, create_user):
    user_id = await create_user("30")
    async with database.transaction() as session:
        await reserve_funds(session, user_id, Decimal("25"))

    with pytest.raises(InsufficientFunds):
        async with database.transaction() as session:
            await apply_ledger_entry(session, user_id, Decimal("10"), TransactionType.GAME_STAKE)


async def test_releasing_more_than_reserved_is_rejected(database, create_user, get_balance):
    user_id = await create_user("30")
    async with database.transaction() as session:
        await reserve_funds(session, user_id, Decimal("10"))

    with pytest.raises(Conflict):
        async with database.transaction() as session:
            await release_funds(session, user_id, Decimal("15"))
    with pytest.raises(Conflict):
        async with database.transaction() as session:
            await apply_ledger_entry(
                session, user_id, Decimal("15"), TransactionType.WITHDRAWAL, release_reserved=Decimal("15")
            )

    assert await get_balance(user_id) == (Decimal("30.00"), Decimal("10.00"))


async def test_concurrent_debits_never_overdraw(services, database, create_user, get_balance):
    user_id = await create_user("100")

    results = await asyncio.gather(
        *(services.games.create(user_id, "1v1", "20") for _ in range(10)),
        return_exceptions=True,
    )

    created = [r for r in results if isinstance(r, dict)]
    rejected = [r for r in results if isinstance(r, InsufficientFunds)]
    assert len(created) == 5
    assert len(rejected) == 5

    balance, _ = await get_balance(user_id)
    assert balance == Decimal("0.00")
    async with database.session() as session:
        games = await session.scalar(select(func.count(Game.id)))
        assert games == 5
        assert await ledger_drift(session) == []


async def test_ledger_rows_are_immutable(database, create_user):
    user_id = await create_user("10")

    with pytest.raises(RuntimeError):
        async with database.transaction() as session:
            row = (await session.execute(
                select(Transaction).where(Transaction.user_id == user_id)
            )).scalar_one()
            row.description = "edited"
            await session.flush()

    with pytest.raises(RuntimeError):
        async with database.transaction() as session:
            row = (await session.execute(
                select(Transaction).where(Transaction.user_id == user_id)
            )).scalar_one()
            await session.delete(row)
            await session.flush()
