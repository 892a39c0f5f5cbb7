import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from r6cash.errors import Conflict, InsufficientFunds, InvalidInput, NotFound
from r6cash.ledger import ledger_drift
from r6cash.models import AuditLog, Transaction, TransactionType, WithdrawalRequest, WithdrawalStatus
from r6cash.withdrawals import validate_payment_details

BANK = {"account_number": "000123456789", "routing_number": "021000021"}
PAYPAL = {"email": "player@example.com"}


async def _withdrawal_rows(database):
    async with database.session() as session:
        return await session.scalar(select(func.count(WithdrawalRequest.id)))


async def test_request_below_minimum_rejected(services, database, create_user):
    user_id = await create_user("100")

    with pytest.raises(InvalidInput):
        await services.withdrawals.request(user_id, "15", "bank_transfer", BANK)
    assert await _withdrawal_rows(database) == 0


async def test_request_reserves_funds(services, database, create_user, get_balance):
    user_id = await create_user("100")

    withdrawal = await services.withdrawals.request(user_id, "60", "paypal", PAYPAL, ip_address="10.0.0.1")
    assert withdrawal["status"] == "pending"
    assert withdrawal["funds_reserved"] is True
    assert withdrawal["amount"] == Decimal("60.00")
    assert await get_balance(user_id) == (Decimal("100.00"), Decimal("60.00"))

    with pytest.raises(InsufficientFunds):
        await services.games.create(user_id, "1v1", "50")
    with pytest.raises(InsufficientFunds):
        await services.withdrawals.request(user_id, "50", "paypal", PAYPAL)

    assert await _withdrawal_rows(database) == 1
    async with database.session() as session:
        audit = (await session.execute(select(AuditLog))).scalar_one()
    assert audit.action == "WITHDRAWAL_REQUESTED"
    assert audit.ip_address == "10.0.0.1"


async def test_request_over_balance_rejected(services, database, create_user):
    user_id = await create_user("30")
    with pytest.raises(InsufficientFunds):
        await services.withdrawals.request(user_id, "31", "bank_transfer", BANK)
    assert await _withdrawal_rows(database) == 0


async def test_approve_then_process_debits_once(services, database, create_user, get_balance):
    user_id = await create_user("100")
    admin_id = await create_user()
    withdrawal = await services.withdrawals.request(user_id, "60", "bank_transfer", BANK)

    approved = await services.withdrawals.admin_transition(withdrawal["id"], "approve", admin_id, notes="ok")
    assert approved["status"] == "approved"
    assert approved["processed_by"] == admin_id
    assert await get_balance(user_id) == (Decimal("100.00"), Decimal("60.00"))

    processed = await services.withdrawals.admin_transition(withdrawal["id"], "process", admin_id)
    assert processed["status"] == "processed"
    assert processed["transaction_id"] is not None
    assert processed["processed_at"] is not None
    assert processed["admin_notes"] == "ok"
    assert await get_balance(user_id) == (Decimal("40.00"), Decimal("0.00"))

    with pytest.raises(Conflict):
        await services.withdrawals.admin_transition(withdrawal["id"], "process", admin_id)
    assert await get_balance(user_id) == (Decimal("40.00"), Decimal("0.00"))

    async with database.session() as session:
        debits = (await session.execute(
            select(Transaction).where(Transaction.type == TransactionType.WITHDRAWAL)
        )).scalars().all()
        assert len(debits) == 1
        assert debits[0].amount == Decimal("-60.00")
        assert debits[0].external_ref == str(withdrawal["id"])
        actions = set((await session.execute(select(AuditLog.action))).scalars().all())
        assert {"WITHDRAWAL_REQUESTED", "WITHDRAWAL_APPROVED", "WITHDRAWAL_PROCESSED"} <= actions
        assert await ledger_drift(session) == []


async def test_reject_releases_reservation(services, create_user, get_balance):
    user_id = await create_user("50")
    admin_id = await create_user()
    withdrawal = await services.withdrawals.request(user_id, "50", "paypal", PAYPAL)

    rejected = await services.withdrawals.admin_transition(
        withdrawal["id"], "reject", admin_id, notes="identity not verified"
    )
    assert rejected["status"] == "rejected"
    assert await get_balance(user_id) == (Decimal("50.00"), Decimal("0.00"))

    with pytest.raises(Conflict):
        await services.withdrawals.admin_transition(withdrawal["id"], "reject", admin_id)
    with pytest.raises(Conflict):
        await services.withdrawals.admin_transition(withdrawal["id"], "process", admin_id)
    assert await get_balance(user_id) == (Decimal("50.00"), Decimal("0.00"))


async def test_pending_request_cannot_be_processed(services, create_user):
    user_id = await create_user("50")
    admin_id = await create_user()
    withdrawal = await services.withdrawals.request(user_id, "20", "paypal", PAYPAL)

    with pytest.raises(Conflict):
        await services.withdrawals.admin_transition(withdrawal["id"], "process", admin_id)


async def test_transition_errors(services, create_user):
    user_id = await create_user("50")
    admin_id = await create_user()
    withdrawal = await services.withdrawals.request(user_id, "20", "paypal", PAYPAL)

    with pytest.raises(InvalidInput):
        await services.withdrawals.admin_transition(withdrawal["id"], "refund", admin_id)
    with pytest.raises(NotFound):
        await services.withdrawals.admin_transition(uuid.uuid4(), "approve", admin_id)


async def test_without_reservation_overdraft_fails_at_processing(
    services, settings, create_user, get_balance
):
    settings.withdrawal_reserve_funds = False
    user_id = await create_user("50")
    admin_id = await create_user()

    withdrawal = await services.withdrawals.request(user_id, "40", "bank_transfer", BANK)
    assert withdrawal["funds_reserved"] is False
    assert await get_balance(user_id) == (Decimal("50.00"), Decimal("0.00"))

    await services.games.create(user_id, "1v1", "20")
    await services.withdrawals.admin_transition(withdrawal["id"], "approve", admin_id)

    with pytest.raises(InsufficientFunds):
        await services.withdrawals.admin_transition(withdrawal["id"], "process", admin_id)

    assert await get_balance(user_id) == (Decimal("30.00"), Decimal("0.00"))
    queue = await services.withdrawals.list_requests(status=WithdrawalStatus.APPROVED)
    assert [w["id"] for w in queue] == [withdrawal["id"]]


async def test_listing_and_pending_total(services, create_user):
    alice = await create_user("100")
    bob = await create_user("100")
    admin_id = await create_user()

    first = await services.withdrawals.request(alice, "20", "paypal", PAYPAL)
    await services.withdrawals.request(alice, "30", "paypal", PAYPAL)
    third = await services.withdrawals.request(bob, "25", "bank_transfer", BANK)
    await services.withdrawals.admin_transition(third["id"], "reject", admin_id)
    await services.withdrawals.admin_transition(first["id"], "approve", admin_id)

    assert len(await services.withdrawals.list_requests(user_id=alice)) == 2
    pending = await services.withdrawals.list_requests(status=WithdrawalStatus.PENDING)
    assert [w["amount"] for w in pending] == [Decimal("30.00")]
    health = await services.monitoring.system_health_check()
    assert health["metrics"]["pending_withdrawals"] == 2
    assert health["metrics"]["pending_withdrawal_amount"] == Decimal("50.00")


def test_payment_details_validation():
    assert validate_payment_details("paypal", {"email": " player@example.com "}) == {
        "email": "player@example.com"
    }
    assert validate_payment_details("bank_transfer", BANK) == BANK

    with pytest.raises(InvalidInput):
        validate_payment_details("bank_transfer", {"account_number": "123"})
    with pytest.raises(InvalidInput):
        validate_payment_details("paypal", {"email": "not-an-email"})
    with pytest.raises(InvalidInput):
        validate_payment_details("crypto", {"wallet": "0xabc"})
    with pytest.raises(InvalidInput):
        validate_payment_details("paypal", None)
