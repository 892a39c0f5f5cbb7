import asyncio
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

from r6cash.commission import calculate_processor_fee, split_deposit
from r6cash.errors import ExternalServiceError, Forbidden, InvalidInput
from r6cash.models import AuditLog, PaymentCompletion, PaymentSource, PlatformRevenue, Transaction, TransactionType
from r6cash.payments import PaymentIngestion, PaymentOutcome


def checkout_event(session_id, user_id, *, payment_status="paid", event_type="checkout.session.completed"):
    return {
        "id": f"evt_{session_id}",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "payment_status": payment_status,
                "metadata": {"user_id": str(user_id), "type": "deposit"},
            }
        },
    }


async def _audit_actions(database):
    async with database.session() as session:
        return list((await session.execute(select(AuditLog.action))).scalars().all())


async def _deposits(database, user_id):
    async with database.session() as session:
        result = await session.execute(
            select(Transaction).where(
                Transaction.user_id == user_id,
                Transaction.type == TransactionType.DEPOSIT,
            )
        )
        return list(result.scalars().all())


def test_processor_fee_rounds_half_up(settings):
    assert calculate_processor_fee(Decimal("25"), Decimal("0.029"), Decimal("0.30")) == Decimal("1.03")
    split = split_deposit(Decimal("25"), settings)
    assert split.processor_fee == Decimal("1.03")
    assert split.net_credit == Decimal("23.97")
    assert split.platform_commission == Decimal("0.00")


def test_deposit_smaller_than_fee_rejected(settings):
    with pytest.raises(InvalidInput):
        split_deposit(Decimal("0.25"), settings)


async def test_deposit_credits_net_amount(services, database, processor, get_balance):
    user_id = uuid.uuid4()
    processor.add_session("cs_25", user_id, "25")

    outcome = await services.payments.ingest("cs_25", user_id, PaymentSource.CLIENT)
    assert outcome.status == PaymentOutcome.CREDITED
    assert outcome.success
    assert outcome.gross_amount == Decimal("25.00")
    assert outcome.processor_fee == Decimal("1.03")
    assert outcome.amount_credited == Decimal("23.97")
    assert outcome.new_balance == Decimal("23.97")

    assert (await get_balance(user_id))[0] == Decimal("23.97")
    deposits = await _deposits(database, user_id)
    assert len(deposits) == 1
    assert deposits[0].external_ref == "cs_25"
    assert deposits[0].processor_fee == Decimal("1.03")

    async with database.session() as session:
        completion = (await session.execute(select(PaymentCompletion))).scalar_one()
    assert completion.session_id == "cs_25"
    assert completion.source == PaymentSource.CLIENT
    assert completion.transaction_id == deposits[0].id


async def test_repeated_verification_is_idempotent(services, database, processor, create_user, get_balance):
    user_id = await create_user()
    processor.add_session("cs_once", user_id, "50")

    first = await services.payments.ingest("cs_once", user_id, PaymentSource.CLIENT)
    second = await services.payments.ingest("cs_once", user_id, PaymentSource.CLIENT)
    third = await services.payments.handle_webhook_event(checkout_event("cs_once", user_id))

    assert first.status == PaymentOutcome.CREDITED
    assert second.status == PaymentOutcome.ALREADY_CREDITED
    assert third.status == PaymentOutcome.ALREADY_CREDITED
    assert second.amount_credited == first.amount_credited == Decimal("48.25")
    assert processor.retrieve_calls == 1
    assert (await get_balance(user_id))[0] == Decimal("48.25")
    assert len(await _deposits(database, user_id)) == 1


async def test_webhook_and_poll_race_credit_once(services, database, processor, create_user, get_balance):
    user_id = await create_user()
    processor.add_session("cs_race", user_id, "100")
    processor.delay = 0.05

    results = await asyncio.gather(
        services.payments.ingest("cs_race", user_id, PaymentSource.CLIENT),
        services.payments.handle_webhook_event(checkout_event("cs_race", user_id)),
        services.payments.ingest("cs_race", user_id, PaymentSource.CLIENT),
    )

    statuses = sorted(r.status for r in results)
    assert statuses.count(PaymentOutcome.CREDITED) == 1
    assert statuses.count(PaymentOutcome.ALREADY_CREDITED) == 2
    assert all(r.amount_credited == Decimal("96.80") for r in results)
    assert (await get_balance(user_id))[0] == Decimal("96.80")
    assert len(await _deposits(database, user_id)) == 1


async def test_user_mismatch_is_rejected_and_logged(services, database, processor, create_user, get_balance):
    owner = await create_user()
    attacker = await create_user()
    processor.add_session("cs_owner", owner, "25")

    with pytest.raises(Forbidden):
        await services.payments.ingest("cs_owner", attacker, PaymentSource.CLIENT)

    assert (await get_balance(attacker))[0] == Decimal("0.00")
    assert (await get_balance(owner))[0] == Decimal("0.00")
    assert "PAYMENT_USER_MISMATCH" in await _audit_actions(database)
    async with database.session() as session:
        assert (await session.execute(select(PaymentCompletion))).first() is None


async def test_credited_session_cannot_be_claimed_by_another_user(services, processor, create_user):
    owner = await create_user()
    other = await create_user()
    processor.add_session("cs_claimed", owner, "10")
    await services.payments.ingest("cs_claimed", owner, PaymentSource.CLIENT)

    with pytest.raises(Forbidden):
        await services.payments.ingest("cs_claimed", other, PaymentSource.CLIENT)


async def test_unpaid_session_is_pending(services, processor, create_user, get_balance):
    user_id = await create_user()
    processor.add_session("cs_open", user_id, "25", payment_status="unpaid")

    outcome = await services.payments.ingest("cs_open", user_id, PaymentSource.CLIENT)
    assert outcome.status == PaymentOutcome.PENDING
    assert not outcome.success
    assert outcome.retryable is False
    assert (await get_balance(user_id))[0] == Decimal("0.00")

    processor.add_session("cs_open", user_id, "25")
    outcome = await services.payments.ingest("cs_open", user_id, PaymentSource.CLIENT)
    assert outcome.status == PaymentOutcome.CREDITED


async def test_processor_timeout_is_retryable(services, processor, create_user, get_balance):
    user_id = await create_user()
    processor.add_session("cs_slow", user_id, "25")
    processor.timeouts.add("cs_slow")

    outcome = await services.payments.ingest("cs_slow", user_id, PaymentSource.CLIENT)
    assert outcome.status == PaymentOutcome.PENDING
    assert outcome.retryable is True
    assert (await get_balance(user_id))[0] == Decimal("0.00")


async def test_processor_error_is_logged(services, database, processor, create_user):
    user_id = await create_user()
    processor.failures.add("cs_broken")

    with pytest.raises(ExternalServiceError):
        await services.payments.ingest("cs_broken", user_id, PaymentSource.CLIENT)
    assert "PAYMENT_VERIFICATION_ERROR" in await _audit_actions(database)


async def test_session_without_amount_is_rejected(services, database, processor, create_user, get_balance):
    user_id = await create_user()
    processor.add_session("cs_zero", user_id, "0")

    with pytest.raises(ExternalServiceError):
        await services.payments.ingest("cs_zero", user_id, PaymentSource.CLIENT)
    assert (await get_balance(user_id))[0] == Decimal("0.00")
    assert "PAYMENT_VERIFICATION_ERROR" in await _audit_actions(database)


async def test_blank_session_id_rejected(services, create_user):
    user_id = await create_user()
    with pytest.raises(InvalidInput):
        await services.payments.ingest("   ", user_id, PaymentSource.CLIENT)


async def test_deposit_commission_is_recorded(services, settings, database, processor, create_user, get_balance):
    settings.deposit_commission_rate = Decimal("0.02")
    user_id = await create_user()
    processor.add_session("cs_fee", user_id, "50")

    outcome = await services.payments.ingest("cs_fee", user_id, PaymentSource.CLIENT)
    # 50 - (1.45 + 0.30) - 1.00
    assert outcome.amount_credited == Decimal("47.25")
    assert (await get_balance(user_id))[0] == Decimal("47.25")

    async with database.session() as session:
        revenue = (await session.execute(select(PlatformRevenue))).scalar_one()
    assert revenue.amount == Decimal("1.00")
    assert revenue.external_ref == "cs_fee"
    assert revenue.user_id == user_id


async def test_webhook_ignores_other_events(services, create_user):
    user_id = await create_user()
    event = checkout_event("cs_other", user_id, event_type="payment_intent.created")
    assert await services.payments.handle_webhook_event(event) is None


async def test_webhook_unpaid_session_is_pending(services, processor, create_user):
    user_id = await create_user()
    outcome = await services.payments.handle_webhook_event(
        checkout_event("cs_async", user_id, payment_status="unpaid")
    )
    assert outcome.status == PaymentOutcome.PENDING
    assert processor.retrieve_calls == 0


async def test_webhook_without_user_rejected(services):
    event = checkout_event("cs_anon", "not-a-uuid")
    with pytest.raises(InvalidInput):
        await services.payments.handle_webhook_event(event)


async def test_manual_credit_is_idempotent(services, create_user, get_balance):
    user_id = await create_user()
    admin_id = await create_user()

    first = await services.payments.deposit_credit(user_id, "40", "wire-001", admin_id=admin_id)
    second = await services.payments.deposit_credit(user_id, "40", "wire-001", admin_id=admin_id)

    assert first.status == PaymentOutcome.CREDITED
    assert second.status == PaymentOutcome.ALREADY_CREDITED
    assert (await get_balance(user_id))[0] == Decimal("40.00")

    with pytest.raises(InvalidInput):
        await services.payments.deposit_credit(user_id, "40", " ", admin_id=admin_id)


async def test_checkout_uses_allowed_amounts(services, processor, create_user):
    user_id = await create_user()

    result = await services.payments.create_checkout(user_id, "25")
    assert result["session_id"] == "cs_test_1"
    assert result["url"].endswith("cs_test_1")

    checkout = processor.checkouts[0]
    assert checkout["amount_cents"] == 2500
    assert checkout["metadata"] == {"user_id": str(user_id), "amount": "25.00", "type": "deposit"}
    assert "{CHECKOUT_SESSION_ID}" in checkout["success_url"]

    with pytest.raises(InvalidInput):
        await services.payments.create_checkout(user_id, "30")


async def test_checkout_requires_processor(database, settings, create_user):
    user_id = await create_user()
    payments = PaymentIngestion(database, None, settings)
    with pytest.raises(ExternalServiceError):
        await payments.create_checkout(user_id, "25")
