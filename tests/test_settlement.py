import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.models import BookingStatus, PaymentStatus, Technician, WalletTransaction
from app.payments import update_payment_status
from app.settlement import settle_if_eligible
from factories import seed_booking, seed_payment, seed_service, seed_technician


async def ledger(db, technician_id):
    async with db.begin():
        res = await db.execute(select(WalletTransaction).where(WalletTransaction.technician_id == technician_id))
        entries = list(res.scalars().all())
        balance = await db.scalar(select(Technician.wallet_balance).where(Technician.id == technician_id))
    return entries, Decimal(str(balance))


async def completed_job(db, *, payment_status):
    service = await seed_service(db)
    tech = await seed_technician(db, service.id)
    booking = await seed_booking(db, service.id, status=BookingStatus.COMPLETED, technician_id=tech.id)
    payment = await seed_payment(db, booking.id, status=payment_status, total=500, commission=50)
    return tech, booking, payment


@pytest.mark.asyncio
async def test_settles_once_when_called_twice(db):
    tech, booking, _ = await completed_job(db, payment_status=PaymentStatus.SUCCESS)

    first = await settle_if_eligible(db, booking.id)
    second = await settle_if_eligible(db, booking.id)

    assert first.settled
    assert first.amount == Decimal("450.00")
    assert not second.settled
    assert second.reason == "already_settled"
    assert second.transaction_id == first.transaction_id

    entries, balance = await ledger(db, tech.id)
    assert len(entries) == 1
    assert entries[0].type == "credit"
    assert entries[0].source == "job"
    assert balance == Decimal("450")


@pytest.mark.asyncio
async def test_pending_payment_defers_settlement_until_success(db):
    tech, booking, payment = await completed_job(db, payment_status=PaymentStatus.PENDING)

    early = await settle_if_eligible(db, booking.id)
    assert not early.settled
    assert early.reason == "payment_not_successful"
    assert (await ledger(db, tech.id))[0] == []

    outcome = await update_payment_status(db, payment.id, PaymentStatus.SUCCESS)
    assert outcome.settlement.settled

    retry = await settle_if_eligible(db, booking.id)
    assert not retry.settled

    entries, balance = await ledger(db, tech.id)
    assert len(entries) == 1
    assert balance == Decimal("450")


@pytest.mark.asyncio
async def test_unfinished_booking_is_not_settled(db):
    service = await seed_service(db)
    tech = await seed_technician(db, service.id)
    booking = await seed_booking(db, service.id, status=BookingStatus.IN_PROGRESS, technician_id=tech.id)
    await seed_payment(db, booking.id, status=PaymentStatus.SUCCESS)

    result = await settle_if_eligible(db, booking.id)

    assert not result.settled
    assert result.reason == "booking_not_completed"


@pytest.mark.asyncio
async def test_concurrent_triggers_credit_once(db, session_factory):
    tech, booking, _ = await completed_job(db, payment_status=PaymentStatus.SUCCESS)

    async def trigger():
        async with session_factory() as session:
            return await settle_if_eligible(session, booking.id)

    results = await asyncio.gather(*[trigger() for _ in range(4)])

    assert sum(r.settled for r in results) == 1
    entries, balance = await ledger(db, tech.id)
    assert len(entries) == 1
    assert balance == Decimal("450")
