import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest
import respx
from sqlalchemy import func, select

from app.breaker import CircuitBreaker
from app.errors import (
    ALREADY_PROCESSED,
    PAYMENT_ALREADY_EXISTS,
    ConflictError,
    Forbidden,
    UpstreamError,
    ValidationFailed,
)
from app.models import BookingStatus, Payment, PaymentEvent, PaymentStatus, ServiceBooking
from app.payment_provider import PaymentProvider
from app.payments import (
    create_payment_order,
    record_webhook,
    split_amount,
    update_payment_status,
    verify_payment,
)
from factories import customer, seed_booking, seed_payment, seed_service, seed_technician

BASE_URL = "https://payments.test/v1"
KEY_SECRET = "key-secret"
WEBHOOK_SECRET = "hook-secret"


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


@pytest.fixture
def provider(fake_redis):
    return PaymentProvider(
        base_url=BASE_URL,
        key_id="key-id",
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        name="razorpay",
        breaker=CircuitBreaker("payment-test", failure_threshold=3, redis=fake_redis),
    )


async def assigned_booking(db, *, commission_percent=10.0, status=BookingStatus.ACCEPTED):
    service = await seed_service(db, commission_percent=commission_percent)
    tech = await seed_technician(db, service.id)
    return await seed_booking(db, service.id, status=status, technician_id=tech.id, base_amount=500)


def test_split_amount_rounds_to_cent():
    assert split_amount(500, 10) == (Decimal("500.00"), Decimal("50.00"), Decimal("450.00"))
    assert split_amount("99.99", 12.5) == (Decimal("99.99"), Decimal("12.50"), Decimal("87.49"))


@pytest.mark.asyncio
@respx.mock
async def test_create_order_splits_commission(db, provider):
    booking = await assigned_booking(db, commission_percent=15)
    route = respx.post(f"{BASE_URL}/orders").mock(
        return_value=httpx.Response(200, json={"id": "order_abc", "currency": "INR", "amount": 50000})
    )

    payment = await create_payment_order(db, customer(booking.customer_id), booking.id, provider=provider)

    assert route.called
    assert json.loads(route.calls.last.request.content) == {
        "amount": 50000,
        "currency": "INR",
        "receipt": booking.id,
    }
    assert payment.provider_order_id == "order_abc"
    assert payment.status == PaymentStatus.PENDING
    assert payment.total_amount == Decimal("500.00")
    assert payment.commission_amount == Decimal("75.00")
    assert payment.technician_amount == Decimal("425.00")


@pytest.mark.asyncio
@respx.mock
async def test_second_order_for_booking_conflicts(db, provider):
    booking = await assigned_booking(db)
    respx.post(f"{BASE_URL}/orders").mock(return_value=httpx.Response(200, json={"id": "order_1"}))
    principal = customer(booking.customer_id)

    first = await create_payment_order(db, principal, booking.id, provider=provider)
    with pytest.raises(ConflictError) as exc:
        await create_payment_order(db, principal, booking.id, provider=provider)

    assert exc.value.code == PAYMENT_ALREADY_EXISTS
    assert exc.value.detail["id"] == first.id
    async with db.begin():
        assert await db.scalar(select(func.count()).select_from(Payment)) == 1


@pytest.mark.asyncio
async def test_order_requires_assigned_booking(db, provider):
    booking = await assigned_booking(db, status=BookingStatus.BROADCASTED)

    with pytest.raises(ValidationFailed):
        await create_payment_order(db, customer(booking.customer_id), booking.id, provider=provider)


@pytest.mark.asyncio
async def test_order_only_for_own_booking(db, provider):
    booking = await assigned_booking(db)

    with pytest.raises(Forbidden):
        await create_payment_order(db, customer(), booking.id, provider=provider)


@pytest.mark.asyncio
@respx.mock
async def test_provider_error_is_upstream_and_counts_failure(db, provider, fake_redis):
    booking = await assigned_booking(db)
    respx.post(f"{BASE_URL}/orders").mock(return_value=httpx.Response(500, text="boom"))

    with pytest.raises(UpstreamError):
        await create_payment_order(db, customer(booking.customer_id), booking.id, provider=provider)

    status = await provider.breaker.status()
    assert status["failures"] == 1
    async with db.begin():
        assert await db.scalar(select(func.count()).select_from(Payment)) == 0


@pytest.mark.asyncio
async def test_valid_signature_marks_success_and_booking_paid(db, provider):
    booking = await assigned_booking(db)
    payment = await seed_payment(db, booking.id)
    signature = sign(KEY_SECRET, f"{payment.provider_order_id}|pay_1".encode())

    outcome = await verify_payment(db, payment.provider_order_id, "pay_1", signature, provider=provider)

    assert outcome.payment.status == PaymentStatus.SUCCESS
    assert outcome.payment.provider_payment_id == "pay_1"
    assert outcome.payment.verified_at is not None
    assert outcome.settlement.reason == "booking_not_completed"
    async with db.begin():
        paid = await db.scalar(select(ServiceBooking.payment_status).where(ServiceBooking.id == booking.id))
    assert paid == "paid"

    again = await verify_payment(db, payment.provider_order_id, "pay_1", signature, provider=provider)
    assert again.payment.status == PaymentStatus.SUCCESS


@pytest.mark.asyncio
async def test_verification_of_completed_job_settles(db, provider):
    booking = await assigned_booking(db, status=BookingStatus.COMPLETED)
    payment = await seed_payment(db, booking.id)
    signature = sign(KEY_SECRET, f"{payment.provider_order_id}|pay_2".encode())

    outcome = await verify_payment(db, payment.provider_order_id, "pay_2", signature, provider=provider)

    assert outcome.settlement.settled
    assert outcome.settlement.amount == Decimal("450")


@pytest.mark.asyncio
async def test_bad_signature_fails_payment_for_good(db, provider):
    booking = await assigned_booking(db)
    payment = await seed_payment(db, booking.id)

    with pytest.raises(ValidationFailed):
        await verify_payment(db, payment.provider_order_id, "pay_3", "forged", provider=provider)

    good = sign(KEY_SECRET, f"{payment.provider_order_id}|pay_3".encode())
    with pytest.raises(ConflictError) as exc:
        await verify_payment(db, payment.provider_order_id, "pay_3", good, provider=provider)

    assert exc.value.code == ALREADY_PROCESSED
    assert exc.value.detail["status"] == PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_webhook_recorded_once_and_never_changes_status(db, provider):
    booking = await assigned_booking(db)
    payment = await seed_payment(db, booking.id)
    body = json.dumps(
        {
            "id": "evt_1",
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"order_id": payment.provider_order_id}}},
        }
    ).encode()
    signature = sign(WEBHOOK_SECRET, body)

    event, created = await record_webhook(db, body, signature, provider=provider)
    _, created_again = await record_webhook(db, body, signature, provider=provider)

    assert created
    assert not created_again
    assert event.payment_id == payment.id
    assert event.booking_id == booking.id
    async with db.begin():
        assert await db.scalar(select(func.count()).select_from(PaymentEvent)) == 1
        status = await db.scalar(select(Payment.status).where(Payment.id == payment.id))
    assert status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_webhook_with_bad_signature_rejected(db, provider):
    with pytest.raises(ValidationFailed):
        await record_webhook(db, b'{"id": "evt_2"}', "nope", provider=provider)


@pytest.mark.asyncio
async def test_owner_override_is_one_way(db):
    booking = await assigned_booking(db)
    payment = await seed_payment(db, booking.id)

    outcome = await update_payment_status(db, payment.id, PaymentStatus.FAILED)
    assert outcome.payment.status == PaymentStatus.FAILED
    assert outcome.settlement is None

    with pytest.raises(ConflictError):
        await update_payment_status(db, payment.id, PaymentStatus.SUCCESS)

    with pytest.raises(ValidationFailed):
        await update_payment_status(db, payment.id, PaymentStatus.PENDING)
