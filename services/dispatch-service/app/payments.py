import hashlib
import json
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import DEFAULT_COMMISSION_PERCENT
from .errors import (
    ALREADY_PROCESSED,
    PAYMENT_ALREADY_EXISTS,
    ConflictError,
    Forbidden,
    NotFound,
    ValidationFailed,
)
from .models import (
    BookingPaymentStatus,
    BookingStatus,
    Payment,
    PaymentEvent,
    PaymentStatus,
    Service,
    ServiceBooking,
    utcnow,
)
from .payment_provider import provider as default_provider
from .security import ROLE_CUSTOMER, ROLE_OWNER, Principal
from .settlement import SettlementResult, settle_if_eligible

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class PaymentOutcome:
    payment: Payment
    settlement: SettlementResult | None = None


def split_amount(total, commission_percent) -> tuple[Decimal, Decimal, Decimal]:
    """(total, commission, technician share), rounded to the cent."""
    total = Decimal(str(total)).quantize(CENT, rounding=ROUND_HALF_UP)
    percent = Decimal(str(commission_percent))
    commission = (total * percent / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)
    return total, commission, total - commission


def payment_summary(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "booking_id": payment.booking_id,
        "status": payment.status,
        "provider_order_id": payment.provider_order_id,
        "total_amount": str(payment.total_amount),
    }


async def _payment_for_booking(db: AsyncSession, booking_id: str) -> Payment | None:
    res = await db.execute(
        select(Payment)
        .where(Payment.booking_id == booking_id)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def create_payment_order(
    db: AsyncSession,
    principal: Principal,
    booking_id: str,
    *,
    provider=None,
) -> Payment:
    provider = provider or default_provider

    async with db.begin():
        res = await db.execute(
            select(ServiceBooking, Service.commission_percent)
            .join(Service, Service.id == ServiceBooking.service_id)
            .where(ServiceBooking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        row = res.one_or_none()
        if row is None:
            raise NotFound("Booking not found")
        booking, commission_percent = row

        if principal.role == ROLE_CUSTOMER and booking.customer_id != principal.user_id:
            raise Forbidden("Access denied")
        if principal.role not in (ROLE_CUSTOMER, ROLE_OWNER):
            raise Forbidden("Access denied")

        if booking.status not in BookingStatus.ASSIGNED:
            raise ValidationFailed(
                "Payment allowed only once a technician is assigned",
                detail={"status": booking.status},
            )

        existing = await _payment_for_booking(db, booking_id)
        if existing is not None:
            raise ConflictError(
                "Payment already exists for this booking",
                code=PAYMENT_ALREADY_EXISTS,
                detail=payment_summary(existing),
            )

    if commission_percent is None:
        commission_percent = DEFAULT_COMMISSION_PERCENT
    total, commission, technician_share = split_amount(booking.base_amount, commission_percent)

    # provider call happens outside any open transaction
    order = await provider.create_order(total, receipt=booking_id)

    payment = Payment(
        booking_id=booking_id,
        provider=provider.name,
        provider_order_id=order["id"],
        currency=order.get("currency") or "INR",
        base_amount=Decimal(str(booking.base_amount)),
        total_amount=total,
        commission_amount=commission,
        technician_amount=technician_share,
        status=PaymentStatus.PENDING,
    )
    try:
        async with db.begin():
            db.add(payment)
            await db.flush()
            await db.execute(
                update(ServiceBooking)
                .where(ServiceBooking.id == booking_id)
                .values(payment_id=payment.id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
    except IntegrityError:
        async with db.begin():
            existing = await _payment_for_booking(db, booking_id)
        raise ConflictError(
            "Payment already exists for this booking",
            code=PAYMENT_ALREADY_EXISTS,
            detail=payment_summary(existing) if existing else {},
        )

    logger.info("payments: order %s created for booking %s", payment.provider_order_id, booking_id)
    return payment


async def _mark_booking_paid(db: AsyncSession, booking_id: str):
    await db.execute(
        update(ServiceBooking)
        .where(ServiceBooking.id == booking_id)
        .values(payment_status=BookingPaymentStatus.PAID, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def _reload(db: AsyncSession, payment_id: str) -> Payment:
    res = await db.execute(
        select(Payment).where(Payment.id == payment_id).execution_options(populate_existing=True)
    )
    return res.scalar_one()


async def verify_payment(
    db: AsyncSession,
    order_id: str,
    provider_payment_id: str,
    signature: str,
    *,
    provider=None,
) -> PaymentOutcome:
    """
    Signature-verified completion of a payment. Valid signatures move the
    payment pending -> success and trigger settlement; invalid ones move it
    pending -> failed. Neither transition is ever reversed.
    """
    provider = provider or default_provider
    valid = provider.verify_signature(order_id, provider_payment_id, signature)
    now = utcnow()

    async with db.begin():
        res = await db.execute(
            select(Payment).where(
                Payment.provider == provider.name,
                Payment.provider_order_id == order_id,
            )
            .execution_options(populate_existing=True)
        )
        payment = res.scalar_one_or_none()
        if payment is None:
            raise NotFound("Payment not found")

        if valid:
            values = dict(
                status=PaymentStatus.SUCCESS,
                provider_payment_id=provider_payment_id,
                provider_signature=signature,
                verified_at=now,
            )
        else:
            values = dict(status=PaymentStatus.FAILED, failure_reason="signature_mismatch")

        moved = await db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            current = await _reload(db, payment.id)
            # repeated verification of the same successful payment is harmless
            if not (valid and current.status == PaymentStatus.SUCCESS
                    and current.provider_payment_id == provider_payment_id):
                raise ConflictError(
                    "Payment already processed",
                    code=ALREADY_PROCESSED,
                    detail=payment_summary(current),
                )
        elif valid:
            await _mark_booking_paid(db, payment.booking_id)

        payment = await _reload(db, payment.id)

    if not valid:
        logger.warning("payments: signature mismatch for order %s", order_id)
        raise ValidationFailed("Invalid payment signature", detail=payment_summary(payment))

    settlement = await settle_if_eligible(db, payment.booking_id)
    return PaymentOutcome(payment, settlement)


def _extract(payload: dict, *path):
    node = payload
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


async def record_webhook(
    db: AsyncSession,
    raw_body: bytes,
    signature: str | None,
    event_id: str | None = None,
    *,
    provider=None,
) -> tuple[PaymentEvent | None, bool]:
    """
    Store a provider webhook once per event id. Audit only: payment status
    is owned by the signature-verified path. Returns (event, created).
    """
    provider = provider or default_provider
    if not provider.verify_webhook(raw_body, signature):
        raise ValidationFailed("Invalid webhook signature")

    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        raise ValidationFailed("Webhook body is not valid JSON")

    event_id = event_id or payload.get("id") or hashlib.sha256(raw_body).hexdigest()
    order_id = _extract(payload, "payload", "payment", "entity", "order_id")

    async with db.begin():
        payment = None
        if order_id:
            res = await db.execute(
                select(Payment).where(
                    Payment.provider == provider.name,
                    Payment.provider_order_id == order_id,
                )
            )
            payment = res.scalar_one_or_none()

        event = PaymentEvent(
            provider=provider.name,
            event_id=event_id,
            event_type=payload.get("event") or "unknown",
            booking_id=payment.booking_id if payment else None,
            payment_id=payment.id if payment else None,
            payload=payload,
        )
        try:
            async with db.begin_nested():
                db.add(event)
                await db.flush()
        except IntegrityError:
            res = await db.execute(select(PaymentEvent).where(PaymentEvent.event_id == event_id))
            return res.scalar_one_or_none(), False

    logger.info("payments: webhook %s (%s) recorded", event_id, event.event_type)
    return event, True


async def update_payment_status(db: AsyncSession, payment_id: str, status: str) -> PaymentOutcome:
    """Owner override; one-way from pending like every other payment transition."""
    if status not in (PaymentStatus.SUCCESS, PaymentStatus.FAILED):
        raise ValidationFailed(
            "Invalid payment status",
            detail={"allowed": [PaymentStatus.SUCCESS, PaymentStatus.FAILED]},
        )

    async with db.begin():
        moved = await db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
            .values(status=status, verified_at=utcnow() if status == PaymentStatus.SUCCESS else None)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            res = await db.execute(
                select(Payment)
                .where(Payment.id == payment_id)
                .execution_options(populate_existing=True)
            )
            current = res.scalar_one_or_none()
            if current is None:
                raise NotFound("Payment not found")
            raise ConflictError(
                "Payment already processed",
                code=ALREADY_PROCESSED,
                detail=payment_summary(current),
            )

        payment = await _reload(db, payment_id)
        if status == PaymentStatus.SUCCESS:
            await _mark_booking_paid(db, payment.booking_id)

    settlement = None
    if status == PaymentStatus.SUCCESS:
        settlement = await settle_if_eligible(db, payment.booking_id)
    return PaymentOutcome(payment, settlement)
