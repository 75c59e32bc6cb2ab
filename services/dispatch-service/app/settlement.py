"""
Crediting technicians for completed, paid jobs.

Settlement is reachable from several triggers (status update to completed,
payment verification, owner retry). Each call re-reads the booking and its
payment and writes at most one ledger entry; the (booking, type, source)
unique constraint catches the case where two triggers pass the lookup at the
same time.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFound
from .models import (
    BookingStatus,
    Payment,
    PaymentStatus,
    ServiceBooking,
    Technician,
    WalletTransaction,
    WalletTxSource,
    WalletTxType,
)

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    booking_id: str
    settled: bool
    reason: str | None = None
    transaction_id: str | None = None
    amount: Decimal | None = None


async def _existing_credit(db: AsyncSession, booking_id: str) -> WalletTransaction | None:
    res = await db.execute(
        select(WalletTransaction).where(
            WalletTransaction.booking_id == booking_id,
            WalletTransaction.type == WalletTxType.CREDIT,
            WalletTransaction.source == WalletTxSource.JOB,
        )
    )
    return res.scalar_one_or_none()


async def _settle(db: AsyncSession, booking_id: str) -> SettlementResult:
    res = await db.execute(
        select(ServiceBooking)
        .where(ServiceBooking.id == booking_id)
        .execution_options(populate_existing=True)
    )
    booking = res.scalar_one_or_none()
    if booking is None:
        raise NotFound("Booking not found")

    if booking.status != BookingStatus.COMPLETED:
        return SettlementResult(booking_id, False, reason="booking_not_completed")
    if not booking.technician_id:
        return SettlementResult(booking_id, False, reason="no_technician")

    res = await db.execute(
        select(Payment)
        .where(Payment.booking_id == booking_id)
        .execution_options(populate_existing=True)
    )
    payment = res.scalar_one_or_none()
    if payment is None or payment.status != PaymentStatus.SUCCESS:
        return SettlementResult(booking_id, False, reason="payment_not_successful")

    existing = await _existing_credit(db, booking_id)
    if existing is not None:
        return SettlementResult(booking_id, False, reason="already_settled", transaction_id=existing.id)

    amount = Decimal(payment.technician_amount)
    entry = WalletTransaction(
        technician_id=booking.technician_id,
        booking_id=booking_id,
        amount=amount,
        type=WalletTxType.CREDIT,
        source=WalletTxSource.JOB,
        note="Job completion",
    )
    try:
        async with db.begin_nested():
            db.add(entry)
            await db.flush()
    except IntegrityError:
        logger.info("settlement: booking %s settled concurrently", booking_id)
        return SettlementResult(booking_id, False, reason="already_settled")

    await db.execute(
        update(Technician)
        .where(Technician.id == booking.technician_id)
        .values(wallet_balance=Technician.wallet_balance + amount)
        .execution_options(synchronize_session=False)
    )

    logger.info(
        "settlement: credited %s to technician %s for booking %s",
        amount,
        booking.technician_id,
        booking_id,
    )
    return SettlementResult(booking_id, True, transaction_id=entry.id, amount=amount)


async def settle_if_eligible(db: AsyncSession, booking_id: str) -> SettlementResult:
    """Safe to call any number of times; only the first eligible call writes."""
    async with db.begin():
        return await _settle(db, booking_id)
