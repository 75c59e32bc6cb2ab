import logging
from dataclasses import dataclass
from datetime import timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.events import build_event, to_json

from .broadcast import BroadcastResult, dispatch_booking
from .config import DISPATCH_MODE
from .eligibility import ensure_technician_eligible
from .errors import INVALID_TRANSITION, ConflictError, Forbidden, NotFound, ValidationFailed
from .locator import to_point
from .models import (
    BookingStatus,
    BroadcastStatus,
    JobBroadcast,
    Service,
    ServiceBooking,
    Technician,
    utcnow,
)
from .notifications import notifier as default_notifier, post_commit
from .rabbitmq import publisher as default_publisher
from .security import ROLE_CUSTOMER, ROLE_OWNER, Principal
from .settlement import SettlementResult, settle_if_eligible

logger = logging.getLogger(__name__)

BOOKING_REQUESTED = "booking.requested"

# technician-driven progress, in order
PROGRESS = (
    BookingStatus.ACCEPTED,
    BookingStatus.ON_THE_WAY,
    BookingStatus.REACHED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.COMPLETED,
)


@dataclass
class CreatedBooking:
    booking: ServiceBooking
    dispatch: BroadcastResult | None = None
    queued: bool = False


@dataclass
class StatusUpdate:
    booking: ServiceBooking
    settlement: SettlementResult | None = None


def _clean(value) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


async def get_booking(db: AsyncSession, booking_id: str) -> ServiceBooking:
    async with db.begin():
        res = await db.execute(
            select(ServiceBooking)
            .where(ServiceBooking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = res.scalar_one_or_none()
    if booking is None:
        raise NotFound("Booking not found")
    return booking


async def create_booking(
    db: AsyncSession,
    principal: Principal,
    *,
    service_id: str,
    base_amount,
    address: str | None = None,
    city: str | None = None,
    state: str | None = None,
    pincode: str | None = None,
    latitude=None,
    longitude=None,
    scheduled_at=None,
    radius_meters: float | None = None,
    mode: str = DISPATCH_MODE,
    notifier=None,
    publisher=None,
) -> CreatedBooking:
    if principal.role != ROLE_CUSTOMER:
        raise Forbidden("Customer access only")

    try:
        amount = Decimal(str(base_amount))
    except (InvalidOperation, ValueError):
        raise ValidationFailed("baseAmount must be a non-negative number")
    if not amount.is_finite() or amount < 0:
        raise ValidationFailed("baseAmount must be a non-negative number")

    point = None
    if latitude is not None or longitude is not None:
        point = to_point(latitude, longitude)
        if point is None:
            raise ValidationFailed("Invalid coordinates", detail={"latitude": latitude, "longitude": longitude})

    address = _clean(address) or ("Pinned Location" if point else None)
    if not address:
        raise ValidationFailed("addressLine or coordinates are required")

    if radius_meters is not None and radius_meters <= 0:
        raise ValidationFailed("radius must be positive")

    if scheduled_at is not None and scheduled_at.tzinfo is not None:
        scheduled_at = scheduled_at.astimezone(timezone.utc)

    snapshot = {
        "addressLine": address,
        "city": _clean(city),
        "state": _clean(state),
        "pincode": _clean(pincode),
        "latitude": point.latitude if point else None,
        "longitude": point.longitude if point else None,
    }

    async with db.begin():
        res = await db.execute(select(Service).where(Service.id == service_id))
        service = res.scalar_one_or_none()
        if service is None or not service.is_active:
            raise NotFound("Service not found or inactive")

        booking = ServiceBooking(
            customer_id=principal.user_id,
            service_id=service_id,
            base_amount=amount,
            address=address,
            address_snapshot=snapshot,
            city=snapshot["city"],
            state=snapshot["state"],
            pincode=snapshot["pincode"],
            latitude=snapshot["latitude"],
            longitude=snapshot["longitude"],
            radius_meters=radius_meters,
            scheduled_at=scheduled_at,
            status=BookingStatus.REQUESTED,
        )
        db.add(booking)

    logger.info("bookings: booking %s created for service %s", booking.id, service_id)

    if mode == "async":
        publisher = publisher or default_publisher
        event = build_event(BOOKING_REQUESTED, {"booking_id": booking.id, "service_id": service_id})
        try:
            await publisher.publish(BOOKING_REQUESTED, to_json(event))
        except Exception as e:
            # booking stays requested; the owner retry endpoint re-dispatches it
            logger.error("bookings: failed to publish %s for %s: %s", BOOKING_REQUESTED, booking.id, e)
            return CreatedBooking(booking)
        return CreatedBooking(booking, queued=True)

    result = await dispatch_booking(db, booking.id, notifier=notifier)
    booking = await get_booking(db, booking.id)
    return CreatedBooking(booking, dispatch=result)


async def update_status(
    db: AsyncSession,
    technician_id: str,
    booking_id: str,
    new_status: str,
    *,
    notifier=None,
) -> StatusUpdate:
    """
    Forward-only progress by the assigned technician. The transition is a
    conditional update on the status read in the same transaction, so two
    concurrent updates cannot both apply.
    """
    notifier = notifier or default_notifier
    if new_status not in PROGRESS[1:]:
        raise ValidationFailed("Invalid status", detail={"allowed": list(PROGRESS[1:])})

    now = utcnow()
    async with db.begin():
        res = await db.execute(
            select(ServiceBooking)
            .where(ServiceBooking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = res.scalar_one_or_none()
        if booking is None:
            raise NotFound("Booking not found")
        if booking.technician_id != technician_id:
            raise Forbidden("Access denied for this booking")

        await ensure_technician_eligible(db, technician_id, require_training=False, require_online=False)

        current = booking.status
        if current not in PROGRESS or PROGRESS.index(new_status) <= PROGRESS.index(current):
            raise ConflictError(
                f"Cannot move booking from {current} to {new_status}",
                code=INVALID_TRANSITION,
                detail={"status": current},
            )

        moved = await db.execute(
            update(ServiceBooking)
            .where(
                ServiceBooking.id == booking_id,
                ServiceBooking.technician_id == technician_id,
                ServiceBooking.status == current,
            )
            .values(status=new_status, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            raise ConflictError("Booking changed concurrently", code=INVALID_TRANSITION)

        if new_status == BookingStatus.COMPLETED:
            await db.execute(
                update(Technician)
                .where(Technician.id == technician_id)
                .values(jobs_completed=Technician.jobs_completed + 1)
                .execution_options(synchronize_session=False)
            )

        res = await db.execute(
            select(ServiceBooking)
            .where(ServiceBooking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = res.scalar_one()

    post_commit.schedule(
        f"booking-status:{booking_id}",
        notifier.notify_customer(
            booking.customer_id,
            "booking_status",
            {"booking_id": booking_id, "status": new_status},
        ),
    )

    settlement = None
    if new_status == BookingStatus.COMPLETED:
        settlement = await settle_if_eligible(db, booking_id)
    return StatusUpdate(booking, settlement)


async def cancel_booking(db: AsyncSession, principal: Principal, booking_id: str, *, notifier=None) -> ServiceBooking:
    notifier = notifier or default_notifier
    now = utcnow()

    async with db.begin():
        res = await db.execute(
            select(ServiceBooking)
            .where(ServiceBooking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = res.scalar_one_or_none()
        if booking is None:
            raise NotFound("Booking not found")
        if principal.role != ROLE_CUSTOMER or booking.customer_id != principal.user_id:
            raise Forbidden("Only customer can cancel booking")

        if booking.status == BookingStatus.CANCELLED:
            raise ConflictError("Booking already cancelled", code=INVALID_TRANSITION)
        if booking.status not in BookingStatus.CANCELLABLE:
            raise ConflictError(
                "Booking cannot be cancelled once technician started work",
                code=INVALID_TRANSITION,
                detail={"status": booking.status},
            )

        previous_technician = booking.technician_id
        moved = await db.execute(
            update(ServiceBooking)
            .where(
                ServiceBooking.id == booking_id,
                ServiceBooking.status == booking.status,
            )
            .values(status=BookingStatus.CANCELLED, technician_id=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            raise ConflictError("Booking changed concurrently", code=INVALID_TRANSITION)

        res = await db.execute(
            select(JobBroadcast.technician_id).where(
                JobBroadcast.booking_id == booking_id,
                JobBroadcast.status == BroadcastStatus.SENT,
            )
        )
        offered = list(res.scalars().all())
        await db.execute(
            update(JobBroadcast)
            .where(
                JobBroadcast.booking_id == booking_id,
                JobBroadcast.status == BroadcastStatus.SENT,
            )
            .values(status=BroadcastStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )

        res = await db.execute(
            select(ServiceBooking)
            .where(ServiceBooking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = res.scalar_one()

    withdrawn = offered + ([previous_technician] if previous_technician else [])
    if withdrawn:
        post_commit.schedule(f"job-cancelled:{booking_id}", notifier.notify_job_taken(withdrawn, booking_id))

    logger.info("bookings: booking %s cancelled by customer", booking_id)
    return booking


async def list_customer_bookings(db: AsyncSession, customer_id: str) -> list[ServiceBooking]:
    async with db.begin():
        res = await db.execute(
            select(ServiceBooking)
            .where(ServiceBooking.customer_id == customer_id)
            .order_by(ServiceBooking.created_at.desc())
        )
        return list(res.scalars().all())


async def list_all_bookings(db: AsyncSession, status: str | None = None) -> list[ServiceBooking]:
    stmt = select(ServiceBooking).order_by(ServiceBooking.created_at.desc())
    if status:
        stmt = stmt.where(ServiceBooking.status == status)
    async with db.begin():
        res = await db.execute(stmt)
        return list(res.scalars().all())


async def list_technician_jobs(db: AsyncSession, technician_id: str, *, history: bool = False) -> list[ServiceBooking]:
    statuses = BookingStatus.TERMINAL if history else BookingStatus.ACTIVE
    async with db.begin():
        res = await db.execute(
            select(ServiceBooking)
            .where(
                ServiceBooking.technician_id == technician_id,
                ServiceBooking.status.in_(statuses),
            )
            .order_by(ServiceBooking.updated_at.desc())
        )
        return list(res.scalars().all())


async def list_open_offers(db: AsyncSession, technician_id: str) -> list[tuple[JobBroadcast, ServiceBooking]]:
    """Offers the technician can still act on: sent, not past expiry, booking still open."""
    now = utcnow()
    async with db.begin():
        res = await db.execute(
            select(JobBroadcast, ServiceBooking)
            .join(ServiceBooking, ServiceBooking.id == JobBroadcast.booking_id)
            .where(
                JobBroadcast.technician_id == technician_id,
                JobBroadcast.status == BroadcastStatus.SENT,
                JobBroadcast.expires_at > now,
                ServiceBooking.status == BookingStatus.BROADCASTED,
                ServiceBooking.technician_id.is_(None),
            )
            .order_by(JobBroadcast.sent_at.desc())
        )
        return [tuple(row) for row in res.all()]


async def retry_dispatch(db: AsyncSession, principal: Principal, booking_id: str, *, notifier=None) -> BroadcastResult:
    if principal.role != ROLE_OWNER:
        raise Forbidden("Owner access only")
    return await dispatch_booking(db, booking_id, notifier=notifier)
