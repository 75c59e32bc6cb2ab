import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import BROADCAST_BASE_RADIUS_METERS, BROADCAST_MAX_TECHNICIANS
from .eligibility import find_eligible_technicians
from .errors import NotFound
from .locator import LocationHint, locate, to_point
from .models import BookingStatus, ServiceBooking

logger = logging.getLogger(__name__)


@dataclass
class MatchResult:
    booking_id: str
    technician_ids: list[str] = field(default_factory=list)
    skipped: bool = False
    reason: str | None = None

    @property
    def count(self) -> int:
        return len(self.technician_ids)


def is_matchable(booking: ServiceBooking) -> bool:
    return booking.status in BookingStatus.OPEN and booking.technician_id is None


def location_hint(booking: ServiceBooking) -> LocationHint:
    snapshot = booking.address_snapshot or {}
    point = to_point(booking.latitude, booking.longitude)
    if point is None:
        point = to_point(snapshot.get("latitude"), snapshot.get("longitude"))
    return LocationHint(
        point=point,
        pincode=booking.pincode or snapshot.get("pincode"),
        city=booking.city or snapshot.get("city"),
        state=booking.state or snapshot.get("state"),
    )


async def match(
    db: AsyncSession,
    booking_id: str,
    *,
    limit: int = BROADCAST_MAX_TECHNICIANS,
) -> MatchResult:
    """
    Candidate technicians for a booking. Read-only; the caller persists the
    offers. Bookings that are already assigned, cancelled or past the offer
    stage yield a skipped result so retried async work cannot re-broadcast.
    """
    async with db.begin():
        res = await db.execute(
            select(ServiceBooking)
            .where(ServiceBooking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = res.scalar_one_or_none()
        if booking is None:
            raise NotFound("Booking not found")

        if not is_matchable(booking):
            return MatchResult(booking_id, skipped=True, reason=f"booking status is {booking.status}")

        eligible = await find_eligible_technicians(db, booking.service_id)
        if not eligible:
            logger.info("match: no eligible technicians for booking %s", booking_id)
            return MatchResult(booking_id, reason="no_eligible_technicians")

        radius = booking.radius_meters or BROADCAST_BASE_RADIUS_METERS
        ids = await locate(db, [t.id for t in eligible], location_hint(booking), radius, limit)

    if not ids:
        logger.info("match: no nearby technicians for booking %s", booking_id)
        return MatchResult(booking_id, reason="no_nearby_technicians")

    return MatchResult(booking_id, technician_ids=ids)
