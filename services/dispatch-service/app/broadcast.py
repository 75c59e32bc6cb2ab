import logging
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import BROADCAST_TTL_SECONDS
from .matcher import match
from .models import (
    BookingStatus,
    BroadcastStatus,
    JobBroadcast,
    Service,
    ServiceBooking,
    new_id,
    utcnow,
)
from .notifications import notifier as default_notifier, post_commit

logger = logging.getLogger(__name__)


@dataclass
class BroadcastResult:
    booking_id: str
    sent_to: list[str] = field(default_factory=list)
    skipped: bool = False
    reason: str | None = None

    @property
    def count(self) -> int:
        return len(self.sent_to)


async def _insert_ignoring_duplicates(db: AsyncSession, rows: list[dict]) -> list[str]:
    """Bulk insert offers; pairs that already exist are skipped, not fatal."""
    dialect = db.get_bind().dialect.name
    if dialect in ("sqlite", "postgresql"):
        insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
        stmt = (
            insert(JobBroadcast)
            .values(rows)
            .on_conflict_do_nothing(index_elements=["booking_id", "technician_id"])
            .returning(JobBroadcast.technician_id)
        )
        res = await db.execute(stmt)
        return list(res.scalars().all())

    inserted = []
    for row in rows:
        try:
            async with db.begin_nested():
                db.add(JobBroadcast(**row))
            inserted.append(row["technician_id"])
        except IntegrityError:
            continue
    return inserted


def job_summary(booking: ServiceBooking, service_name: str | None, expires_at) -> dict:
    return {
        "booking_id": booking.id,
        "service_id": booking.service_id,
        "service_name": service_name,
        "base_amount": float(booking.base_amount),
        "address": booking.address,
        "scheduled_at": booking.scheduled_at.isoformat() if booking.scheduled_at else None,
        "expires_at": expires_at.isoformat(),
    }


async def broadcast(
    db: AsyncSession,
    booking_id: str,
    technician_ids: list[str],
    *,
    ttl_seconds: int = BROADCAST_TTL_SECONDS,
    notifier=None,
) -> BroadcastResult:
    """
    Persist one `sent` offer per candidate and move the booking to
    `broadcasted`. Safe to retry: existing (booking, technician) pairs are
    left alone and only newly offered technicians are notified.
    """
    notifier = notifier or default_notifier
    technician_ids = list(dict.fromkeys(technician_ids))
    if not technician_ids:
        return BroadcastResult(booking_id, skipped=True, reason="no_candidates")

    now = utcnow()
    expires_at = now + timedelta(seconds=ttl_seconds)

    async with db.begin():
        # guard first: a booking assigned or cancelled since matching gets no new offers
        moved = await db.execute(
            update(ServiceBooking)
            .where(
                ServiceBooking.id == booking_id,
                ServiceBooking.status.in_(BookingStatus.OPEN),
                ServiceBooking.technician_id.is_(None),
            )
            .values(status=BookingStatus.BROADCASTED, broadcasted_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            return BroadcastResult(booking_id, skipped=True, reason="booking_no_longer_open")

        rows = [
            {
                "id": new_id(),
                "booking_id": booking_id,
                "technician_id": tid,
                "sent_at": now,
                "expires_at": expires_at,
                "status": BroadcastStatus.SENT,
            }
            for tid in technician_ids
        ]
        sent_to = await _insert_ignoring_duplicates(db, rows)

        res = await db.execute(
            select(ServiceBooking, Service.name)
            .join(Service, Service.id == ServiceBooking.service_id)
            .where(ServiceBooking.id == booking_id)
        )
        booking, service_name = res.one()

    if sent_to:
        post_commit.schedule(
            f"job-offer:{booking_id}",
            notifier.notify_technicians(sent_to, job_summary(booking, service_name, expires_at)),
        )

    logger.info("broadcast: booking %s offered to %d technicians", booking_id, len(sent_to))
    return BroadcastResult(booking_id, sent_to=sent_to)


async def dispatch_booking(db: AsyncSession, booking_id: str, *, notifier=None) -> BroadcastResult:
    """Match then fan out. A booking with no candidates stays unbroadcast."""
    matched = await match(db, booking_id)
    if matched.skipped or not matched.technician_ids:
        return BroadcastResult(booking_id, skipped=True, reason=matched.reason)
    return await broadcast(db, booking_id, matched.technician_ids, notifier=notifier)
