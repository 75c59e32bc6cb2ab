"""
Resolution of technician responses to job offers.

The booking row is the only arbiter of who wins: the accept path assigns it
through a single conditional UPDATE whose WHERE clause carries the
precondition (still open, still unassigned). Whichever UPDATE the database
commits first wins; every other concurrent accept sees zero affected rows and
reports BOOKING_ALREADY_TAKEN. The winner's own offer flip and the expiry of
the losing offers ride in the same transaction, so a partially applied
acceptance is never visible.
"""
import logging
from dataclasses import dataclass, field

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .eligibility import ensure_technician_eligible
from .errors import (
    ALREADY_PROCESSED,
    BOOKING_ALREADY_TAKEN,
    BROADCAST_EXPIRED,
    ConflictError,
    Forbidden,
    ValidationFailed,
)
from .models import (
    BookingStatus,
    BroadcastStatus,
    JobBroadcast,
    ServiceBooking,
    as_utc,
    utcnow,
)
from .notifications import notifier as default_notifier, post_commit

logger = logging.getLogger(__name__)

ACCEPT = "accepted"
REJECT = "rejected"


@dataclass
class JobResponse:
    broadcast_id: str
    status: str
    booking: ServiceBooking | None = None
    losing_technician_ids: list[str] = field(default_factory=list)


def _conditional(stmt):
    return stmt.execution_options(synchronize_session=False)


async def _reject(db: AsyncSession, job: JobBroadcast, technician_id: str, now) -> JobResponse:
    res = await db.execute(
        _conditional(
            update(JobBroadcast)
            .where(
                JobBroadcast.id == job.id,
                JobBroadcast.technician_id == technician_id,
                JobBroadcast.status == BroadcastStatus.SENT,
                JobBroadcast.expires_at > now,
            )
            .values(status=BroadcastStatus.REJECTED, responded_at=now)
        )
    )
    if res.rowcount != 1:
        raise ConflictError("Job already processed", code=ALREADY_PROCESSED)
    return JobResponse(job.id, BroadcastStatus.REJECTED)


async def _accept(db: AsyncSession, job: JobBroadcast, technician_id: str, now) -> JobResponse:
    assigned = await db.execute(
        _conditional(
            update(ServiceBooking)
            .where(
                ServiceBooking.id == job.booking_id,
                ServiceBooking.status.in_(BookingStatus.OPEN),
                ServiceBooking.technician_id.is_(None),
            )
            .values(
                technician_id=technician_id,
                status=BookingStatus.ACCEPTED,
                assigned_at=now,
                updated_at=now,
            )
        )
    )
    if assigned.rowcount != 1:
        raise ConflictError("Booking already taken", code=BOOKING_ALREADY_TAKEN)

    own = await db.execute(
        _conditional(
            update(JobBroadcast)
            .where(
                JobBroadcast.id == job.id,
                JobBroadcast.technician_id == technician_id,
                JobBroadcast.status == BroadcastStatus.SENT,
                JobBroadcast.expires_at > now,
            )
            .values(status=BroadcastStatus.ACCEPTED, responded_at=now)
        )
    )
    if own.rowcount != 1:
        # raising aborts the transaction, undoing the booking assignment above
        raise ConflictError("Job already processed", code=ALREADY_PROCESSED)

    others = await db.execute(
        select(JobBroadcast.technician_id).where(
            JobBroadcast.booking_id == job.booking_id,
            JobBroadcast.id != job.id,
            JobBroadcast.status == BroadcastStatus.SENT,
        )
    )
    losing = [tid for tid in others.scalars().all() if tid != technician_id]

    await db.execute(
        _conditional(
            update(JobBroadcast)
            .where(
                JobBroadcast.booking_id == job.booking_id,
                JobBroadcast.id != job.id,
                JobBroadcast.status == BroadcastStatus.SENT,
            )
            .values(status=BroadcastStatus.EXPIRED)
        )
    )

    res = await db.execute(
        select(ServiceBooking)
        .where(ServiceBooking.id == job.booking_id)
        .execution_options(populate_existing=True)
    )
    booking = res.scalar_one()
    return JobResponse(job.id, BroadcastStatus.ACCEPTED, booking=booking, losing_technician_ids=losing)


async def _closed_offer_error(db: AsyncSession, job: JobBroadcast, technician_id: str, now) -> ConflictError:
    """Conflict for an offer that is no longer `sent`."""
    if job.status == BroadcastStatus.EXPIRED:
        holder = await db.scalar(
            select(ServiceBooking.technician_id).where(ServiceBooking.id == job.booking_id)
        )
        if holder is not None and holder != technician_id:
            return ConflictError("Booking already taken", code=BOOKING_ALREADY_TAKEN)
        if as_utc(job.expires_at) <= now:
            return ConflictError(
                "Job offer has expired",
                code=BROADCAST_EXPIRED,
                detail={"expiresAt": as_utc(job.expires_at).isoformat()},
            )
    return ConflictError("Job already processed", code=ALREADY_PROCESSED)


async def respond_to_job(
    db: AsyncSession,
    technician_id: str,
    broadcast_id: str,
    action: str,
    *,
    notifier=None,
) -> JobResponse:
    if action not in (ACCEPT, REJECT):
        raise ValidationFailed("Invalid status", detail={"allowed": [ACCEPT, REJECT]})

    notifier = notifier or default_notifier
    now = utcnow()

    async with db.begin():
        # eligibility can change between offer and response
        await ensure_technician_eligible(db, technician_id)

        res = await db.execute(
            select(JobBroadcast)
            .where(JobBroadcast.id == broadcast_id)
            .execution_options(populate_existing=True)
        )
        job = res.scalar_one_or_none()
        if job is None:
            raise ConflictError("Job already processed", code=ALREADY_PROCESSED)

        if job.technician_id != technician_id:
            raise Forbidden("Access denied")

        if job.status != BroadcastStatus.SENT:
            raise await _closed_offer_error(db, job, technician_id, now)

        if as_utc(job.expires_at) <= now:
            raise ConflictError(
                "Job offer has expired",
                code=BROADCAST_EXPIRED,
                detail={"expiresAt": as_utc(job.expires_at).isoformat()},
            )

        if action == REJECT:
            return await _reject(db, job, technician_id, now)

        outcome = await _accept(db, job, technician_id, now)

    booking = outcome.booking
    post_commit.schedule(
        f"booking-accepted:{booking.id}",
        notifier.notify_customer(
            booking.customer_id,
            "booking_accepted",
            {"booking_id": booking.id, "technician_id": technician_id, "status": booking.status},
        ),
    )
    if outcome.losing_technician_ids:
        post_commit.schedule(
            f"job-taken:{booking.id}",
            notifier.notify_job_taken(outcome.losing_technician_ids, booking.id),
        )

    logger.info("acceptance: booking %s assigned to technician %s", booking.id, technician_id)
    return outcome
