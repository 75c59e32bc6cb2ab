from datetime import timedelta
from decimal import Decimal

from app.models import (
    BookingStatus,
    BroadcastStatus,
    JobBroadcast,
    Payment,
    PaymentStatus,
    Service,
    ServiceBooking,
    Technician,
    TechnicianKyc,
    new_id,
    utcnow,
)
from app.security import ROLE_CUSTOMER, ROLE_OWNER, ROLE_TECHNICIAN, Principal

# Bengaluru, roughly MG Road
CENTER = (12.9716, 77.5946)


def km_north(km: float, origin=CENTER) -> tuple[float, float]:
    return origin[0] + km / 111.0, origin[1]


def customer(user_id: str | None = None) -> Principal:
    return Principal(user_id=user_id or new_id(), role=ROLE_CUSTOMER)


def owner() -> Principal:
    return Principal(user_id=new_id(), role=ROLE_OWNER)


def technician_principal(technician: Technician) -> Principal:
    return Principal(user_id=technician.user_id, role=ROLE_TECHNICIAN, profile_id=technician.id)


async def add(db, *objects):
    async with db.begin():
        for obj in objects:
            db.add(obj)
    return objects[0] if len(objects) == 1 else objects


async def seed_service(db, *, commission_percent=10.0, is_active=True) -> Service:
    return await add(db, Service(name="AC Repair", commission_percent=commission_percent, is_active=is_active))


async def seed_technician(
    db,
    service_id: str | None = None,
    *,
    at=CENTER,
    skills=None,
    kyc="approved",
    online=True,
    profile_complete=True,
    training_completed=True,
    work_status="approved",
    city=None,
    state=None,
    pincode=None,
    wallet_balance=0,
    rating_avg=4.5,
    rating_count=10,
) -> Technician:
    if skills is None:
        skills = [{"serviceId": service_id}] if service_id else []
    technician = Technician(
        id=new_id(),
        user_id=new_id(),
        first_name="Test",
        skills=skills,
        latitude=at[0] if at else None,
        longitude=at[1] if at else None,
        city=city,
        state=state,
        pincode=pincode,
        is_online=online,
        profile_complete=profile_complete,
        training_completed=training_completed,
        work_status=work_status,
        rating_avg=rating_avg,
        rating_count=rating_count,
        jobs_completed=0,
        wallet_balance=Decimal(str(wallet_balance)),
    )
    objects = [technician]
    if kyc:
        objects.append(TechnicianKyc(technician_id=technician.id, verification_status=kyc))
    await add(db, *objects)
    return technician


async def seed_booking(
    db,
    service_id: str,
    *,
    customer_id: str | None = None,
    at=CENTER,
    status=BookingStatus.REQUESTED,
    technician_id=None,
    base_amount=500,
    city=None,
    state=None,
    pincode=None,
    radius_meters=None,
) -> ServiceBooking:
    return await add(
        db,
        ServiceBooking(
            customer_id=customer_id or new_id(),
            service_id=service_id,
            technician_id=technician_id,
            base_amount=Decimal(str(base_amount)),
            address="221B Residency Road",
            latitude=at[0] if at else None,
            longitude=at[1] if at else None,
            city=city,
            state=state,
            pincode=pincode,
            radius_meters=radius_meters,
            status=status,
        ),
    )


async def seed_offer(db, booking_id: str, technician_id: str, *, ttl_seconds=60, status=BroadcastStatus.SENT):
    now = utcnow()
    return await add(
        db,
        JobBroadcast(
            booking_id=booking_id,
            technician_id=technician_id,
            sent_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            status=status,
        ),
    )


async def seed_payment(db, booking_id: str, *, status=PaymentStatus.PENDING, total=500, commission=50):
    total = Decimal(str(total))
    commission = Decimal(str(commission))
    return await add(
        db,
        Payment(
            booking_id=booking_id,
            provider="razorpay",
            provider_order_id=f"order_{new_id()[:8]}",
            base_amount=total,
            total_amount=total,
            commission_amount=commission,
            technician_amount=total - commission,
            status=status,
        ),
    )
