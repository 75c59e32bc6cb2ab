import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)

from .db import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes; everything stored here is UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


Money = Numeric(12, 2, asdecimal=True)


class BookingStatus:
    REQUESTED = "requested"
    BROADCASTED = "broadcasted"
    ACCEPTED = "accepted"
    ON_THE_WAY = "on_the_way"
    REACHED = "reached"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    OPEN = (REQUESTED, BROADCASTED)
    ASSIGNED = (ACCEPTED, ON_THE_WAY, REACHED, IN_PROGRESS, COMPLETED)
    ACTIVE = (ACCEPTED, ON_THE_WAY, REACHED, IN_PROGRESS)
    CANCELLABLE = (REQUESTED, BROADCASTED, ACCEPTED)
    TERMINAL = (COMPLETED, CANCELLED)


class BroadcastStatus:
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class PaymentStatus:
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class BookingPaymentStatus:
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


class WalletTxType:
    CREDIT = "credit"
    DEBIT = "debit"


class WalletTxSource:
    JOB = "job"
    PENALTY = "penalty"
    WITHDRAWAL = "withdrawal"


class WithdrawalStatus:
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"
    CANCELLED = "cancelled"

    ACTIVE = (REQUESTED, APPROVED)
    ALL = (REQUESTED, APPROVED, REJECTED, PAID, CANCELLED)


class Service(Base):
    __tablename__ = "services"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    commission_percent = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class Technician(Base):
    __tablename__ = "technicians"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), unique=True, nullable=False, index=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)

    # raw entries: "<service id>" or {"serviceId": "<service id>"} (legacy rows mix both)
    skills = Column(JSON, nullable=False, default=list)

    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    pincode = Column(String, nullable=True, index=True)

    is_online = Column(Boolean, nullable=False, default=False, index=True)
    profile_complete = Column(Boolean, nullable=False, default=False)
    training_completed = Column(Boolean, nullable=False, default=False)
    work_status = Column(String, nullable=False, default="pending")  # pending/trained/approved/suspended

    rating_avg = Column(Float, nullable=False, default=0)
    rating_count = Column(Integer, nullable=False, default=0)
    jobs_completed = Column(Integer, nullable=False, default=0)

    wallet_balance = Column(Money, nullable=False, default=0)


class TechnicianKyc(Base):
    __tablename__ = "technician_kyc"

    id = Column(String(36), primary_key=True, default=new_id)
    technician_id = Column(String(36), ForeignKey("technicians.id"), unique=True, nullable=False)
    verification_status = Column(String, nullable=False, default="pending")  # pending/approved/rejected
    verified_at = Column(DateTime(timezone=True), nullable=True)


class ServiceBooking(Base):
    __tablename__ = "service_bookings"

    id = Column(String(36), primary_key=True, default=new_id)
    customer_id = Column(String(36), nullable=False, index=True)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=False, index=True)
    technician_id = Column(String(36), ForeignKey("technicians.id"), nullable=True, index=True)

    base_amount = Column(Money, nullable=False)

    address = Column(String, nullable=False)
    address_snapshot = Column(JSON, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    pincode = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    radius_meters = Column(Float, nullable=True)

    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    payment_status = Column(String, nullable=False, default=BookingPaymentStatus.PENDING, index=True)
    payment_id = Column(String(36), nullable=True)

    status = Column(String, nullable=False, default=BookingStatus.REQUESTED, index=True)
    broadcasted_at = Column(DateTime(timezone=True), nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_service_bookings_technician_status", "technician_id", "status"),
    )


class JobBroadcast(Base):
    __tablename__ = "job_broadcasts"

    id = Column(String(36), primary_key=True, default=new_id)
    booking_id = Column(String(36), ForeignKey("service_bookings.id"), nullable=False, index=True)
    technician_id = Column(String(36), ForeignKey("technicians.id"), nullable=False, index=True)

    sent_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    # business expiry: an offer past expires_at is void even while still "sent"
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String, nullable=False, default=BroadcastStatus.SENT, index=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("booking_id", "technician_id", name="uq_job_broadcasts_booking_technician"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    booking_id = Column(String(36), ForeignKey("service_bookings.id"), unique=True, nullable=False)

    provider = Column(String, nullable=False, default="razorpay")
    currency = Column(String, nullable=False, default="INR")
    provider_order_id = Column(String, nullable=True)
    provider_payment_id = Column(String, nullable=True)
    provider_signature = Column(String, nullable=True)

    base_amount = Column(Money, nullable=False)
    total_amount = Column(Money, nullable=False)
    commission_amount = Column(Money, nullable=False)
    technician_amount = Column(Money, nullable=False)

    status = Column(String, nullable=False, default=PaymentStatus.PENDING, index=True)
    failure_reason = Column(String, nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "provider_order_id", name="uq_payments_provider_order"),
        UniqueConstraint("provider", "provider_payment_id", name="uq_payments_provider_payment"),
    )


class PaymentEvent(Base):
    __tablename__ = "payment_events"

    id = Column(String(36), primary_key=True, default=new_id)
    provider = Column(String, nullable=False)
    event_id = Column(String, unique=True, nullable=False)
    event_type = Column(String, nullable=False, index=True)
    booking_id = Column(String(36), nullable=True, index=True)
    payment_id = Column(String(36), nullable=True, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    received_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id = Column(String(36), primary_key=True, default=new_id)
    technician_id = Column(String(36), ForeignKey("technicians.id"), nullable=False, index=True)
    booking_id = Column(String(36), ForeignKey("service_bookings.id"), nullable=True, index=True)
    amount = Column(Money, nullable=False)
    type = Column(String, nullable=False)  # credit/debit
    source = Column(String, nullable=False)  # job/penalty/withdrawal
    note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        # one job credit per booking; NULL booking ids never collide
        UniqueConstraint("booking_id", "type", "source", name="uq_wallet_tx_booking_type_source"),
    )


class WithdrawalRequest(Base):
    __tablename__ = "withdrawal_requests"

    id = Column(String(36), primary_key=True, default=new_id)
    technician_id = Column(String(36), ForeignKey("technicians.id"), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    status = Column(String, nullable=False, default=WithdrawalStatus.REQUESTED, index=True)

    decided_at = Column(DateTime(timezone=True), nullable=True)
    decided_by = Column(String(36), nullable=True)
    decision_note = Column(String, nullable=True)
    payout_provider = Column(String, nullable=True)
    payout_reference = Column(String, nullable=True)
    wallet_transaction_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index(
            "uq_withdrawal_requests_one_active",
            "technician_id",
            unique=True,
            sqlite_where=text("status IN ('requested', 'approved')"),
            postgresql_where=text("status IN ('requested', 'approved')"),
        ),
    )
