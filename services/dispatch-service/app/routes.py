from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from . import acceptance, bookings, payments, wallet
from .db import SessionLocal
from .errors import Forbidden
from .schemas import (
    BookingResponse,
    CreateBookingRequest,
    CreateBookingResponse,
    CreatePaymentRequest,
    CreateWalletTransactionRequest,
    DispatchSummary,
    JobResponseOut,
    OfferResponse,
    PaymentOutcomeResponse,
    PaymentResponse,
    PaymentStatusRequest,
    RespondToJobRequest,
    SettlementResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
    VerifyPaymentRequest,
    WalletResponse,
    WalletTransactionResponse,
    WebhookResponse,
    WithdrawalDecisionRequest,
    WithdrawalRequestIn,
    WithdrawalResponse,
)
from .security import (
    ROLE_CUSTOMER,
    ROLE_OWNER,
    ROLE_TECHNICIAN,
    Principal,
    get_principal,
    parse_id,
    require_role,
    require_technician_profile,
)
from .settlement import settle_if_eligible

router = APIRouter()

SIGNATURE_HEADER = "X-Razorpay-Signature"
EVENT_ID_HEADER = "X-Razorpay-Event-Id"


async def get_db():
    async with SessionLocal() as session:
        yield session


def _booking_out(booking) -> BookingResponse:
    return BookingResponse.model_validate(booking)


def _dispatch_out(result) -> DispatchSummary | None:
    if result is None:
        return None
    return DispatchSummary(sent_to=result.sent_to, skipped=result.skipped, reason=result.reason)


def _settlement_out(result) -> SettlementResponse | None:
    if result is None:
        return None
    return SettlementResponse.model_validate(result)


# -------- BOOKINGS --------

@router.post("/bookings", response_model=CreateBookingResponse, status_code=201)
async def create_booking(
    data: CreateBookingRequest,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require_role(principal, [ROLE_CUSTOMER])
    created = await bookings.create_booking(
        db,
        principal,
        service_id=parse_id(data.service_id, "serviceId"),
        base_amount=data.base_amount,
        address=data.address,
        city=data.city,
        state=data.state,
        pincode=data.pincode,
        latitude=data.latitude,
        longitude=data.longitude,
        scheduled_at=data.scheduled_at,
        radius_meters=data.radius_meters,
    )
    return CreateBookingResponse(
        booking=_booking_out(created.booking),
        dispatch=_dispatch_out(created.dispatch),
        queued=created.queued,
    )


@router.get("/bookings/mine", response_model=list[BookingResponse])
async def my_bookings(principal: Principal = Depends(get_principal), db: AsyncSession = Depends(get_db)):
    require_role(principal, [ROLE_CUSTOMER])
    rows = await bookings.list_customer_bookings(db, principal.user_id)
    return [_booking_out(b) for b in rows]


@router.get("/bookings", response_model=list[BookingResponse])
async def all_bookings(
    status: str | None = None,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require_role(principal, [ROLE_OWNER])
    rows = await bookings.list_all_bookings(db, status=status)
    return [_booking_out(b) for b in rows]


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    booking = await bookings.get_booking(db, parse_id(booking_id, "bookingId"))
    allowed = (
        principal.role == ROLE_OWNER
        or (principal.role == ROLE_CUSTOMER and booking.customer_id == principal.user_id)
        or (principal.role == ROLE_TECHNICIAN and booking.technician_id == principal.profile_id)
    )
    if not allowed:
        raise Forbidden("Access denied for this booking")
    return _booking_out(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    booking = await bookings.cancel_booking(db, principal, parse_id(booking_id, "bookingId"))
    return _booking_out(booking)


@router.patch("/bookings/{booking_id}/status", response_model=StatusUpdateResponse)
async def update_booking_status(
    booking_id: str,
    data: StatusUpdateRequest,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    technician_id = require_technician_profile(principal)
    result = await bookings.update_status(db, technician_id, parse_id(booking_id, "bookingId"), data.status)
    return StatusUpdateResponse(booking=_booking_out(result.booking), settlement=_settlement_out(result.settlement))


@router.post("/bookings/{booking_id}/dispatch", response_model=DispatchSummary)
async def retry_dispatch(
    booking_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    result = await bookings.retry_dispatch(db, principal, parse_id(booking_id, "bookingId"))
    return _dispatch_out(result)


@router.post("/bookings/{booking_id}/settle", response_model=SettlementResponse)
async def retry_settlement(
    booking_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require_role(principal, [ROLE_OWNER])
    result = await settle_if_eligible(db, parse_id(booking_id, "bookingId"))
    return _settlement_out(result)


# -------- TECHNICIAN JOBS --------

@router.get("/technician/jobs/current", response_model=list[BookingResponse])
async def current_jobs(principal: Principal = Depends(get_principal), db: AsyncSession = Depends(get_db)):
    technician_id = require_technician_profile(principal)
    rows = await bookings.list_technician_jobs(db, technician_id)
    return [_booking_out(b) for b in rows]


@router.get("/technician/jobs/history", response_model=list[BookingResponse])
async def job_history(principal: Principal = Depends(get_principal), db: AsyncSession = Depends(get_db)):
    technician_id = require_technician_profile(principal)
    rows = await bookings.list_technician_jobs(db, technician_id, history=True)
    return [_booking_out(b) for b in rows]


@router.get("/technician/offers", response_model=list[OfferResponse])
async def open_offers(principal: Principal = Depends(get_principal), db: AsyncSession = Depends(get_db)):
    technician_id = require_technician_profile(principal)
    rows = await bookings.list_open_offers(db, technician_id)
    return [
        OfferResponse(
            broadcast_id=job.id,
            booking_id=booking.id,
            service_id=booking.service_id,
            base_amount=booking.base_amount,
            address=booking.address,
            scheduled_at=booking.scheduled_at,
            sent_at=job.sent_at,
            expires_at=job.expires_at,
        )
        for job, booking in rows
    ]


@router.post("/technician/offers/{broadcast_id}/respond", response_model=JobResponseOut)
async def respond_to_offer(
    broadcast_id: str,
    data: RespondToJobRequest,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    technician_id = require_technician_profile(principal)
    outcome = await acceptance.respond_to_job(
        db, technician_id, parse_id(broadcast_id, "broadcastId"), data.status
    )
    return JobResponseOut(
        broadcast_id=outcome.broadcast_id,
        status=outcome.status,
        booking=_booking_out(outcome.booking) if outcome.booking else None,
    )


# -------- PAYMENTS --------

@router.post("/payments", response_model=PaymentResponse, status_code=201)
async def create_payment(
    data: CreatePaymentRequest,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    payment = await payments.create_payment_order(db, principal, parse_id(data.booking_id, "bookingId"))
    return PaymentResponse.model_validate(payment)


@router.post("/payments/verify", response_model=PaymentOutcomeResponse)
async def verify_payment(
    data: VerifyPaymentRequest,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require_role(principal, [ROLE_CUSTOMER, ROLE_OWNER])
    outcome = await payments.verify_payment(db, data.order_id, data.payment_id, data.signature)
    return PaymentOutcomeResponse(
        payment=PaymentResponse.model_validate(outcome.payment),
        settlement=_settlement_out(outcome.settlement),
    )


@router.post("/payments/webhook", response_model=WebhookResponse)
async def payment_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    raw = await request.body()
    event, created = await payments.record_webhook(
        db,
        raw,
        request.headers.get(SIGNATURE_HEADER),
        request.headers.get(EVENT_ID_HEADER),
    )
    return WebhookResponse(event_id=event.event_id if event else None, recorded=created)


@router.patch("/payments/{payment_id}/status", response_model=PaymentOutcomeResponse)
async def update_payment_status(
    payment_id: str,
    data: PaymentStatusRequest,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require_role(principal, [ROLE_OWNER])
    outcome = await payments.update_payment_status(db, parse_id(payment_id, "paymentId"), data.status)
    return PaymentOutcomeResponse(
        payment=PaymentResponse.model_validate(outcome.payment),
        settlement=_settlement_out(outcome.settlement),
    )


# -------- WALLET --------

@router.get("/wallet", response_model=WalletResponse)
async def my_wallet(principal: Principal = Depends(get_principal), db: AsyncSession = Depends(get_db)):
    technician_id = require_technician_profile(principal)
    balance, rows = await wallet.wallet_history(db, technician_id)
    return WalletResponse(
        wallet_balance=balance,
        transactions=[WalletTransactionResponse.model_validate(t) for t in rows],
    )


@router.get("/wallet/{technician_id}", response_model=WalletResponse)
async def technician_wallet(
    technician_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require_role(principal, [ROLE_OWNER])
    balance, rows = await wallet.wallet_history(db, parse_id(technician_id, "technicianId"))
    return WalletResponse(
        wallet_balance=balance,
        transactions=[WalletTransactionResponse.model_validate(t) for t in rows],
    )


@router.post("/wallet/transactions", response_model=WalletTransactionResponse, status_code=201)
async def create_wallet_transaction(
    data: CreateWalletTransactionRequest,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require_role(principal, [ROLE_OWNER])
    entry = await wallet.create_wallet_transaction(
        db,
        technician_id=parse_id(data.technician_id, "technicianId"),
        booking_id=parse_id(data.booking_id, "bookingId") if data.booking_id else None,
        amount=data.amount,
        type=data.type,
        source=data.source,
        note=data.note,
    )
    return WalletTransactionResponse.model_validate(entry)


# -------- WITHDRAWALS --------

@router.post("/withdrawals", response_model=WithdrawalResponse, status_code=201)
async def request_withdrawal(
    data: WithdrawalRequestIn,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    technician_id = require_technician_profile(principal)
    request = await wallet.request_withdrawal(db, technician_id, data.amount)
    return WithdrawalResponse.model_validate(request)


@router.get("/withdrawals/mine", response_model=list[WithdrawalResponse])
async def my_withdrawals(principal: Principal = Depends(get_principal), db: AsyncSession = Depends(get_db)):
    technician_id = require_technician_profile(principal)
    rows = await wallet.list_withdrawals(db, technician_id=technician_id)
    return [WithdrawalResponse.model_validate(r) for r in rows]


@router.post("/withdrawals/{withdrawal_id}/cancel", response_model=WithdrawalResponse)
async def cancel_withdrawal(
    withdrawal_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    technician_id = require_technician_profile(principal)
    request = await wallet.cancel_withdrawal(db, technician_id, parse_id(withdrawal_id, "withdrawalId"))
    return WithdrawalResponse.model_validate(request)


@router.get("/withdrawals", response_model=list[WithdrawalResponse])
async def all_withdrawals(
    status: str | None = None,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require_role(principal, [ROLE_OWNER])
    rows = await wallet.list_withdrawals(db, status=status)
    return [WithdrawalResponse.model_validate(r) for r in rows]


@router.post("/withdrawals/{withdrawal_id}/decision", response_model=WithdrawalResponse)
async def decide_withdrawal(
    withdrawal_id: str,
    data: WithdrawalDecisionRequest,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    require_role(principal, [ROLE_OWNER])
    request = await wallet.decide_withdrawal(
        db,
        parse_id(withdrawal_id, "withdrawalId"),
        data.action,
        decided_by=principal.user_id,
        note=data.note,
        payout_provider=data.payout_provider,
        payout_reference=data.payout_reference,
    )
    return WithdrawalResponse.model_validate(request)
