from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class CreateBookingRequest(BaseModel):
    service_id: str
    base_amount: float = Field(ge=0)
    address: str | None = None
    city: str | None = None
    state: str | None = None
    pincode: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    scheduled_at: datetime | None = None
    radius_meters: float | None = Field(default=None, gt=0)


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str
    service_id: str
    technician_id: str | None = None
    base_amount: float
    address: str
    city: str | None = None
    state: str | None = None
    pincode: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    scheduled_at: datetime | None = None
    status: str
    payment_status: str
    broadcasted_at: datetime | None = None
    assigned_at: datetime | None = None
    created_at: datetime


class DispatchSummary(BaseModel):
    sent_to: list[str] = []
    skipped: bool = False
    reason: str | None = None


class CreateBookingResponse(BaseModel):
    booking: BookingResponse
    dispatch: DispatchSummary | None = None
    queued: bool = False


class StatusUpdateRequest(BaseModel):
    status: Literal["on_the_way", "reached", "in_progress", "completed"]


class SettlementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    settled: bool
    reason: str | None = None
    transaction_id: str | None = None
    amount: float | None = None


class StatusUpdateResponse(BaseModel):
    booking: BookingResponse
    settlement: SettlementResponse | None = None


class RespondToJobRequest(BaseModel):
    status: Literal["accepted", "rejected"]


class JobResponseOut(BaseModel):
    broadcast_id: str
    status: str
    booking: BookingResponse | None = None


class OfferResponse(BaseModel):
    broadcast_id: str
    booking_id: str
    service_id: str
    base_amount: float
    address: str
    scheduled_at: datetime | None = None
    sent_at: datetime
    expires_at: datetime


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    provider: str
    currency: str
    provider_order_id: str | None = None
    provider_payment_id: str | None = None
    base_amount: float
    total_amount: float
    commission_amount: float
    technician_amount: float
    status: str
    failure_reason: str | None = None
    verified_at: datetime | None = None
    created_at: datetime


class CreatePaymentRequest(BaseModel):
    booking_id: str


class VerifyPaymentRequest(BaseModel):
    order_id: str
    payment_id: str
    signature: str


class PaymentStatusRequest(BaseModel):
    status: Literal["success", "failed"]


class PaymentOutcomeResponse(BaseModel):
    payment: PaymentResponse
    settlement: SettlementResponse | None = None


class WebhookResponse(BaseModel):
    event_id: str | None = None
    recorded: bool


class WalletTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    technician_id: str
    booking_id: str | None = None
    amount: float
    type: str
    source: str
    note: str | None = None
    created_at: datetime


class WalletResponse(BaseModel):
    wallet_balance: float
    transactions: list[WalletTransactionResponse]


class CreateWalletTransactionRequest(BaseModel):
    technician_id: str
    booking_id: str | None = None
    amount: float = Field(gt=0)
    type: Literal["credit", "debit"]
    source: Literal["job", "penalty"]
    note: str | None = None


class WithdrawalRequestIn(BaseModel):
    amount: float = Field(gt=0)


class WithdrawalDecisionRequest(BaseModel):
    action: Literal["approve", "reject", "mark_paid"]
    note: str | None = None
    payout_provider: str | None = None
    payout_reference: str | None = None


class WithdrawalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    technician_id: str
    amount: float
    status: str
    decided_at: datetime | None = None
    decided_by: str | None = None
    decision_note: str | None = None
    payout_provider: str | None = None
    payout_reference: str | None = None
    wallet_transaction_id: str | None = None
    created_at: datetime
