"""
Technician wallet: append-only ledger, cached balance, and withdrawals.

Every balance change is written in the same transaction as the ledger row
that explains it. Debits go through a conditional decrement so a balance can
never be driven below zero by two approvals racing each other.
"""
import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import MIN_WITHDRAWAL_AMOUNT, WITHDRAWAL_COOLDOWN_DAYS
from .errors import (
    ACTIVE_WITHDRAWAL_EXISTS,
    INVALID_TRANSITION,
    ConflictError,
    NotFound,
    ValidationFailed,
)
from .models import (
    ServiceBooking,
    Technician,
    WalletTransaction,
    WalletTxSource,
    WalletTxType,
    WithdrawalRequest,
    WithdrawalStatus,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

APPROVE = "approve"
REJECT = "reject"
MARK_PAID = "mark_paid"
DECISIONS = (APPROVE, REJECT, MARK_PAID)
PAST_TENSE = {APPROVE: "approved", REJECT: "rejected", MARK_PAID: "marked paid"}


def _amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationFailed("Amount must be numeric")
    if not amount.is_finite():
        raise ValidationFailed("Amount must be numeric")
    if amount <= 0:
        raise ValidationFailed("Amount must be positive")
    return amount.quantize(Decimal("0.01"))


async def _technician(db: AsyncSession, technician_id: str) -> Technician:
    res = await db.execute(
        select(Technician)
        .where(Technician.id == technician_id)
        .execution_options(populate_existing=True)
    )
    technician = res.scalar_one_or_none()
    if technician is None:
        raise NotFound("Technician not found")
    return technician


async def _debit_balance(db: AsyncSession, technician_id: str, amount: Decimal) -> bool:
    res = await db.execute(
        update(Technician)
        .where(Technician.id == technician_id, Technician.wallet_balance >= amount)
        .values(wallet_balance=Technician.wallet_balance - amount)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def _credit_balance(db: AsyncSession, technician_id: str, amount: Decimal):
    await db.execute(
        update(Technician)
        .where(Technician.id == technician_id)
        .values(wallet_balance=Technician.wallet_balance + amount)
        .execution_options(synchronize_session=False)
    )


async def wallet_history(db: AsyncSession, technician_id: str) -> tuple[Decimal, list[WalletTransaction]]:
    async with db.begin():
        technician = await _technician(db, technician_id)
        res = await db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.technician_id == technician_id)
            .order_by(WalletTransaction.created_at.desc())
        )
        return Decimal(technician.wallet_balance), list(res.scalars().all())


async def create_wallet_transaction(
    db: AsyncSession,
    *,
    technician_id: str,
    amount,
    type: str,
    source: str,
    booking_id: str | None = None,
    note: str | None = None,
) -> WalletTransaction:
    """Manual ledger entry recorded by the owner (bonus, correction, penalty)."""
    amount = _amount(amount)
    if type not in (WalletTxType.CREDIT, WalletTxType.DEBIT):
        raise ValidationFailed("Invalid transaction type")
    if source not in (WalletTxSource.JOB, WalletTxSource.PENALTY):
        raise ValidationFailed("Invalid transaction source")

    try:
        async with db.begin():
            await _technician(db, technician_id)
            if booking_id:
                res = await db.execute(
                    select(ServiceBooking.id).where(
                        ServiceBooking.id == booking_id,
                        ServiceBooking.technician_id == technician_id,
                    )
                )
                if res.scalar_one_or_none() is None:
                    raise NotFound("Booking not found for technician")

            entry = WalletTransaction(
                technician_id=technician_id,
                booking_id=booking_id,
                amount=amount,
                type=type,
                source=source,
                note=note,
            )
            db.add(entry)
            await db.flush()

            if type == WalletTxType.CREDIT:
                await _credit_balance(db, technician_id, amount)
            elif not await _debit_balance(db, technician_id, amount):
                raise ValidationFailed("Insufficient wallet balance")
    except IntegrityError:
        raise ConflictError(
            "A matching ledger entry already exists for this booking",
            detail={"booking_id": booking_id, "type": type, "source": source},
        )

    return entry


async def list_withdrawals(
    db: AsyncSession,
    technician_id: str | None = None,
    status: str | None = None,
) -> list[WithdrawalRequest]:
    stmt = select(WithdrawalRequest).order_by(WithdrawalRequest.created_at.desc())
    if technician_id:
        stmt = stmt.where(WithdrawalRequest.technician_id == technician_id)
    if status:
        if status not in WithdrawalStatus.ALL:
            raise ValidationFailed("Invalid withdrawal status", detail={"allowed": list(WithdrawalStatus.ALL)})
        stmt = stmt.where(WithdrawalRequest.status == status)
    async with db.begin():
        res = await db.execute(stmt)
        return list(res.scalars().all())


async def request_withdrawal(
    db: AsyncSession,
    technician_id: str,
    amount,
    *,
    min_amount: float = MIN_WITHDRAWAL_AMOUNT,
    cooldown_days: float = WITHDRAWAL_COOLDOWN_DAYS,
) -> WithdrawalRequest:
    amount = _amount(amount)
    if amount < Decimal(str(min_amount)):
        raise ValidationFailed(
            f"Minimum withdrawal is {min_amount}",
            detail={"minWithdrawal": min_amount},
        )

    now = utcnow()
    try:
        async with db.begin():
            technician = await _technician(db, technician_id)
            if Decimal(technician.wallet_balance) < amount:
                raise ValidationFailed(
                    "Insufficient wallet balance",
                    detail={"walletBalance": str(technician.wallet_balance)},
                )

            res = await db.execute(
                select(WithdrawalRequest).where(
                    WithdrawalRequest.technician_id == technician_id,
                    WithdrawalRequest.status.in_(WithdrawalStatus.ACTIVE),
                )
            )
            active = res.scalars().first()
            if active is not None:
                raise ConflictError(
                    "You already have an active withdrawal request",
                    code=ACTIVE_WITHDRAWAL_EXISTS,
                    detail={"requestId": active.id, "status": active.status},
                )

            res = await db.execute(
                select(WithdrawalRequest.created_at)
                .where(WithdrawalRequest.technician_id == technician_id)
                .order_by(WithdrawalRequest.created_at.desc())
                .limit(1)
            )
            last = as_utc(res.scalar_one_or_none())
            if last is not None and cooldown_days > 0 and now - last < timedelta(days=cooldown_days):
                raise ValidationFailed(
                    "Withdrawal cooldown active. Try later.",
                    detail={"lastRequestedAt": last.isoformat(), "cooldownDays": cooldown_days},
                )

            request = WithdrawalRequest(
                technician_id=technician_id,
                amount=amount,
                status=WithdrawalStatus.REQUESTED,
                created_at=now,
            )
            db.add(request)
            await db.flush()
    except IntegrityError:
        # partial unique index: another request became active concurrently
        raise ConflictError(
            "You already have an active withdrawal request",
            code=ACTIVE_WITHDRAWAL_EXISTS,
        )

    logger.info("wallet: technician %s requested withdrawal of %s", technician_id, amount)
    return request


async def _reload_withdrawal(db: AsyncSession, withdrawal_id: str) -> WithdrawalRequest:
    res = await db.execute(
        select(WithdrawalRequest)
        .where(WithdrawalRequest.id == withdrawal_id)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one()


async def cancel_withdrawal(db: AsyncSession, technician_id: str, withdrawal_id: str) -> WithdrawalRequest:
    async with db.begin():
        moved = await db.execute(
            update(WithdrawalRequest)
            .where(
                WithdrawalRequest.id == withdrawal_id,
                WithdrawalRequest.technician_id == technician_id,
                WithdrawalRequest.status == WithdrawalStatus.REQUESTED,
            )
            .values(
                status=WithdrawalStatus.CANCELLED,
                decided_at=utcnow(),
                decision_note="Cancelled by technician",
            )
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            raise NotFound("Withdrawal not found or not cancellable")
        return await _reload_withdrawal(db, withdrawal_id)


async def decide_withdrawal(
    db: AsyncSession,
    withdrawal_id: str,
    action: str,
    *,
    decided_by: str | None = None,
    note: str | None = None,
    payout_provider: str | None = None,
    payout_reference: str | None = None,
) -> WithdrawalRequest:
    if action not in DECISIONS:
        raise ValidationFailed("action must be approve|reject|mark_paid")

    now = utcnow()
    async with db.begin():
        request = await _reload_withdrawal_or_404(db, withdrawal_id)
        expected = WithdrawalStatus.APPROVED if action == MARK_PAID else WithdrawalStatus.REQUESTED
        if request.status != expected:
            raise ConflictError(
                f"Only {expected} withdrawals can be {PAST_TENSE[action]}",
                code=INVALID_TRANSITION,
                detail={"status": request.status},
            )

        values = dict(decided_at=now, decided_by=decided_by, decision_note=note)

        if action == APPROVE:
            amount = Decimal(request.amount)
            # balance is re-checked by the decrement itself
            if not await _debit_balance(db, request.technician_id, amount):
                raise ValidationFailed("Insufficient wallet balance to approve")
            entry = WalletTransaction(
                technician_id=request.technician_id,
                amount=amount,
                type=WalletTxType.DEBIT,
                source=WalletTxSource.WITHDRAWAL,
                note="Withdrawal approved - funds reserved",
            )
            db.add(entry)
            await db.flush()
            values.update(status=WithdrawalStatus.APPROVED, wallet_transaction_id=entry.id)
        elif action == REJECT:
            values.update(status=WithdrawalStatus.REJECTED)
        else:
            values.update(
                status=WithdrawalStatus.PAID,
                payout_provider=payout_provider or request.payout_provider or "manual",
                payout_reference=payout_reference or request.payout_reference,
            )

        moved = await db.execute(
            update(WithdrawalRequest)
            .where(WithdrawalRequest.id == withdrawal_id, WithdrawalRequest.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            raise ConflictError("Withdrawal changed concurrently", code=INVALID_TRANSITION)

        request = await _reload_withdrawal(db, withdrawal_id)

    logger.info("wallet: withdrawal %s -> %s", withdrawal_id, request.status)
    return request


async def _reload_withdrawal_or_404(db: AsyncSession, withdrawal_id: str) -> WithdrawalRequest:
    res = await db.execute(
        select(WithdrawalRequest)
        .where(WithdrawalRequest.id == withdrawal_id)
        .execution_options(populate_existing=True)
    )
    request = res.scalar_one_or_none()
    if request is None:
        raise NotFound("Withdrawal not found")
    return request
