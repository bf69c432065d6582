"""Payments service: ledger entries, student balances, refunds, verification, statistics.

Every mutation writes the payment row, the balance delta and an audit row in one
transaction. Balances are changed with atomic UPDATE expressions, never read-modify-write.
"""

import io
import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from openpyxl import Workbook
from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from educrm.core.config import settings
from educrm.core.enums import GroupStatus, PaymentAuditAction, PaymentMethod, PaymentStatus, StudentStatus
from educrm.core.exceptions import (
    ConflictError,
    DependencyError,
    InvalidStateError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from educrm.core.generators import generate_receipt_number
from educrm.core.models import Group, Organization, Payment, PaymentAuditLog, Student
from educrm.notifications.receipts import ReceiptContact

from .schemas import (
    LateFeeResponse,
    MonthlyFeeResponse,
    OverdueResponse,
    OverdueStudent,
    Pagination,
    PaymentCreate,
    PaymentListResponse,
    PaymentMethodBreakdown,
    PaymentReceipt,
    PaymentResponse,
    PaymentStatistics,
    PaymentSummary,
    PaymentUpdate,
    ReceiptOrganization,
    ReceiptPayment,
    ReceiptStudent,
    RefundRequest,
    TodayPaymentsResponse,
    TodaySummary,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _to_decimal(val) -> Decimal:
    if val is None:
        return Decimal("0")
    return val if isinstance(val, Decimal) else Decimal(str(val))


def _as_utc(dt: datetime) -> datetime:
    """Naive values (SQLite) are stored as UTC."""
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)


def _day_bounds(start_date: Optional[date], end_date: Optional[date]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Inclusive date range -> [start 00:00, day after end 00:00) in UTC."""
    start = datetime.combine(start_date, time.min, tzinfo=timezone.utc) if start_date else None
    end = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=timezone.utc) if end_date else None
    return start, end


def calculate_net_amount(amount: Decimal, discount: Decimal, late_fee: Decimal) -> Decimal:
    """Gross amount minus discount plus late fee."""
    return _to_decimal(amount) - _to_decimal(discount) + _to_decimal(late_fee)


def _payment_to_response(p: Payment) -> PaymentResponse:
    return PaymentResponse.model_validate(p)


def _payment_snapshot(p: Payment) -> dict:
    return {
        "receipt_number": p.receipt_number,
        "status": p.status,
        "amount": str(p.amount),
        "net_amount": str(p.net_amount),
        "notes": p.notes,
    }


# --- Audit helper ---
async def _log_payment_audit(
    db: AsyncSession,
    organization_id: UUID,
    payment_id: UUID,
    action_type: PaymentAuditAction,
    old_value: Optional[dict],
    new_value: Optional[dict],
    changed_by: Optional[UUID],
) -> None:
    db.add(
        PaymentAuditLog(
            organization_id=organization_id,
            payment_id=payment_id,
            action_type=action_type.value,
            old_value=old_value,
            new_value=new_value,
            changed_by=changed_by,
        )
    )


# --- Lookups ---
async def _get_student(db: AsyncSession, organization_id: UUID, student_id: UUID) -> Student:
    student = (
        await db.execute(
            select(Student).where(Student.id == student_id, Student.organization_id == organization_id)
        )
    ).scalar_one_or_none()
    if not student:
        raise NotFoundError("Student not found")
    return student


async def _get_payment(
    db: AsyncSession,
    organization_id: UUID,
    payment_id: UUID,
    student_id: Optional[UUID] = None,
) -> Payment:
    stmt = select(Payment).where(Payment.id == payment_id, Payment.organization_id == organization_id)
    if student_id is not None:
        stmt = stmt.where(Payment.student_id == student_id)
    payment = (await db.execute(stmt)).scalar_one_or_none()
    if not payment:
        raise NotFoundError("Payment not found")
    return payment


async def get_student_id_for_user(db: AsyncSession, organization_id: UUID, user_id: UUID) -> Optional[UUID]:
    """Student record linked to a portal login, if any."""
    return (
        await db.execute(
            select(Student.id).where(Student.user_id == user_id, Student.organization_id == organization_id)
        )
    ).scalar_one_or_none()


async def get_receipt_contact(db: AsyncSession, student_id: UUID) -> ReceiptContact:
    student = await db.get(Student, student_id)
    if not student:
        raise NotFoundError("Student not found")
    return ReceiptContact(full_name=student.full_name, email=student.email, phone=student.phone)


# --- Account balance ---
async def update_student_financials(db: AsyncSession, student_id: UUID, amount: Decimal) -> Student:
    """
    Apply a received amount to the student account:
    total_paid += amount, total_debt = max(0, total_debt - amount).

    Runs as a single UPDATE so concurrent payments cannot lose each other's writes.
    Does not commit; the caller owns the transaction.
    """
    amount = _to_decimal(amount)
    result = await db.execute(
        update(Student)
        .where(Student.id == student_id)
        .values(
            total_paid=Student.total_paid + amount,
            total_debt=case((Student.total_debt > amount, Student.total_debt - amount), else_=0),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError("Student not found")
    return await db.get(Student, student_id, populate_existing=True)


async def _reverse_student_financials(db: AsyncSession, student_id: UUID, amount: Decimal) -> Student:
    """Refund: total_paid -= amount, total_debt += amount (debt is reopened, not clamped)."""
    amount = _to_decimal(amount)
    result = await db.execute(
        update(Student)
        .where(Student.id == student_id)
        .values(
            total_paid=Student.total_paid - amount,
            total_debt=Student.total_debt + amount,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError("Student not found")
    return await db.get(Student, student_id, populate_existing=True)


async def _commit_ledger_write(db: AsyncSession, receipt_number: str) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Ledger write for %s failed; transaction rolled back", receipt_number, exc_info=True)
        raise DependencyError("Ledger update failed; no changes were saved") from e


# --- Create ---
async def process_payment(
    db: AsyncSession,
    organization_id: UUID,
    payload: PaymentCreate,
    collected_by: UUID,
) -> PaymentResponse:
    """
    Record a payment for a student.

    completed payments are applied to the balance immediately; pending payments wait for
    verify_payment. A receipt number collision rolls back and retries with a fresh number.
    """
    if payload.status not in (PaymentStatus.COMPLETED, PaymentStatus.PENDING):
        raise ValidationError("Payment can only be created as completed or pending")
    amount = _to_decimal(payload.amount)
    discount = _to_decimal(payload.discount.amount)
    late_fee = _to_decimal(payload.late_fee.amount)
    if amount <= 0:
        raise ValidationError("Amount must be greater than 0")
    if discount < 0 or late_fee < 0:
        raise ValidationError("Discount and late fee must be 0 or positive")
    net_amount = calculate_net_amount(amount, discount, late_fee)
    if net_amount < 0:
        raise ValidationError("Discount cannot exceed amount plus late fee")

    await _get_student(db, organization_id, payload.student_id)
    if payload.payment_for.group_id is not None:
        group = (
            await db.execute(
                select(Group.id).where(
                    Group.id == payload.payment_for.group_id,
                    Group.organization_id == organization_id,
                )
            )
        ).scalar_one_or_none()
        if not group:
            raise NotFoundError("Group not found")
    organization = await db.get(Organization, organization_id)
    currency = organization.currency if organization else "UZS"

    paid_at = _as_utc(payload.payment_date) if payload.payment_date else datetime.now(timezone.utc)
    attempts = max(1, settings.receipt_number_attempts)
    payment: Optional[Payment] = None
    for attempt in range(1, attempts + 1):
        candidate = Payment(
            organization_id=organization_id,
            student_id=payload.student_id,
            receipt_number=generate_receipt_number(),
            amount=amount,
            currency=currency,
            payment_method=payload.payment_method.value,
            status=payload.status.value,
            payment_for_type=payload.payment_for.type.value,
            payment_for_description=payload.payment_for.description,
            group_id=payload.payment_for.group_id,
            payment_for_month=payload.payment_for.month,
            payment_for_year=payload.payment_for.year,
            payment_date=paid_at,
            due_date=payload.due_date,
            discount_amount=discount,
            discount_percentage=_to_decimal(payload.discount.percentage),
            discount_reason=payload.discount.reason,
            late_fee_amount=late_fee,
            late_fee_days=payload.late_fee.days_late,
            net_amount=net_amount,
            transaction_id=(payload.transaction_id or "").strip() or None,
            collected_by=collected_by,
            notes=payload.notes,
        )
        db.add(candidate)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            logger.warning(
                "Receipt number %s already taken (attempt %d/%d)", candidate.receipt_number, attempt, attempts
            )
            continue
        payment = candidate
        break
    if payment is None:
        raise ConflictError("Could not allocate a unique receipt number, please retry")

    try:
        if payment.status == PaymentStatus.COMPLETED.value:
            await update_student_financials(db, payment.student_id, net_amount)
        await _log_payment_audit(
            db, organization_id, payment.id,
            PaymentAuditAction.CREATE,
            None,
            _payment_snapshot(payment),
            collected_by,
        )
    except ServiceError:
        await db.rollback()
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Balance update for %s failed; payment not recorded", payment.receipt_number, exc_info=True)
        raise DependencyError("Student balance update failed; payment was not recorded") from e
    await _commit_ledger_write(db, payment.receipt_number)
    await db.refresh(payment)
    logger.info("Payment processed: %s (net %s, %s)", payment.receipt_number, net_amount, payment.status)
    return _payment_to_response(payment)


# --- Refund ---
async def process_refund(
    db: AsyncSession,
    organization_id: UUID,
    payment_id: UUID,
    payload: RefundRequest,
    refunded_by: UUID,
) -> PaymentResponse:
    """
    Refund a completed payment (full or partial, once).

    The payment becomes refunded permanently; the refunded amount is taken off total_paid
    and added back to total_debt.
    """
    payment = await _get_payment(db, organization_id, payment_id)
    if payment.status == PaymentStatus.REFUNDED.value:
        raise InvalidStateError("Payment already refunded")
    if payment.status != PaymentStatus.COMPLETED.value:
        raise InvalidStateError("Can only refund completed payments")
    amount = _to_decimal(payload.amount)
    if amount <= 0:
        raise ValidationError("Refund amount must be greater than 0")
    if amount > _to_decimal(payment.amount):
        raise ValidationError("Refund amount cannot exceed payment amount")

    student_id = payment.student_id
    receipt_number = payment.receipt_number
    old_value = _payment_snapshot(payment)
    reason = payload.reason.strip()
    try:
        # Conditional flip: a concurrent refund that got here first leaves zero rows
        result = await db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.COMPLETED.value)
            .values(
                status=PaymentStatus.REFUNDED.value,
                refund_amount=amount,
                refund_reason=reason,
                refunded_by=refunded_by,
                refund_date=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidStateError("Payment already refunded")
        await _reverse_student_financials(db, student_id, amount)
        await _log_payment_audit(
            db, organization_id, payment_id,
            PaymentAuditAction.REFUND,
            old_value,
            {"status": PaymentStatus.REFUNDED.value, "refund_amount": str(amount), "refund_reason": reason},
            refunded_by,
        )
    except ServiceError:
        await db.rollback()
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Refund of %s failed; transaction rolled back", receipt_number, exc_info=True)
        raise DependencyError("Refund could not be recorded; no changes were saved") from e
    await _commit_ledger_write(db, receipt_number)
    payment = await db.get(Payment, payment_id, populate_existing=True)
    logger.info("Payment refunded: %s (%s)", receipt_number, amount)
    return _payment_to_response(payment)


# --- Verify ---
async def verify_payment(
    db: AsyncSession,
    organization_id: UUID,
    payment_id: UUID,
    verified_by: UUID,
) -> PaymentResponse:
    """Confirm a pending payment and apply its net amount to the student balance."""
    payment = await _get_payment(db, organization_id, payment_id)
    if payment.status != PaymentStatus.PENDING.value:
        raise InvalidStateError("Payment is not pending verification")

    student_id = payment.student_id
    net_amount = _to_decimal(payment.net_amount)
    receipt_number = payment.receipt_number
    try:
        result = await db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
            .values(
                status=PaymentStatus.COMPLETED.value,
                verified_by=verified_by,
                verified_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidStateError("Payment is not pending verification")
        await update_student_financials(db, student_id, net_amount)
        await _log_payment_audit(
            db, organization_id, payment_id,
            PaymentAuditAction.VERIFY,
            {"status": PaymentStatus.PENDING.value},
            {"status": PaymentStatus.COMPLETED.value},
            verified_by,
        )
    except ServiceError:
        await db.rollback()
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Verification of %s failed; transaction rolled back", receipt_number, exc_info=True)
        raise DependencyError("Verification could not be recorded; no changes were saved") from e
    await _commit_ledger_write(db, receipt_number)
    payment = await db.get(Payment, payment_id, populate_existing=True)
    logger.info("Payment verified: %s", receipt_number)
    return _payment_to_response(payment)


# --- Update / delete ---
async def update_payment(
    db: AsyncSession,
    organization_id: UUID,
    payment_id: UUID,
    payload: PaymentUpdate,
    changed_by: UUID,
) -> PaymentResponse:
    """
    Completed and refunded payments accept notes only. A pending payment may be marked
    failed; completing goes through verify_payment and refunding through process_refund.

    The write is conditional on the status seen here, so a payment verified or refunded
    in the meantime is never overwritten.
    """
    payment = await _get_payment(db, organization_id, payment_id)
    changes = payload.model_dump(exclude_unset=True)
    seen_status = payment.status
    final_states = (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value)
    if seen_status in final_states and any(key != "notes" for key in changes):
        raise InvalidStateError("Cannot update completed payment")

    new_status = changes.get("status")
    if new_status is not None and new_status.value != seen_status:
        if new_status == PaymentStatus.COMPLETED:
            raise InvalidStateError("Use verification to complete a pending payment")
        if new_status == PaymentStatus.REFUNDED:
            raise InvalidStateError("Use refund to refund a payment")
        if new_status == PaymentStatus.PENDING:
            raise InvalidStateError("A failed payment cannot be reopened")

    values = {}
    if new_status is not None:
        values["status"] = new_status.value
    if "notes" in changes:
        values["notes"] = changes["notes"]
    if not values:
        return _payment_to_response(payment)

    old_value = _payment_snapshot(payment)
    try:
        result = await db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == seen_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidStateError("Payment status changed, reload and try again")
        await _log_payment_audit(
            db, organization_id, payment_id,
            PaymentAuditAction.UPDATE,
            old_value,
            {**old_value, **values},
            changed_by,
        )
    except ServiceError:
        await db.rollback()
        raise
    await _commit_ledger_write(db, old_value["receipt_number"])
    payment = await db.get(Payment, payment_id, populate_existing=True)
    return _payment_to_response(payment)


async def delete_payment(
    db: AsyncSession,
    organization_id: UUID,
    payment_id: UUID,
    changed_by: UUID,
) -> None:
    payment = await _get_payment(db, organization_id, payment_id)
    if payment.status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
        raise InvalidStateError("Cannot delete completed payment. Please use refund instead.")
    old_value = _payment_snapshot(payment)
    receipt_number = payment.receipt_number
    try:
        # Only rows still pending/failed go; a payment verified meanwhile stays
        result = await db.execute(
            delete(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status.in_([PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidStateError("Cannot delete completed payment. Please use refund instead.")
        await _log_payment_audit(
            db, organization_id, payment_id,
            PaymentAuditAction.DELETE,
            old_value,
            None,
            changed_by,
        )
    except ServiceError:
        await db.rollback()
        raise
    await _commit_ledger_write(db, receipt_number)
    db.expunge(payment)
    logger.info("Payment deleted: %s", receipt_number)


# --- Statistics ---
async def get_payment_statistics(
    db: AsyncSession,
    organization_id: UUID,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> PaymentStatistics:
    """Totals and per-method breakdown over completed payments in an inclusive date range."""
    conditions = [
        Payment.organization_id == organization_id,
        Payment.status == PaymentStatus.COMPLETED.value,
    ]
    start, end = _day_bounds(start_date, end_date)
    if start is not None:
        conditions.append(Payment.payment_date >= start)
    if end is not None:
        conditions.append(Payment.payment_date < end)

    row = (
        await db.execute(
            select(
                func.coalesce(func.sum(Payment.amount), 0),
                func.coalesce(func.sum(Payment.discount_amount), 0),
                func.coalesce(func.sum(Payment.late_fee_amount), 0),
                func.count(Payment.id),
                func.avg(Payment.amount),
            ).where(*conditions)
        )
    ).one()
    total_amount, total_discount, total_late_fee, count, average = row
    if not count:
        return PaymentStatistics(summary=PaymentSummary(), by_method=[])

    summary = PaymentSummary(
        total_amount=_to_decimal(total_amount),
        total_discount=_to_decimal(total_discount),
        total_late_fee=_to_decimal(total_late_fee),
        total_payments=count,
        average_payment=_to_decimal(average).quantize(CENT),
    )
    method_rows = (
        await db.execute(
            select(
                Payment.payment_method,
                func.count(Payment.id),
                func.coalesce(func.sum(Payment.amount), 0),
            )
            .where(*conditions)
            .group_by(Payment.payment_method)
            .order_by(Payment.payment_method)
        )
    ).all()
    by_method = [
        PaymentMethodBreakdown(payment_method=method, count=n, amount=_to_decimal(total))
        for method, n, total in method_rows
    ]
    return PaymentStatistics(summary=summary, by_method=by_method)


# --- Listing ---
def _payment_filters(
    organization_id: UUID,
    status: Optional[PaymentStatus] = None,
    payment_method: Optional[PaymentMethod] = None,
    student_id: Optional[UUID] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    search: Optional[str] = None,
) -> list:
    conditions = [Payment.organization_id == organization_id]
    if status is not None:
        conditions.append(Payment.status == status.value)
    if payment_method is not None:
        conditions.append(Payment.payment_method == payment_method.value)
    if student_id is not None:
        conditions.append(Payment.student_id == student_id)
    start, end = _day_bounds(start_date, end_date)
    if start is not None:
        conditions.append(Payment.payment_date >= start)
    if end is not None:
        conditions.append(Payment.payment_date < end)
    if search and search.strip():
        conditions.append(Payment.receipt_number.ilike(f"%{search.strip()}%"))
    return conditions


async def list_payments(
    db: AsyncSession,
    organization_id: UUID,
    page: int = 1,
    limit: int = 10,
    **filters,
) -> PaymentListResponse:
    conditions = _payment_filters(organization_id, **filters)
    total = (await db.execute(select(func.count(Payment.id)).where(*conditions))).scalar() or 0
    result = await db.execute(
        select(Payment)
        .where(*conditions)
        .order_by(Payment.payment_date.desc(), Payment.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return PaymentListResponse(
        items=[_payment_to_response(p) for p in result.scalars().all()],
        pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if limit else 0),
    )


async def get_payment_history(
    db: AsyncSession,
    organization_id: UUID,
    student_id: UUID,
    status: Optional[PaymentStatus] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 1,
    limit: int = 20,
) -> PaymentListResponse:
    await _get_student(db, organization_id, student_id)
    return await list_payments(
        db,
        organization_id,
        page=page,
        limit=limit,
        student_id=student_id,
        status=status,
        start_date=start_date,
        end_date=end_date,
    )


async def get_payment(
    db: AsyncSession,
    organization_id: UUID,
    payment_id: UUID,
    student_id: Optional[UUID] = None,
) -> PaymentResponse:
    """student_id restricts the lookup to that student's own payments."""
    return _payment_to_response(await _get_payment(db, organization_id, payment_id, student_id))


async def get_payment_receipt(
    db: AsyncSession,
    organization_id: UUID,
    payment_id: UUID,
    student_id: Optional[UUID] = None,
) -> PaymentReceipt:
    stmt = (
        select(Payment)
        .options(
            selectinload(Payment.student).selectinload(Student.organization),
            selectinload(Payment.group),
            selectinload(Payment.collected_by_user),
        )
        .where(Payment.id == payment_id, Payment.organization_id == organization_id)
    )
    if student_id is not None:
        stmt = stmt.where(Payment.student_id == student_id)
    payment = (await db.execute(stmt)).scalar_one_or_none()
    if not payment:
        raise NotFoundError("Payment not found")

    student = payment.student
    organization = student.organization
    return PaymentReceipt(
        receipt_number=payment.receipt_number,
        date=payment.payment_date,
        organization=ReceiptOrganization(name=organization.name, address=organization.address),
        student=ReceiptStudent(name=student.full_name, student_code=student.student_code, phone=student.phone),
        payment=ReceiptPayment(
            amount=payment.amount,
            discount=payment.discount_amount,
            late_fee=payment.late_fee_amount,
            net_amount=payment.net_amount,
            currency=payment.currency,
            method=payment.payment_method,
            status=payment.status,
            description=payment.payment_for_description,
            group=payment.group.name if payment.group else None,
        ),
        collected_by=payment.collected_by_user.full_name if payment.collected_by_user else None,
    )


async def get_today_payments(db: AsyncSession, organization_id: UUID) -> TodayPaymentsResponse:
    today = datetime.now(timezone.utc).date()
    start, end = _day_bounds(today, today)
    result = await db.execute(
        select(Payment)
        .where(
            Payment.organization_id == organization_id,
            Payment.payment_date >= start,
            Payment.payment_date < end,
        )
        .order_by(Payment.payment_date.desc(), Payment.id.desc())
    )
    payments = [_payment_to_response(p) for p in result.scalars().all()]
    completed = [p for p in payments if p.status == PaymentStatus.COMPLETED]
    return TodayPaymentsResponse(
        payments=payments,
        summary=TodaySummary(
            count=len(payments),
            total_amount=sum((p.amount for p in completed), Decimal("0")),
            completed=len(completed),
            pending=sum(1 for p in payments if p.status == PaymentStatus.PENDING),
        ),
    )


async def get_pending_payments(db: AsyncSession, organization_id: UUID) -> List[PaymentResponse]:
    result = await db.execute(
        select(Payment)
        .where(
            Payment.organization_id == organization_id,
            Payment.status == PaymentStatus.PENDING.value,
        )
        .order_by(Payment.payment_date.desc(), Payment.id.desc())
    )
    return [_payment_to_response(p) for p in result.scalars().all()]


async def get_overdue_students(
    db: AsyncSession,
    organization_id: UUID,
    overdue_after_days: Optional[int] = None,
) -> OverdueResponse:
    """Active students in debt whose last completed payment is older than the threshold."""
    threshold = settings.overdue_after_days if overdue_after_days is None else overdue_after_days
    last_paid = (
        select(
            Payment.student_id.label("student_id"),
            func.max(Payment.payment_date).label("last_payment_date"),
        )
        .where(
            Payment.organization_id == organization_id,
            Payment.status == PaymentStatus.COMPLETED.value,
        )
        .group_by(Payment.student_id)
        .subquery()
    )
    rows = (
        await db.execute(
            select(Student, last_paid.c.last_payment_date)
            .join(last_paid, last_paid.c.student_id == Student.id)
            .where(
                Student.organization_id == organization_id,
                Student.status == StudentStatus.ACTIVE.value,
                Student.total_debt > 0,
            )
        )
    ).all()

    now = datetime.now(timezone.utc)
    overdue: List[OverdueStudent] = []
    for student, last_payment_date in rows:
        days = (now - _as_utc(last_payment_date)).days
        if days > threshold:
            overdue.append(
                OverdueStudent(
                    student_id=student.id,
                    student_code=student.student_code,
                    full_name=student.full_name,
                    phone=student.phone,
                    debt=_to_decimal(student.total_debt),
                    last_payment_date=last_payment_date,
                    days_overdue=days,
                )
            )
    overdue.sort(key=lambda item: item.days_overdue, reverse=True)
    return OverdueResponse(
        count=len(overdue),
        total_debt=sum((item.debt for item in overdue), Decimal("0")),
        overdue_payments=overdue,
    )


# --- Fees ---
async def calculate_monthly_fee(db: AsyncSession, organization_id: UUID, student_id: UUID) -> MonthlyFeeResponse:
    """Sum of monthly fees of the student's active groups."""
    student = (
        await db.execute(
            select(Student)
            .options(selectinload(Student.groups))
            .where(Student.id == student_id, Student.organization_id == organization_id)
        )
    ).scalar_one_or_none()
    if not student:
        raise NotFoundError("Student not found")
    monthly_fee = sum(
        (_to_decimal(g.monthly_fee) for g in student.groups if g.status == GroupStatus.ACTIVE.value),
        Decimal("0"),
    )
    return MonthlyFeeResponse(
        student_id=student.id,
        monthly_fee=monthly_fee,
        current_debt=_to_decimal(student.total_debt),
    )


async def calculate_late_fee(
    db: AsyncSession,
    organization_id: UUID,
    student_id: UUID,
    days_late: int,
) -> LateFeeResponse:
    """No fee inside the organization's grace period; per-day fee for every day after it."""
    if days_late < 0:
        raise ValidationError("days_late must be 0 or positive")
    await _get_student(db, organization_id, student_id)
    organization = await db.get(Organization, organization_id)
    if not organization:
        raise NotFoundError("Organization not found")

    grace = organization.grace_period_days or 0
    if days_late <= grace:
        return LateFeeResponse(amount=Decimal("0"), days_late=0)
    actual_days_late = days_late - grace
    return LateFeeResponse(
        amount=actual_days_late * _to_decimal(organization.late_fee_per_day),
        days_late=actual_days_late,
    )


# --- Export ---
EXPORT_HEADERS = [
    "receipt_number",
    "payment_date",
    "student_id",
    "amount",
    "discount",
    "late_fee",
    "net_amount",
    "currency",
    "payment_method",
    "payment_for",
    "status",
    "refund_amount",
]


async def export_payments_xlsx(db: AsyncSession, organization_id: UUID, **filters) -> bytes:
    """Excel workbook of payments matching the list filters, newest first."""
    conditions = _payment_filters(organization_id, **filters)
    result = await db.execute(
        select(Payment).where(*conditions).order_by(Payment.payment_date.desc(), Payment.id.desc())
    )

    wb = Workbook()
    ws = wb.active
    ws.title = "Payments"
    ws.append(EXPORT_HEADERS)
    for p in result.scalars().all():
        ws.append(
            [
                p.receipt_number,
                _as_utc(p.payment_date).replace(tzinfo=None),
                str(p.student_id),
                float(p.amount),
                float(p.discount_amount),
                float(p.late_fee_amount),
                float(p.net_amount),
                p.currency,
                p.payment_method,
                p.payment_for_type,
                p.status,
                float(p.refund_amount) if p.refund_amount is not None else None,
            ]
        )
    bio = io.BytesIO()
    wb.save(bio)
    return bio.getvalue()
