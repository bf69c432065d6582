"""Payments router: create, list, refund, verify, statistics, receipts, fee calculators."""

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from educrm.auth.dependencies import get_current_user
from educrm.auth.rbac import require_admin, require_roles
from educrm.auth.schemas import CurrentUser
from educrm.core.enums import PaymentMethod, PaymentStatus, UserRole
from educrm.core.exceptions import ServiceError
from educrm.db.session import get_db
from educrm.notifications.receipts import ReceiptNotifier, get_receipt_notifier

from .schemas import (
    LateFeeResponse,
    MonthlyFeeResponse,
    OverdueResponse,
    PaymentCreate,
    PaymentListResponse,
    PaymentReceipt,
    PaymentResponse,
    PaymentStatistics,
    PaymentUpdate,
    RefundRequest,
    TodayPaymentsResponse,
)
from . import service

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


async def _own_student_scope(db: AsyncSession, current_user: CurrentUser) -> Optional[UUID]:
    """Students only see their own payments; staff see the whole organization."""
    if current_user.role != UserRole.STUDENT:
        return None
    student_id = await service.get_student_id_for_user(db, current_user.organization_id, current_user.id)
    if student_id is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return student_id


# --- Reports ---
@router.get(
    "/statistics",
    response_model=PaymentStatistics,
)
async def get_payment_statistics(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
) -> PaymentStatistics:
    return await service.get_payment_statistics(
        db, current_user.organization_id, start_date=start_date, end_date=end_date
    )


@router.get("/today", response_model=TodayPaymentsResponse)
async def get_today_payments(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
) -> TodayPaymentsResponse:
    return await service.get_today_payments(db, current_user.organization_id)


@router.get("/pending", response_model=List[PaymentResponse])
async def get_pending_payments(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
) -> List[PaymentResponse]:
    return await service.get_pending_payments(db, current_user.organization_id)


@router.get("/overdue", response_model=OverdueResponse)
async def get_overdue_payments(
    days: Optional[int] = Query(None, ge=0, description="Days since last payment; defaults to OVERDUE_AFTER_DAYS"),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
) -> OverdueResponse:
    return await service.get_overdue_students(db, current_user.organization_id, overdue_after_days=days)


@router.get("/export")
async def export_payments(
    payment_status: Optional[PaymentStatus] = Query(None, alias="status"),
    payment_method: Optional[PaymentMethod] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
) -> Response:
    content = await service.export_payments_xlsx(
        db,
        current_user.organization_id,
        status=payment_status,
        payment_method=payment_method,
        start_date=start_date,
        end_date=end_date,
    )
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": "attachment; filename=payments.xlsx"},
    )


# --- Fee calculators ---
@router.get("/calculate-fee/{student_id}", response_model=MonthlyFeeResponse)
async def calculate_monthly_fee(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
) -> MonthlyFeeResponse:
    try:
        return await service.calculate_monthly_fee(db, current_user.organization_id, student_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/late-fee/{student_id}", response_model=LateFeeResponse)
async def calculate_late_fee(
    student_id: UUID,
    days_late: int = Query(..., ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
) -> LateFeeResponse:
    try:
        return await service.calculate_late_fee(db, current_user.organization_id, student_id, days_late)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# --- CRUD ---
@router.post(
    "",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_payment(
    payload: PaymentCreate,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(UserRole.ADMIN, UserRole.ACCOUNTANT)),
    notifier: ReceiptNotifier = Depends(get_receipt_notifier),
) -> PaymentResponse:
    try:
        payment = await service.process_payment(
            db,
            current_user.organization_id,
            payload,
            collected_by=current_user.id,
        )
        contact = await service.get_receipt_contact(db, payment.student_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    # Runs after the response; delivery problems are logged by the notifier
    background_tasks.add_task(notifier.send_payment_receipt, contact, payment)
    return payment


@router.get("", response_model=PaymentListResponse)
async def list_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    payment_status: Optional[PaymentStatus] = Query(None, alias="status"),
    payment_method: Optional[PaymentMethod] = Query(None),
    student_id: Optional[UUID] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    search: Optional[str] = Query(None, description="Receipt number fragment"),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> PaymentListResponse:
    own_student_id = await _own_student_scope(db, current_user)
    return await service.list_payments(
        db,
        current_user.organization_id,
        page=page,
        limit=limit,
        status=payment_status,
        payment_method=payment_method,
        student_id=own_student_id or student_id,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> PaymentResponse:
    own_student_id = await _own_student_scope(db, current_user)
    try:
        return await service.get_payment(db, current_user.organization_id, payment_id, student_id=own_student_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.put("/{payment_id}", response_model=PaymentResponse)
async def update_payment(
    payment_id: UUID,
    payload: PaymentUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
) -> PaymentResponse:
    try:
        return await service.update_payment(
            db, current_user.organization_id, payment_id, payload, changed_by=current_user.id
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.delete("/{payment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_payment(
    payment_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
) -> Response:
    try:
        await service.delete_payment(db, current_user.organization_id, payment_id, changed_by=current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Payment actions ---
@router.post("/{payment_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    payment_id: UUID,
    payload: RefundRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
) -> PaymentResponse:
    try:
        return await service.process_refund(
            db, current_user.organization_id, payment_id, payload, refunded_by=current_user.id
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{payment_id}/verify", response_model=PaymentResponse)
async def verify_payment(
    payment_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
) -> PaymentResponse:
    try:
        return await service.verify_payment(
            db, current_user.organization_id, payment_id, verified_by=current_user.id
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/{payment_id}/receipt", response_model=PaymentReceipt)
async def get_payment_receipt(
    payment_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> PaymentReceipt:
    own_student_id = await _own_student_scope(db, current_user)
    try:
        return await service.get_payment_receipt(
            db, current_user.organization_id, payment_id, student_id=own_student_id
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
