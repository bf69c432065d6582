"""Students router: enrollment records, balances and payment history."""

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from educrm.api.v1.payments import service as payment_service
from educrm.api.v1.payments.schemas import PaymentListResponse
from educrm.auth.rbac import require_roles
from educrm.auth.schemas import CurrentUser
from educrm.core.enums import PaymentStatus, StudentStatus, UserRole
from educrm.core.exceptions import ServiceError
from educrm.db.session import get_db

from .schemas import StudentCreate, StudentResponse
from . import service

router = APIRouter(prefix="/api/v1/students", tags=["students"])

require_staff = require_roles(UserRole.ADMIN, UserRole.ACCOUNTANT, UserRole.RECEPTIONIST)


@router.post(
    "",
    response_model=StudentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_student(
    payload: StudentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(UserRole.ADMIN, UserRole.RECEPTIONIST)),
) -> StudentResponse:
    try:
        return await service.create_student(db, current_user.organization_id, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("", response_model=List[StudentResponse])
async def list_students(
    student_status: Optional[StudentStatus] = Query(None, alias="status"),
    in_debt: bool = Query(False, description="Only students with outstanding debt"),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_staff),
) -> List[StudentResponse]:
    return await service.list_students(
        db, current_user.organization_id, status_filter=student_status, in_debt=in_debt
    )


@router.get("/{student_id}", response_model=StudentResponse)
async def get_student(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_staff),
) -> StudentResponse:
    try:
        return await service.get_student(db, current_user.organization_id, student_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/{student_id}/payments", response_model=PaymentListResponse)
async def get_student_payment_history(
    student_id: UUID,
    payment_status: Optional[PaymentStatus] = Query(None, alias="status"),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_staff),
) -> PaymentListResponse:
    try:
        return await payment_service.get_payment_history(
            db,
            current_user.organization_id,
            student_id,
            status=payment_status,
            start_date=start_date,
            end_date=end_date,
            page=page,
            limit=limit,
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
