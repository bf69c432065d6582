"""Students service: enrollment records and ledger balances."""

import logging
from datetime import date
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from educrm.core.enums import StudentStatus
from educrm.core.exceptions import ConflictError, NotFoundError
from educrm.core.generators import generate_contract_number, generate_student_code
from educrm.core.models import Group, Student

from .schemas import StudentCreate, StudentResponse

logger = logging.getLogger(__name__)

STUDENT_CODE_ATTEMPTS = 5


def _student_to_response(s: Student) -> StudentResponse:
    return StudentResponse.model_validate(s)


async def create_student(
    db: AsyncSession,
    organization_id: UUID,
    payload: StudentCreate,
) -> StudentResponse:
    groups: List[Group] = []
    if payload.group_ids:
        result = await db.execute(
            select(Group).where(
                Group.id.in_(payload.group_ids),
                Group.organization_id == organization_id,
            )
        )
        groups = list(result.scalars().all())
        if len(groups) != len(set(payload.group_ids)):
            raise NotFoundError("One or more groups not found")
    group_ids = [g.id for g in groups]

    for attempt in range(1, STUDENT_CODE_ATTEMPTS + 1):
        student = Student(
            organization_id=organization_id,
            user_id=payload.user_id,
            student_code=generate_student_code(),
            contract_number=generate_contract_number(),
            full_name=payload.full_name.strip(),
            phone=(payload.phone or "").strip() or None,
            email=payload.email,
            status=StudentStatus.ACTIVE.value,
            enrollment_date=payload.enrollment_date or date.today(),
            total_paid=0,
            total_debt=payload.opening_debt,
        )
        if group_ids:
            # Rollback on a retry expires the loaded groups, so reload them per attempt
            student.groups = list(
                (await db.execute(select(Group).where(Group.id.in_(group_ids)))).scalars().all()
            )
        db.add(student)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.warning("Student code collision (attempt %d/%d)", attempt, STUDENT_CODE_ATTEMPTS)
            continue
        await db.refresh(student)
        logger.info("Student created: %s", student.student_code)
        return _student_to_response(student)
    raise ConflictError("Could not create student, please retry")


async def get_student(db: AsyncSession, organization_id: UUID, student_id: UUID) -> StudentResponse:
    student = (
        await db.execute(
            select(Student).where(Student.id == student_id, Student.organization_id == organization_id)
        )
    ).scalar_one_or_none()
    if not student:
        raise NotFoundError("Student not found")
    return _student_to_response(student)


async def list_students(
    db: AsyncSession,
    organization_id: UUID,
    status_filter: Optional[StudentStatus] = None,
    in_debt: bool = False,
) -> List[StudentResponse]:
    stmt = select(Student).where(Student.organization_id == organization_id)
    if status_filter is not None:
        stmt = stmt.where(Student.status == status_filter.value)
    if in_debt:
        stmt = stmt.where(Student.total_debt > 0)
    stmt = stmt.order_by(Student.full_name)
    result = await db.execute(stmt)
    return [_student_to_response(s) for s in result.scalars().all()]
