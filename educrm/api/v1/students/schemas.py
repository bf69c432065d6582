"""Students schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from educrm.core.enums import StudentStatus


class StudentCreate(BaseModel):
    full_name: str = Field(..., min_length=2, max_length=255)
    phone: Optional[str] = Field(None, max_length=50)
    email: Optional[EmailStr] = None
    user_id: Optional[UUID] = None
    enrollment_date: Optional[date] = None
    # Opening balance carried over from before the student was entered in the CRM
    opening_debt: Decimal = Field(Decimal("0"), ge=0, decimal_places=2)
    group_ids: List[UUID] = Field(default_factory=list)


class StudentResponse(BaseModel):
    id: UUID
    organization_id: UUID
    user_id: Optional[UUID] = None
    student_code: str
    full_name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    status: StudentStatus
    enrollment_date: date
    contract_number: Optional[str] = None
    total_paid: Decimal
    total_debt: Decimal
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
