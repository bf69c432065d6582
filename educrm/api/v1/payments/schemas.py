"""Payments schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from educrm.core.enums import PaymentForType, PaymentMethod, PaymentStatus


# --- Create ---
class PaymentForInput(BaseModel):
    type: PaymentForType
    description: Optional[str] = Field(None, max_length=255)
    group_id: Optional[UUID] = None
    month: Optional[str] = Field(None, max_length=20)
    year: Optional[int] = None


class DiscountInput(BaseModel):
    amount: Decimal = Field(Decimal("0"), ge=0, decimal_places=2)
    percentage: Decimal = Field(Decimal("0"), ge=0, le=100)
    reason: Optional[str] = Field(None, max_length=255)


class LateFeeInput(BaseModel):
    amount: Decimal = Field(Decimal("0"), ge=0, decimal_places=2)
    days_late: int = Field(0, ge=0)


class PaymentCreate(BaseModel):
    student_id: UUID
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    payment_method: PaymentMethod
    payment_for: PaymentForInput
    discount: DiscountInput = Field(default_factory=DiscountInput)
    late_fee: LateFeeInput = Field(default_factory=LateFeeInput)
    # pending = awaiting verification (e.g. cash handed to a receptionist)
    status: PaymentStatus = Field(PaymentStatus.COMPLETED, description="completed or pending")
    payment_date: Optional[datetime] = None
    due_date: Optional[date] = None
    transaction_id: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=500)


# --- Update / refund ---
class PaymentUpdate(BaseModel):
    status: Optional[PaymentStatus] = None
    notes: Optional[str] = Field(None, max_length=500)


class RefundRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    reason: str = Field(..., min_length=3, max_length=200)


# --- Responses ---
class PaymentResponse(BaseModel):
    id: UUID
    organization_id: UUID
    student_id: UUID
    receipt_number: str
    amount: Decimal
    currency: str
    payment_method: PaymentMethod
    status: PaymentStatus
    payment_for_type: PaymentForType
    payment_for_description: Optional[str] = None
    group_id: Optional[UUID] = None
    payment_for_month: Optional[str] = None
    payment_for_year: Optional[int] = None
    payment_date: datetime
    due_date: Optional[date] = None
    discount_amount: Decimal
    discount_percentage: Decimal
    discount_reason: Optional[str] = None
    late_fee_amount: Decimal
    late_fee_days: int
    net_amount: Decimal
    transaction_id: Optional[str] = None
    collected_by: Optional[UUID] = None
    verified_by: Optional[UUID] = None
    verified_at: Optional[datetime] = None
    notes: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refund_reason: Optional[str] = None
    refunded_by: Optional[UUID] = None
    refund_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class PaymentListResponse(BaseModel):
    items: List[PaymentResponse]
    pagination: Pagination


# --- Statistics ---
class PaymentSummary(BaseModel):
    total_amount: Decimal = Decimal("0")
    total_discount: Decimal = Decimal("0")
    total_late_fee: Decimal = Decimal("0")
    total_payments: int = 0
    average_payment: Decimal = Decimal("0")


class PaymentMethodBreakdown(BaseModel):
    payment_method: PaymentMethod
    count: int
    amount: Decimal


class PaymentStatistics(BaseModel):
    summary: PaymentSummary
    by_method: List[PaymentMethodBreakdown]


class TodaySummary(BaseModel):
    count: int
    total_amount: Decimal
    completed: int
    pending: int


class TodayPaymentsResponse(BaseModel):
    payments: List[PaymentResponse]
    summary: TodaySummary


# --- Overdue / fees ---
class OverdueStudent(BaseModel):
    student_id: UUID
    student_code: str
    full_name: str
    phone: Optional[str] = None
    debt: Decimal
    last_payment_date: datetime
    days_overdue: int


class OverdueResponse(BaseModel):
    count: int
    total_debt: Decimal
    overdue_payments: List[OverdueStudent]


class MonthlyFeeResponse(BaseModel):
    student_id: UUID
    monthly_fee: Decimal
    current_debt: Decimal


class LateFeeResponse(BaseModel):
    amount: Decimal
    days_late: int


# --- Receipt ---
class ReceiptOrganization(BaseModel):
    name: str
    address: Optional[str] = None


class ReceiptStudent(BaseModel):
    name: str
    student_code: str
    phone: Optional[str] = None


class ReceiptPayment(BaseModel):
    amount: Decimal
    discount: Decimal
    late_fee: Decimal
    net_amount: Decimal
    currency: str
    method: PaymentMethod
    status: PaymentStatus
    description: Optional[str] = None
    group: Optional[str] = None


class PaymentReceipt(BaseModel):
    receipt_number: str
    date: datetime
    organization: ReceiptOrganization
    student: ReceiptStudent
    payment: ReceiptPayment
    collected_by: Optional[str] = None
