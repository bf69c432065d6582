"""Student account: identity, contact details and running ledger totals."""

import uuid
from datetime import date, datetime

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from educrm.core.enums import StudentStatus
from educrm.core.models.group import student_groups
from educrm.db.session import Base


class Student(Base):
    """
    Student of an organization.

    total_paid: cumulative net amount received (decreases only on refund).
    total_debt: outstanding balance, never negative. Both are changed only through
    atomic UPDATE expressions in the payments service.
    """

    __tablename__ = "students"
    __table_args__ = (
        CheckConstraint("total_debt >= 0", name="chk_student_total_debt_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Optional portal login for the student
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, unique=True)
    student_code = Column(String(30), unique=True, nullable=False)  # STD-YYYYMMDD-XXXX
    full_name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    email = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=StudentStatus.ACTIVE.value)
    enrollment_date = Column(Date, nullable=False, default=date.today)
    contract_number = Column(String(30), nullable=True)

    total_paid = Column(Numeric(14, 2), nullable=False, default=0)
    total_debt = Column(Numeric(14, 2), nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    organization = relationship("Organization")
    user = relationship("User", foreign_keys=[user_id])
    groups = relationship("Group", secondary=student_groups)
