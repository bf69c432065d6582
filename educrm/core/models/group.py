"""Group (class cohort). Only the monthly fee matters to the ledger."""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, Table
from sqlalchemy.dialects.postgresql import UUID

from educrm.core.enums import GroupStatus
from educrm.db.session import Base

# Current group memberships of a student
student_groups = Table(
    "student_groups",
    Base.metadata,
    Column("student_id", UUID(as_uuid=True), ForeignKey("students.id", ondelete="CASCADE"), primary_key=True),
    Column("group_id", UUID(as_uuid=True), ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
)


class Group(Base):
    __tablename__ = "groups"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)
    monthly_fee = Column(Numeric(14, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default=GroupStatus.ACTIVE.value)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
