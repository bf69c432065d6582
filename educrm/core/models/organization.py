import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from educrm.db.session import Base


class Organization(Base):
    """
    Tenant (education center) in the multi-tenant CRM.

    Financial settings drive late fee calculation:
    - grace_period_days: days after the due date with no late fee.
    - late_fee_per_day: charged for every day past the grace period.
    """

    __tablename__ = "organizations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    address = Column(String(500), nullable=True)
    currency = Column(String(10), nullable=False, default="UZS")
    grace_period_days = Column(Integer, nullable=False, default=0)
    late_fee_per_day = Column(Numeric(14, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default="ACTIVE")
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    users = relationship("User", back_populates="organization", cascade="all, delete-orphan")
