"""Payment: money received from (or refunded to) one student."""

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from educrm.core.enums import PaymentStatus
from educrm.db.session import Base


class Payment(Base):
    """
    Ledger entry for a student.

    net_amount = amount - discount_amount + late_fee_amount, computed once at creation.
    Status: pending -> completed (verify), pending -> failed, completed -> refunded (one-shot).
    The refund_* columns are set only when status is refunded.
    """

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','completed','failed','refunded')",
            name="chk_payment_status",
        ),
        CheckConstraint("amount > 0", name="chk_payment_amount_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    student_id = Column(UUID(as_uuid=True), ForeignKey("students.id", ondelete="RESTRICT"), nullable=False, index=True)
    receipt_number = Column(String(30), unique=True, nullable=False)  # RCP-YYYYMMDD-XXXX

    amount = Column(Numeric(14, 2), nullable=False)  # gross
    currency = Column(String(10), nullable=False, default="UZS")
    payment_method = Column(String(20), nullable=False)  # cash, card, bank_transfer, payme, click, uzum
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)

    # What the payment is for
    payment_for_type = Column(String(20), nullable=False)  # tuition, registration, materials, exam, certificate, other
    payment_for_description = Column(String(255), nullable=True)
    group_id = Column(UUID(as_uuid=True), ForeignKey("groups.id", ondelete="SET NULL"), nullable=True, index=True)
    payment_for_month = Column(String(20), nullable=True)
    payment_for_year = Column(Integer, nullable=True)

    payment_date = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow, index=True)
    due_date = Column(Date, nullable=True)

    discount_amount = Column(Numeric(14, 2), nullable=False, default=0)
    discount_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    discount_reason = Column(String(255), nullable=True)
    late_fee_amount = Column(Numeric(14, 2), nullable=False, default=0)
    late_fee_days = Column(Integer, nullable=False, default=0)
    net_amount = Column(Numeric(14, 2), nullable=False)

    transaction_id = Column(String(100), nullable=True)

    collected_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    verified_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    notes = Column(String(500), nullable=True)

    refund_amount = Column(Numeric(14, 2), nullable=True)
    refund_reason = Column(String(200), nullable=True)
    refunded_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    refund_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    student = relationship("Student", backref="payments")
    group = relationship("Group")
    collected_by_user = relationship("User", foreign_keys=[collected_by])
