from educrm.core.models.organization import Organization
from educrm.core.models.group import Group, student_groups
from educrm.core.models.student import Student
from educrm.core.models.payment import Payment
from educrm.core.models.payment_audit_log import PaymentAuditLog

__all__ = [
    "Organization",
    "Group",
    "student_groups",
    "Student",
    "Payment",
    "PaymentAuditLog",
]
