from enum import Enum


class UserRole(str, Enum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"
    ACCOUNTANT = "accountant"
    RECEPTIONIST = "receptionist"


class StudentStatus(str, Enum):
    ACTIVE = "active"
    FROZEN = "frozen"
    COMPLETED = "completed"
    DROPPED = "dropped"


class GroupStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    COMPLETED = "completed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    PAYME = "payme"
    CLICK = "click"
    UZUM = "uzum"


class PaymentForType(str, Enum):
    TUITION = "tuition"
    REGISTRATION = "registration"
    MATERIALS = "materials"
    EXAM = "exam"
    CERTIFICATE = "certificate"
    OTHER = "other"


class PaymentAuditAction(str, Enum):
    CREATE = "CREATE"
    VERIFY = "VERIFY"
    REFUND = "REFUND"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
