"""Shared builders for tests."""

from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from educrm.auth.models import User
from educrm.auth.security import create_access_token, hash_password
from educrm.core.enums import UserRole
from educrm.core.models import Organization, Student

TEST_PASSWORD = "StrongPass123"


class RecordingNotifier:
    """Stands in for ReceiptNotifier; keeps what would have been sent."""

    def __init__(self) -> None:
        self.sent: List[Tuple] = []

    async def send_payment_receipt(self, contact, payment) -> None:
        self.sent.append((contact, payment))


async def make_user(db: AsyncSession, organization: Organization, role: UserRole, email: str) -> User:
    user = User(
        organization_id=organization.id,
        full_name=f"{role.value.title()} User",
        email=email,
        mobile="+998901112233",
        password_hash=hash_password(TEST_PASSWORD),
        role=role.value,
        status="ACTIVE",
    )
    db.add(user)
    await db.commit()
    return user


async def make_student(
    db: AsyncSession,
    organization: Organization,
    full_name: str = "Aziza Karimova",
    code: str = "STD-20261019-1234",
    total_debt: Decimal = Decimal("5000"),
    user: Optional[User] = None,
) -> Student:
    student = Student(
        organization_id=organization.id,
        user_id=user.id if user else None,
        student_code=code,
        full_name=full_name,
        phone="+998 90 123 45 67",
        email="aziza@mail.uz",
        total_paid=Decimal("0"),
        total_debt=total_debt,
    )
    db.add(student)
    await db.commit()
    return student


def auth_headers(user: User) -> Dict[str, str]:
    token = create_access_token(
        subject={
            "sub": str(user.id),
            "user_id": str(user.id),
            "organization_id": str(user.organization_id),
            "role": user.role,
        }
    )
    return {"Authorization": f"Bearer {token}"}
