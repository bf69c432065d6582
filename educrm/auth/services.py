from datetime import datetime, timezone

from fastapi import status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from educrm.auth.models import User
from educrm.auth.schemas import LoginRequest, LoginResponse, UserInfo
from educrm.auth.security import create_access_token, verify_password
from educrm.core.exceptions import ServiceError


async def login(db: AsyncSession, payload: LoginRequest) -> LoginResponse:
    stmt = select(User).where(User.email == payload.email)
    user = (await db.execute(stmt)).scalar_one_or_none()
    if not user or not verify_password(payload.password, user.password_hash):
        raise ServiceError("Invalid email or password", status.HTTP_401_UNAUTHORIZED)
    if user.status != "ACTIVE":
        raise ServiceError("User account is inactive", status.HTTP_403_FORBIDDEN)

    access_token = create_access_token(
        subject={
            "sub": str(user.id),
            "user_id": str(user.id),
            "organization_id": str(user.organization_id),
            "role": user.role,
        }
    )
    return LoginResponse(
        access_token=access_token,
        user=UserInfo(id=user.id, name=user.full_name, email=user.email, role=user.role),
        organization_id=user.organization_id,
        issued_at=datetime.now(timezone.utc),
    )
