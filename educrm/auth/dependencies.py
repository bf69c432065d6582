from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from educrm.auth.models import User
from educrm.auth.schemas import CurrentUser
from educrm.auth.security import decode_access_token
from educrm.db.session import get_db


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login-oauth")


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> CurrentUser:
    """Resolve the authenticated user from the access token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_access_token(token)
    except JWTError:
        raise credentials_exception

    user_id_str = payload.get("user_id") or payload.get("sub")
    organization_id_str = payload.get("organization_id")
    if not user_id_str or not organization_id_str:
        raise credentials_exception

    try:
        user_id = UUID(user_id_str)
        organization_id = UUID(organization_id_str)
    except ValueError:
        raise credentials_exception

    # Role is read from the database so demotions apply to live tokens
    stmt = select(User).where(User.id == user_id, User.organization_id == organization_id)
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()
    if not user or user.status != "ACTIVE":
        raise credentials_exception

    return CurrentUser(
        id=user.id,
        organization_id=user.organization_id,
        role=user.role,
    )
