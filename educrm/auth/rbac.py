from typing import Iterable

from fastapi import Depends, HTTPException, status

from educrm.auth.dependencies import get_current_user
from educrm.auth.schemas import CurrentUser
from educrm.core.enums import UserRole


def require_roles(*roles: UserRole):
    """
    Dependency factory that allows only the given roles. SUPERADMIN always passes.

    Example:
        Depends(require_roles(UserRole.ADMIN, UserRole.ACCOUNTANT))
    """
    allowed: Iterable[UserRole] = set(roles) | {UserRole.SUPERADMIN}

    async def _checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return current_user

    return _checker


# Matches the "admin or superadmin" guard used by the payments back office
require_admin = require_roles(UserRole.ADMIN)
