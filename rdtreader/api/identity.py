"""Principal extraction from headers set by the trusted authentication gateway."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header

from ..access import Principal, Role
from ..errors import AuthenticationError, ForbiddenError


def get_principal(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    x_user_permissions: Optional[str] = Header(default=None),
) -> Principal:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise AuthenticationError("Authentication required", "NOT_AUTHENTICATED")
    role_text = (x_user_role or Role.USER.value).strip().upper()
    try:
        role = Role(role_text)
    except ValueError:
        raise AuthenticationError("Unknown user role", "INVALID_ROLE") from None
    permissions = frozenset(
        item.strip() for item in (x_user_permissions or "").split(",") if item.strip()
    )
    return Principal(id=user_id, role=role, permissions=permissions)


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise ForbiddenError("Admin access required", "ADMIN_REQUIRED")
    return principal


__all__ = ["get_principal", "require_admin"]
