"""Authorisation rules wrapped around every record and statistics operation.

Regular users only reach their own records. Admins may read and aggregate
system-wide; destructive actions on other users' data additionally need the
SUPER_ADMIN role or an explicit permission. A non-admin probing another user's
record is told it does not exist, so record ids never leak across owners.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .errors import ForbiddenError, NotFoundError


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class Action(str, Enum):
    CREATE = "tests:create"
    READ = "tests:read"
    LIST = "tests:list"
    UPDATE = "tests:write"
    REANALYZE = "tests:reanalyze"
    DELETE = "tests:delete"
    REPORT = "tests:report"
    VIEW_STATS = "stats:read"
    SYSTEM_STATS = "analytics:read"
    EXPORT = "export:read"
    PURGE_OWNER = "users:delete"


_OWNER_ACTIONS = frozenset(
    {
        Action.CREATE,
        Action.READ,
        Action.LIST,
        Action.UPDATE,
        Action.REANALYZE,
        Action.DELETE,
        Action.VIEW_STATS,
    }
)
_ADMIN_ACTIONS = frozenset(
    {
        Action.READ,
        Action.LIST,
        Action.VIEW_STATS,
        Action.SYSTEM_STATS,
        Action.EXPORT,
        Action.REPORT,
    }
)
_ELEVATED_ACTIONS = frozenset({Action.DELETE, Action.PURGE_OWNER})


@dataclass(frozen=True)
class Principal:
    id: str
    role: Role = Role.USER
    permissions: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.role in (Role.ADMIN, Role.SUPER_ADMIN)

    def has_permission(self, permission: str) -> bool:
        return self.role is Role.SUPER_ADMIN or permission in self.permissions


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None
    # Deny should look like "not found" to the caller.
    conceal: bool = False


ALLOW = Decision(allowed=True)


def authorize(principal: Principal, action: Action, owner_id: str | None = None) -> Decision:
    """Decide whether ``principal`` may perform ``action`` on a resource owned by ``owner_id``.

    ``owner_id`` is None for system-wide actions that have no single owner.
    """
    is_owner = owner_id is not None and owner_id == principal.id
    if is_owner and action in _OWNER_ACTIONS:
        return ALLOW
    if not principal.is_admin:
        if owner_id is not None and not is_owner:
            return Decision(False, "resource belongs to another user", conceal=True)
        return Decision(False, "admin role required")
    if action in _ELEVATED_ACTIONS:
        if principal.has_permission(action.value):
            return ALLOW
        return Decision(False, f"{action.value} requires SUPER_ADMIN or an explicit permission")
    if action in _ADMIN_ACTIONS:
        return ALLOW
    return Decision(False, f"admins may not perform {action.value} on another user's record")


def ensure_allowed(
    principal: Principal,
    action: Action,
    owner_id: str | None = None,
    *,
    resource: str = "Test",
) -> None:
    decision = authorize(principal, action, owner_id)
    if decision.allowed:
        return
    if decision.conceal:
        raise NotFoundError(f"{resource} not found", f"{resource.upper()}_NOT_FOUND")
    raise ForbiddenError("Insufficient permissions", "INSUFFICIENT_PERMISSIONS")


def can_see_identity(principal: Principal, owner_id: str, is_anonymous: bool) -> bool:
    """Whether owner identity may be shown next to a record in this principal's view."""
    return principal.id == owner_id or not is_anonymous


__all__ = [
    "Action",
    "Decision",
    "Principal",
    "Role",
    "authorize",
    "can_see_identity",
    "ensure_allowed",
]
