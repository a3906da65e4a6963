from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Optional


class Role(str, Enum):
    USER = "user"
    MASTER = "master"
    ADMIN = "admin"


# lowest to highest
HIERARCHY: list[Role] = [Role.USER, Role.MASTER, Role.ADMIN]

PERMISSIONS: dict[Role, frozenset[str]] = {
    Role.ADMIN: frozenset({
        "all", "users:create", "users:edit", "users:delete", "users:view",
        "leads:create", "leads:edit", "leads:delete", "leads:view",
        "reports:view", "settings:edit", "system:admin", "security:monitor",
    }),
    Role.MASTER: frozenset({
        "leads:own", "leads:team", "users:team", "reports:read",
        "team:manage", "leads:create", "leads:edit", "leads:view",
    }),
    Role.USER: frozenset({
        "leads:assigned", "leads:created", "profile:edit",
        "leads:view", "leads:edit",
    }),
}


def _role(role: Any) -> Optional[Role]:
    try:
        return Role(role)
    except ValueError:
        return None


class PermissionSystem:
    def has_permission(self, role: Any, permission: str) -> bool:
        granted = PERMISSIONS.get(_role(role))
        if not granted:
            return False
        return "all" in granted or permission in granted

    def has_any_permission(self, role: Any, permissions: Iterable[str]) -> bool:
        return any(self.has_permission(role, p) for p in permissions)

    def has_all_permissions(self, role: Any, permissions: Iterable[str]) -> bool:
        return all(self.has_permission(role, p) for p in permissions)

    def role_level(self, role: Any) -> int:
        """Index in the hierarchy; -1 for unknown roles."""
        r = _role(role)
        return HIERARCHY.index(r) if r is not None else -1

    def has_higher_or_equal_role(self, role: Any, other: Any) -> bool:
        return self.role_level(role) >= self.role_level(other)

    def can_access_lead(
        self,
        role: Any,
        user_id: Optional[str],
        lead: Optional[dict],
        team_ids: Iterable[str] = (),
    ) -> bool:
        if not lead or not user_id:
            return False
        if _role(role) is Role.ADMIN:
            return True
        if user_id in (lead.get("createdBy"), lead.get("assignedTo")):
            return True
        if _role(role) is Role.MASTER:
            return lead.get("assignedTo") in set(team_ids)
        return False

    def can_delete_lead(self, role: Any, user_id: Optional[str], lead: Optional[dict]) -> bool:
        if not lead or not user_id:
            return False
        return _role(role) is Role.ADMIN or lead.get("createdBy") == user_id
