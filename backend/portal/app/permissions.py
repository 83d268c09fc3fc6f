"""Role and permission predicates over the current session."""
from __future__ import annotations

from typing import Iterable

from .models import ADMIN_ROLES, Session, User, UserRole


class Permissions:
    """Permission identifiers issued by the storefront API."""

    BOOKING_CREATE = "booking:create"
    BOOKING_READ = "booking:read"
    BOOKING_UPDATE = "booking:update"
    BOOKING_DELETE = "booking:delete"
    BOOKING_MANAGE_ALL = "booking:manage_all"

    USER_CREATE = "user:create"
    USER_READ = "user:read"
    USER_UPDATE = "user:update"
    USER_DELETE = "user:delete"
    USER_MANAGE_ALL = "user:manage_all"

    CATALOG_CREATE = "catalog:create"
    CATALOG_READ = "catalog:read"
    CATALOG_UPDATE = "catalog:update"
    CATALOG_DELETE = "catalog:delete"
    CATALOG_MANAGE_ALL = "catalog:manage_all"

    TENANT_CREATE = "tenant:create"
    TENANT_READ = "tenant:read"
    TENANT_UPDATE = "tenant:update"
    TENANT_DELETE = "tenant:delete"
    TENANT_MANAGE_ALL = "tenant:manage_all"

    ANALYTICS_VIEW = "analytics:view"
    ANALYTICS_EXPORT = "analytics:export"

    SETTINGS_VIEW = "settings:view"
    SETTINGS_UPDATE = "settings:update"

    PAYMENT_PROCESS = "payment:process"
    PAYMENT_REFUND = "payment:refund"
    PAYMENT_VIEW_ALL = "payment:view_all"


def _role_value(role: str | UserRole) -> str:
    return role.value if isinstance(role, UserRole) else role


class PermissionEvaluator:
    """Pure access checks; an absent session or user fails every check."""

    def __init__(self, session: Session | None) -> None:
        self._session = session

    @property
    def user(self) -> User | None:
        return self._session.user if self._session is not None else None

    @property
    def role(self) -> str | None:
        user = self.user
        return user.role if user is not None else None

    @property
    def permissions(self) -> list[str]:
        user = self.user
        return list(user.permissions) if user is not None else []

    def is_authenticated(self) -> bool:
        return self.user is not None

    def has_role(self, role: str | UserRole) -> bool:
        return self.role is not None and self.role == _role_value(role)

    def has_any_role(self, roles: Iterable[str | UserRole]) -> bool:
        return any(self.has_role(role) for role in roles)

    def has_all_roles(self, roles: Iterable[str | UserRole]) -> bool:
        # A user carries a single role, so this only holds for one distinct role.
        return all(self.has_role(role) for role in roles)

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def has_any_permission(self, permissions: Iterable[str]) -> bool:
        granted = set(self.permissions)
        return any(permission in granted for permission in permissions)

    def has_all_permissions(self, permissions: Iterable[str]) -> bool:
        if self.user is None:
            return False
        granted = set(self.permissions)
        return all(permission in granted for permission in permissions)

    def can_access(
        self,
        required_roles: Iterable[str | UserRole],
        required_permissions: Iterable[str] | None = None,
        require_all: bool = False,
    ) -> bool:
        if not self.has_any_role(required_roles):
            return False
        wanted = list(required_permissions or ())
        if not wanted:
            return True
        if require_all:
            return self.has_all_permissions(wanted)
        return self.has_any_permission(wanted)

    def is_owner(self, owner_id: str) -> bool:
        user = self.user
        return user is not None and user.id == owner_id

    def is_tenant_member(self, tenant_id: str | None) -> bool:
        user = self.user
        return user is not None and tenant_id is not None and user.tenant_id == tenant_id

    def is_super_admin(self) -> bool:
        return self.has_role(UserRole.SUPER_ADMIN)

    def is_tenant_admin(self) -> bool:
        return self.has_role(UserRole.TENANT_ADMIN)

    def is_regular_user(self) -> bool:
        return self.has_role(UserRole.USER)

    def is_admin(self) -> bool:
        return self.has_any_role(ADMIN_ROLES)


__all__ = ["PermissionEvaluator", "Permissions"]
