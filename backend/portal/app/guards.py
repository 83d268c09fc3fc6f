"""FastAPI dependencies guarding server-rendered routes."""
from __future__ import annotations

from typing import Awaitable, Callable, Iterable

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .context import PortalContext
from .errors import SESSION_EXPIRED_REASON
from .host import login_location
from .models import UserRole
from .permissions import PermissionEvaluator


_bearer_scheme = HTTPBearer(auto_error=False)


def get_portal_context(request: Request) -> PortalContext:
    """Return the pipeline attached to ``app.state.portal``."""

    portal = getattr(request.app.state, "portal", None)
    if portal is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Portal context is not configured")
    return portal


async def get_permission_evaluator(
    portal: PortalContext = Depends(get_portal_context),
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> PermissionEvaluator:
    return await portal.permissions(credentials.credentials if credentials is not None else None)


def require_access(
    roles: Iterable[str | UserRole],
    permissions: Iterable[str] | None = None,
    require_all: bool = False,
) -> Callable[..., Awaitable[PermissionEvaluator]]:
    """Build a dependency answering 401 without a session and 403 without access."""

    required_roles = tuple(roles)
    required_permissions = tuple(permissions or ())

    async def _guard(
        evaluator: PermissionEvaluator = Depends(get_permission_evaluator),
        portal: PortalContext = Depends(get_portal_context),
    ) -> PermissionEvaluator:
        if not evaluator.is_authenticated():
            raise HTTPException(
                status.HTTP_401_UNAUTHORIZED,
                detail="Not authenticated",
                headers={
                    "WWW-Authenticate": "Bearer",
                    "Location": login_location(portal.settings.session.login_path, SESSION_EXPIRED_REASON),
                },
            )
        if not evaluator.can_access(required_roles, required_permissions, require_all):
            raise HTTPException(status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return evaluator

    return _guard


__all__ = ["get_permission_evaluator", "get_portal_context", "require_access"]
