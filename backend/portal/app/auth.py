"""Primary login, logout and session lookup."""
from __future__ import annotations

from typing import Any, Mapping

from pydantic import ValidationError

from .errors import MissingCredentialsError, PortalError
from .gateway import RequestGateway
from .logging import get_logger
from .models import PendingStepUp, Session, User, requires_step_up, resolve_expiry


logger = get_logger(__name__)

_INTERMEDIATE_TOKEN_KEYS = ("tempToken", "intermediateToken", "twoFactorToken", "token", "accessToken")


async def establish_session(
    gateway: RequestGateway,
    payload: Mapping[str, Any],
    *,
    user: User | None = None,
    origin: str | None = None,
) -> Session:
    """Build a Session from an authentication response and persist it."""

    try:
        session = Session.model_validate(payload)
    except ValidationError as exc:
        raise PortalError("Authentication response did not contain a session") from exc

    resolved_user = session.user or user
    tenant_id = (
        session.tenant_id
        or gateway.tenants.resolve(gateway.calling_context(origin))
        or (resolved_user.tenant_id if resolved_user is not None else None)
    )
    session = session.model_copy(
        update={
            "user": resolved_user,
            "tenant_id": tenant_id,
            "expires_at": session.expires_at or resolve_expiry(payload, session.access_token),
        }
    )
    await gateway.credentials.save_session(session)
    logger.info(
        "auth.session_established",
        user_id=session.user_id,
        tenant_id=tenant_id,
    )
    return session


def _pending_step_up(payload: Mapping[str, Any]) -> PendingStepUp:
    raw_user = payload.get("user")
    user = User.model_validate(raw_user) if isinstance(raw_user, Mapping) else None
    user_id = payload.get("userId") or (user.id if user is not None else None)
    token = next((payload[key] for key in _INTERMEDIATE_TOKEN_KEYS if payload.get(key)), None)
    if not user_id or not isinstance(token, str):
        raise PortalError("Two-factor challenge is missing the user or intermediate token")
    return PendingStepUp(user_id=str(user_id), intermediate_token=token, user=user)


class LoginFlow:
    """Primary credential exchange; hands off to step-up when the account requires it."""

    def __init__(self, gateway: RequestGateway) -> None:
        self._gateway = gateway

    async def login(
        self,
        email: str,
        password: str,
        *,
        origin: str | None = None,
    ) -> Session | PendingStepUp:
        if not email.strip() or not password:
            raise MissingCredentialsError("Email and password are required")
        payload = await self._gateway.fetch_json(
            "POST",
            self._gateway.config.login_path,
            json={"email": email.strip(), "password": password},
            refreshable=False,
            origin=origin,
        )
        if not isinstance(payload, Mapping):
            raise PortalError("Login response was malformed")
        if requires_step_up(payload):
            pending = _pending_step_up(payload)
            logger.info("auth.step_up_required", user_id=pending.user_id)
            return pending
        return await establish_session(self._gateway, payload, origin=origin)

    async def logout(self) -> None:
        """Tell the server, then always drop local credentials."""

        try:
            if await self._gateway.credentials.get_access_token():
                await self._gateway.post(self._gateway.config.logout_path, refreshable=False)
        except PortalError as exc:
            logger.warning("auth.logout_call_failed", error=type(exc).__name__)
        finally:
            await self._gateway.logout()

    async def current_session(self) -> Session | None:
        return await self._gateway.credentials.load_session()


__all__ = ["LoginFlow", "establish_session"]
