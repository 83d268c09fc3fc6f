"""Outbound request gateway with single-flight credential refresh."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import httpx
from pydantic import ValidationError

from .config import ApiSettings
from .errors import (
    SESSION_EXPIRED_REASON,
    NetworkError,
    SessionExpiredError,
    error_for_response,
)
from .host import HostBridge, notify
from .logging import get_logger
from .models import TokenPair, resolve_expiry, unwrap_envelope
from .storage import CredentialStore
from .tenancy import TenantResolver, current_origin


logger = get_logger(__name__)

MAX_ATTEMPTS = 2

SessionListener = Callable[[str | None], Awaitable[None] | None]


class RequestGateway:
    """Send every storefront request with identity and tenant context attached.

    A 401 on a first attempt triggers at most one refresh round-trip shared by
    every request that fails while it is in flight; each of those requests is
    then replayed exactly once with the refreshed access token.
    """

    def __init__(
        self,
        *,
        credentials: CredentialStore,
        tenants: TenantResolver,
        client: httpx.AsyncClient | None = None,
        config: ApiSettings | None = None,
        host: HostBridge | None = None,
        origin: str | None = None,
    ) -> None:
        self._config = config or ApiSettings()
        self._credentials = credentials
        self._tenants = tenants
        self._host = host
        self._default_origin = origin if origin is not None else self._config.default_origin
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._config.base_url,
            timeout=self._config.request_timeout_seconds,
            headers={"Content-Type": "application/json"},
        )
        self._refresh_task: asyncio.Task[str] | None = None
        self._session_listeners: list[SessionListener] = []

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    @property
    def tenants(self) -> TenantResolver:
        return self._tenants

    @property
    def config(self) -> ApiSettings:
        return self._config

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def calling_context(self, origin: str | None = None) -> str | None:
        return origin or current_origin() or self._default_origin

    def add_session_listener(self, listener: SessionListener) -> Callable[[], None]:
        """Call ``listener(reason)`` whenever the session ends; returns an unsubscribe callable."""

        self._session_listeners.append(listener)

        def _remove() -> None:
            if listener in self._session_listeners:
                self._session_listeners.remove(listener)

        return _remove

    async def _session_ended(self, reason: str | None) -> None:
        for listener in list(self._session_listeners):
            await notify(listener(reason))

    def build_request(self, method: str, url: str, **kwargs: Any) -> httpx.Request:
        return self._client.build_request(method, url, **kwargs)

    def _prepare(
        self,
        request: httpx.Request,
        *,
        access_token: str | None,
        origin: str | None,
    ) -> httpx.Request:
        headers = httpx.Headers(request.headers)
        if access_token and "authorization" not in headers:
            headers["Authorization"] = f"Bearer {access_token}"
        tenant_id = self._tenants.resolve(self.calling_context(origin))
        if tenant_id:
            headers[self._tenants.header_name] = tenant_id
        return httpx.Request(
            request.method,
            request.url,
            headers=headers,
            content=request.content,
            extensions=dict(request.extensions),
        )

    async def _dispatch(
        self,
        request: httpx.Request,
        *,
        access_token: str | None,
        origin: str | None,
    ) -> httpx.Response:
        prepared = self._prepare(request, access_token=access_token, origin=origin)
        try:
            return await self._client.send(prepared)
        except httpx.TransportError as exc:
            logger.warning(
                "request.network_error",
                method=prepared.method,
                path=prepared.url.path,
                error=type(exc).__name__,
            )
            raise NetworkError(str(exc) or type(exc).__name__, request=prepared) from exc

    async def send(
        self,
        request: httpx.Request,
        *,
        attempt: int = 0,
        refreshable: bool = True,
        origin: str | None = None,
    ) -> httpx.Response:
        """Dispatch ``request``; ``attempt`` counts prior sends of the same logical request."""

        await request.aread()
        caller_authorized = "authorization" in request.headers
        access_token = None if caller_authorized else await self._credentials.get_access_token()
        response = await self._dispatch(request, access_token=access_token, origin=origin)

        if (
            response.status_code != 401
            or not refreshable
            or caller_authorized
            or attempt + 1 >= MAX_ATTEMPTS
        ):
            return response
        if self._refresh_task is None and not await self._credentials.get_refresh_token():
            return response

        await response.aclose()
        await self._await_refresh(stale_token=access_token, origin=origin)
        logger.info("request.replayed", method=request.method, path=request.url.path)
        return await self.send(request, attempt=attempt + 1, refreshable=refreshable, origin=origin)

    async def _await_refresh(self, *, stale_token: str | None, origin: str | None) -> str:
        if self._refresh_task is None:
            current = await self._credentials.get_access_token()
            if current and current != stale_token:
                return current
        task = self._refresh_task or self._start_refresh(origin)
        return await self._join(task)

    def _start_refresh(self, origin: str | None) -> asyncio.Task[str]:
        task = asyncio.get_running_loop().create_task(
            self._refresh_once(origin),
            name="portal-credential-refresh",
        )
        self._refresh_task = task
        task.add_done_callback(self._release_refresh)
        return task

    def _release_refresh(self, task: asyncio.Task[str]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            task.exception()

    async def _join(self, task: asyncio.Task[str]) -> str:
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and (current is None or current.cancelling() == 0):
                raise SessionExpiredError("Session ended while refreshing", reason="logged-out") from None
            raise

    async def _refresh_once(self, origin: str | None) -> str:
        refresh_token = await self._credentials.get_refresh_token()
        if not refresh_token:
            await self._end_session()
            raise SessionExpiredError("No refresh token available")

        session = await self._credentials.load_session()
        request = self._prepare(
            self._client.build_request(
                "POST",
                self._config.refresh_path,
                json={"refreshToken": refresh_token, "userId": session.user_id if session else None},
                timeout=self._config.refresh_timeout_seconds,
            ),
            access_token=None,
            origin=origin,
        )
        logger.info("refresh.started")
        try:
            response = await self._client.send(request)
        except httpx.TransportError as exc:
            logger.warning("refresh.failed", reason="network", error=type(exc).__name__)
            await self._end_session()
            raise SessionExpiredError("Unable to reach the refresh endpoint") from exc

        if response.is_error:
            logger.warning("refresh.failed", reason="rejected", status_code=response.status_code)
            await self._end_session()
            raise SessionExpiredError("Refresh token was rejected")

        try:
            payload = unwrap_envelope(response.json())
            pair = TokenPair.model_validate(payload)
        except (ValueError, ValidationError) as exc:
            logger.warning("refresh.failed", reason="malformed_response")
            await self._end_session()
            raise SessionExpiredError("Refresh response was malformed") from exc

        await self._credentials.set_tokens(pair.access_token, pair.refresh_token)
        if session is not None:
            expires_at = pair.expires_at or resolve_expiry(payload, pair.access_token)
            await self._credentials.update_session(session.model_copy(update={"expires_at": expires_at}))
        logger.info("refresh.succeeded", rotated=pair.refresh_token is not None)
        return pair.access_token

    async def _end_session(self) -> None:
        await self._credentials.clear()
        logger.warning("session.ended", reason=SESSION_EXPIRED_REASON)
        await self._session_ended(SESSION_EXPIRED_REASON)
        if self._host is not None:
            await notify(self._host.redirect_to_login(SESSION_EXPIRED_REASON))

    async def refresh(self, *, origin: str | None = None) -> str | None:
        """Proactively refresh the access token; ``None`` when there is nothing to refresh."""

        if self._refresh_task is None and not await self._credentials.get_refresh_token():
            return None
        task = self._refresh_task or self._start_refresh(origin)
        return await self._join(task)

    async def logout(self, *, reason: str | None = None) -> None:
        """Drop local credentials and cancel an in-flight refresh."""

        task = self._refresh_task
        self._refresh_task = None
        if task is not None and not task.done():
            task.cancel()
        await self._credentials.clear()
        logger.info("session.logged_out", reason=reason)
        await self._session_ended(reason)
        if reason and self._host is not None:
            await notify(self._host.redirect_to_login(reason))

    async def request(
        self,
        method: str,
        url: str,
        *,
        refreshable: bool = True,
        origin: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and raise the matching :mod:`errors` type for error statuses."""

        response = await self.send(
            self.build_request(method, url, **kwargs),
            refreshable=refreshable,
            origin=origin,
        )
        if response.is_error:
            raise error_for_response(response)
        return response

    async def fetch_json(self, method: str, url: str, **kwargs: Any) -> Any:
        response = await self.request(method, url, **kwargs)
        if not response.content:
            return None
        return unwrap_envelope(response.json())

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def aclose(self) -> None:
        task = self._refresh_task
        self._refresh_task = None
        if task is not None and not task.done():
            task.cancel()
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "RequestGateway":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


__all__ = ["MAX_ATTEMPTS", "RequestGateway", "SessionListener"]
