"""Composition root wiring one pipeline instance per running application."""
from __future__ import annotations

import hmac
import time
from dataclasses import dataclass
from typing import Callable

import httpx

from .auth import LoginFlow
from .config import Settings, settings as default_settings
from .gateway import RequestGateway
from .host import HostBridge, RecordingHost
from .logging import get_logger
from .permissions import PermissionEvaluator
from .session_monitor import ActivityObserver, SessionMonitor
from .step_up import StepUpAuthenticator
from .storage import CredentialStore, KeyValueStore, build_key_value_store
from .tenancy import TenantResolver


logger = get_logger(__name__)


@dataclass
class PortalContext:
    settings: Settings
    host: HostBridge
    backend: KeyValueStore
    credentials: CredentialStore
    tenants: TenantResolver
    gateway: RequestGateway
    login: LoginFlow
    step_up: StepUpAuthenticator
    monitor: SessionMonitor

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        host: HostBridge | None = None,
        client: httpx.AsyncClient | None = None,
        backend: KeyValueStore | None = None,
        clock: Callable[[], float] = time.time,
        observer: ActivityObserver | None = None,
    ) -> "PortalContext":
        settings = settings or default_settings
        host = host if host is not None else RecordingHost()
        backend = backend or build_key_value_store(
            settings.storage.redis_url,
            namespace=settings.storage.namespace,
        )
        credentials = CredentialStore(backend, settings.storage)
        tenants = TenantResolver(settings.tenant)
        gateway = RequestGateway(
            credentials=credentials,
            tenants=tenants,
            client=client,
            config=settings.api,
            host=host,
        )
        context = cls(
            settings=settings,
            host=host,
            backend=backend,
            credentials=credentials,
            tenants=tenants,
            gateway=gateway,
            login=LoginFlow(gateway),
            step_up=StepUpAuthenticator(gateway, settings.step_up),
            monitor=SessionMonitor(gateway, host, settings.session, clock=clock, observer=observer),
        )
        logger.info("portal.context_created", env=settings.env, base_url=settings.api.base_url)
        return context

    async def permissions(self, access_token: str | None) -> PermissionEvaluator:
        """Evaluate the stored session for a caller presenting ``access_token``.

        Callers without the matching token, or holding an expired session, are
        evaluated as anonymous.
        """

        session = await self.credentials.load_session()
        if session is None or not access_token or session.is_expired():
            return PermissionEvaluator(None)
        if not hmac.compare_digest(session.access_token.encode(), access_token.encode()):
            return PermissionEvaluator(None)
        return PermissionEvaluator(session)

    async def aclose(self) -> None:
        await self.monitor.stop()
        await self.gateway.aclose()
        await self.backend.aclose()

    async def __aenter__(self) -> "PortalContext":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


__all__ = ["PortalContext"]
