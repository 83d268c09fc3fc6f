"""Shared fixtures: an in-process fake of the storefront auth API."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import jwt
import pyotp
import pytest
import pytest_asyncio
from fastapi import FastAPI, HTTPException, Request, Response

from backend.portal.app.config import ApiSettings, Settings
from backend.portal.app.context import PortalContext
from backend.portal.app.host import RecordingHost
from backend.portal.app.storage import MemoryKeyValueStore

API_BASE_URL = "http://api.travelsphere.test"
TENANT_ORIGIN = "https://acme.travelsphere.com"
SIGNING_KEY = "portal-test-signing-key-with-enough-entropy-0123456789"

PLAIN_EMAIL = "traveller@example.com"
STEP_UP_EMAIL = "guarded@example.com"
PASSWORD = "correct horse battery staple"


def _envelope(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    return await request.json()


class FakeStorefront:
    """Tiny stand-in for the storefront API with counters for assertions."""

    def __init__(self) -> None:
        self.users: dict[str, dict[str, Any]] = {
            PLAIN_EMAIL: {
                "id": "u-100",
                "email": PLAIN_EMAIL,
                "firstName": "Ada",
                "lastName": "Traveller",
                "role": "User",
                "tenantId": "acme",
                "permissions": ["booking:create", "booking:read"],
            },
            STEP_UP_EMAIL: {
                "id": "u-200",
                "email": STEP_UP_EMAIL,
                "firstName": "Grace",
                "lastName": "Guarded",
                "role": "TenantAdmin",
                "tenantId": "acme",
                "permissions": ["catalog:read", "catalog:update"],
            },
        }
        self.totp_secrets: dict[str, str] = {"u-200": pyotp.random_base32()}
        self.backup_codes: dict[str, list[str]] = {"u-200": ["ALPHA-1234", "BRAVO-5678"]}
        self.issued_secrets: dict[str, str] = {}
        self.valid_access: dict[str, str] = {}
        self.refresh_tokens: dict[str, str] = {}
        self.pending_tokens: dict[str, str] = {}

        self.refresh_calls = 0
        self.refresh_bodies: list[dict[str, Any]] = []
        self.fail_refresh = False
        self.verify_calls: list[dict[str, Any]] = []
        self.authenticate_calls: list[dict[str, Any]] = []
        self.logout_calls = 0
        self.catalog_calls: list[dict[str, str | None]] = []
        self.rejections = 0

        self._refresh_gate: asyncio.Event | None = None
        self._rejection_waiters: list[tuple[int, asyncio.Event]] = []
        self.app = self._build_app()

    # Token helpers -----------------------------------------------------

    def issue_access_token(self, user_id: str, *, ttl_seconds: int = 900) -> str:
        claims = {
            "sub": user_id,
            "jti": uuid.uuid4().hex,
            "exp": datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds),
        }
        token = jwt.encode(claims, SIGNING_KEY, algorithm="HS256")
        self.valid_access[token] = user_id
        return token

    def issue_refresh_token(self, user_id: str) -> str:
        token = f"rt-{uuid.uuid4().hex}"
        self.refresh_tokens[token] = user_id
        return token

    def expire_access_tokens(self) -> None:
        self.valid_access.clear()

    def hold_refresh(self) -> None:
        self._refresh_gate = asyncio.Event()

    def release_refresh(self) -> None:
        if self._refresh_gate is not None:
            self._refresh_gate.set()

    async def wait_for_rejections(self, count: int, *, timeout: float = 2.0) -> None:
        if self.rejections >= count:
            return
        event = asyncio.Event()
        self._rejection_waiters.append((count, event))
        await asyncio.wait_for(event.wait(), timeout)

    def _reject(self) -> HTTPException:
        self.rejections += 1
        for target, event in self._rejection_waiters:
            if self.rejections >= target:
                event.set()
        return HTTPException(status_code=401, detail="Token expired")

    def _user_by_id(self, user_id: str) -> dict[str, Any]:
        for user in self.users.values():
            if user["id"] == user_id:
                return user
        raise HTTPException(status_code=404, detail="Unknown user")

    def _authenticated_user(self, request: Request) -> dict[str, Any]:
        header = request.headers.get("authorization", "")
        token = header[7:] if header.lower().startswith("bearer ") else ""
        user_id = self.valid_access.get(token)
        if user_id is None:
            raise self._reject()
        return self._user_by_id(user_id)

    def _session_payload(self, user: dict[str, Any]) -> dict[str, Any]:
        return {
            "user": user,
            "token": self.issue_access_token(user["id"]),
            "refreshToken": self.issue_refresh_token(user["id"]),
            "expiresIn": 900,
        }

    # Routes ------------------------------------------------------------

    def _build_app(self) -> FastAPI:
        app = FastAPI()

        @app.post("/auth/login")
        async def login(request: Request) -> dict[str, Any]:
            body = await _json_body(request)
            user = self.users.get(body.get("email", ""))
            if user is None or body.get("password") != PASSWORD:
                raise HTTPException(status_code=401, detail="Invalid credentials")
            if user["id"] in self.totp_secrets:
                temp_token = f"tmp-{uuid.uuid4().hex}"
                self.pending_tokens[temp_token] = user["id"]
                return _envelope({"requiresTwoFactor": True, "userId": user["id"], "tempToken": temp_token})
            return _envelope(self._session_payload(user))

        @app.post("/auth/logout", status_code=204)
        async def logout() -> Response:
            self.logout_calls += 1
            return Response(status_code=204)

        @app.post("/auth/refresh-token")
        async def refresh(request: Request) -> dict[str, Any]:
            body = await _json_body(request)
            self.refresh_calls += 1
            self.refresh_bodies.append(body)
            if self._refresh_gate is not None:
                await self._refresh_gate.wait()
            if self.fail_refresh:
                raise HTTPException(status_code=401, detail="Refresh token revoked")
            user_id = self.refresh_tokens.pop(body.get("refreshToken", ""), None)
            if user_id is None:
                raise HTTPException(status_code=401, detail="Unknown refresh token")
            return _envelope(
                {
                    "token": self.issue_access_token(user_id),
                    "refreshToken": self.issue_refresh_token(user_id),
                    "expiresIn": 900,
                }
            )

        @app.get("/catalog/items")
        async def catalog(request: Request) -> dict[str, Any]:
            self.catalog_calls.append(
                {
                    "authorization": request.headers.get("authorization"),
                    "tenant": request.headers.get("x-tenant-id"),
                }
            )
            self._authenticated_user(request)
            return _envelope({"items": [{"id": "tour-1"}, {"id": "tour-2"}]})

        @app.post("/auth/2fa/generate")
        async def generate(request: Request) -> dict[str, Any]:
            user = self._authenticated_user(request)
            secret = pyotp.random_base32()
            self.issued_secrets[user["id"]] = secret
            return _envelope(
                {
                    "secret": secret,
                    "qrCodeUrl": "data:image/png;base64,iVBORw0KGgo=",
                    "backupCodes": ["CODE-0001", "CODE-0002", "CODE-0003"],
                }
            )

        @app.post("/auth/2fa/verify")
        async def verify(request: Request) -> dict[str, Any]:
            user = self._authenticated_user(request)
            body = await _json_body(request)
            self.verify_calls.append(body)
            secret = self.issued_secrets.get(user["id"])
            code = str(body.get("code", ""))
            if secret is None or body.get("secret") != secret or not pyotp.TOTP(secret).verify(code, valid_window=1):
                raise HTTPException(status_code=400, detail="Invalid verification code")
            self.totp_secrets[user["id"]] = secret
            self.backup_codes[user["id"]] = ["CODE-0001", "CODE-0002", "CODE-0003"]
            return _envelope({"enabled": True})

        @app.post("/auth/2fa/authenticate")
        async def authenticate(request: Request) -> dict[str, Any]:
            header = request.headers.get("authorization", "")
            pending_user = self.pending_tokens.get(header[7:]) if header.lower().startswith("bearer ") else None
            body = await _json_body(request)
            self.authenticate_calls.append(body)
            if pending_user is None or pending_user != body.get("userId"):
                raise HTTPException(status_code=401, detail="Challenge expired")
            code = str(body.get("code", ""))
            if body.get("isBackupCode"):
                codes = self.backup_codes.get(pending_user, [])
                if code not in codes:
                    raise HTTPException(status_code=400, detail="Invalid backup code")
                codes.remove(code)
            elif not pyotp.TOTP(self.totp_secrets[pending_user]).verify(code, valid_window=1):
                raise HTTPException(status_code=400, detail="Invalid verification code")
            self.pending_tokens.pop(header[7:], None)
            return _envelope(self._session_payload(self._user_by_id(pending_user)))

        @app.post("/auth/2fa/disable")
        async def disable(request: Request) -> dict[str, Any]:
            user = self._authenticated_user(request)
            body = await _json_body(request)
            if body.get("password") != PASSWORD:
                raise HTTPException(status_code=400, detail="Incorrect password")
            self.totp_secrets.pop(user["id"], None)
            self.backup_codes.pop(user["id"], None)
            return _envelope({"enabled": False})

        @app.post("/auth/2fa/backup-codes/regenerate")
        async def regenerate(request: Request) -> dict[str, Any]:
            user = self._authenticated_user(request)
            codes = [f"NEW-{uuid.uuid4().hex[:8].upper()}" for _ in range(4)]
            self.backup_codes[user["id"]] = codes
            return _envelope({"backupCodes": codes})

        @app.get("/auth/2fa/status")
        async def two_factor_status(request: Request) -> dict[str, Any]:
            user = self._authenticated_user(request)
            return _envelope(
                {
                    "enabled": user["id"] in self.totp_secrets,
                    "backupCodesRemaining": len(self.backup_codes.get(user["id"], [])),
                }
            )

        return app


@pytest.fixture
def storefront() -> FakeStorefront:
    return FakeStorefront()


@pytest.fixture
def host() -> RecordingHost:
    return RecordingHost()


@pytest_asyncio.fixture
async def api_client(storefront: FakeStorefront) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=storefront.app),
        base_url=API_BASE_URL,
    ) as client:
        yield client


@pytest.fixture
def portal_settings() -> Settings:
    return Settings(api=ApiSettings(base_url=API_BASE_URL, default_origin=TENANT_ORIGIN))


@pytest_asyncio.fixture
async def portal(
    api_client: httpx.AsyncClient,
    host: RecordingHost,
    portal_settings: Settings,
) -> AsyncIterator[PortalContext]:
    context = PortalContext.create(
        portal_settings,
        host=host,
        client=api_client,
        backend=MemoryKeyValueStore(),
    )
    try:
        yield context
    finally:
        await context.aclose()
