"""Session, user and step-up data structures exchanged with the storefront API."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import jwt
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class UserRole(str, enum.Enum):
    SUPER_ADMIN = "SuperAdmin"
    TENANT_ADMIN = "TenantAdmin"
    USER = "User"


ADMIN_ROLES: tuple[str, ...] = (UserRole.SUPER_ADMIN.value, UserRole.TENANT_ADMIN.value)


class User(BaseModel):
    id: str
    email: str | None = None
    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    role: str | None = None
    tenant_id: str | None = Field(default=None, alias="tenantId")
    permissions: list[str] = Field(default_factory=list)
    is_active: bool = Field(default=True, alias="isActive")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("id", "tenant_id", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("role", mode="before")
    @classmethod
    def _coerce_role(cls, value: Any) -> Any:
        if isinstance(value, UserRole):
            return value.value
        return value

    @field_validator("permissions", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class Session(BaseModel):
    """Authenticated session as persisted by the credential store."""

    access_token: str = Field(validation_alias=AliasChoices("accessToken", "token", "access_token"))
    refresh_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("refreshToken", "refresh_token"),
    )
    expires_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("expiresAt", "expires_at"),
    )
    user: User | None = None
    tenant_id: str | None = Field(default=None, validation_alias=AliasChoices("tenantId", "tenant_id"))

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        current = now or datetime.now(timezone.utc)
        return _ensure_aware(self.expires_at) <= current

    @property
    def user_id(self) -> str | None:
        return self.user.id if self.user is not None else None


class TokenPair(BaseModel):
    """Credentials returned by the refresh endpoint."""

    access_token: str = Field(validation_alias=AliasChoices("accessToken", "token", "access_token"))
    refresh_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("refreshToken", "refresh_token"),
    )
    expires_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("expiresAt", "expires_at"),
    )

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TwoFactorSecret(BaseModel):
    secret: str = Field(min_length=1)
    qr_code_url: str | None = Field(default=None, alias="qrCodeUrl")
    backup_codes: list[str] = Field(default_factory=list, alias="backupCodes")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TwoFactorStatus(BaseModel):
    enabled: bool
    backup_codes_remaining: int = Field(default=0, ge=0, alias="backupCodesRemaining")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class BackupCodesResponse(BaseModel):
    backup_codes: list[str] = Field(alias="backupCodes")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


@dataclass(slots=True)
class StepUpChallenge:
    """Transient enrollment material; wiped as soon as the flow resolves."""

    secret: str = field(repr=False)
    provisioning_uri: str = field(repr=False)
    qr_code_url: str | None = None
    backup_codes: list[str] = field(default_factory=list, repr=False)
    verified: bool = False

    @property
    def discarded(self) -> bool:
        return not self.secret

    def discard(self) -> None:
        self.secret = ""
        self.provisioning_uri = ""
        self.qr_code_url = None
        self.backup_codes.clear()


@dataclass(frozen=True, slots=True)
class PendingStepUp:
    """Intermediate credential issued by primary login when 2FA is enabled."""

    user_id: str
    intermediate_token: str = field(repr=False)
    user: User | None = None


def unwrap_envelope(payload: Any) -> Any:
    """Return the ``data`` member of ``{"success": ..., "data": {...}}`` envelopes."""

    if isinstance(payload, Mapping) and isinstance(payload.get("data"), Mapping):
        if "success" in payload or set(payload) <= {"data", "message"}:
            return payload["data"]
    return payload


def token_expiry(token: str | None) -> datetime | None:
    """Read the ``exp`` claim of a JWT without verifying it; ``None`` for opaque tokens."""

    if not token:
        return None
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)) or isinstance(exp, bool):
        return None
    return datetime.fromtimestamp(exp, tz=timezone.utc)


def resolve_expiry(payload: Mapping[str, Any], access_token: str, *, now: datetime | None = None) -> datetime | None:
    """Derive an expiry when the payload carries no explicit ``expiresAt``."""

    expires_in = payload.get("expiresIn", payload.get("expires_in"))
    if expires_in is not None:
        try:
            seconds = int(expires_in)
        except (TypeError, ValueError):
            seconds = 0
        if seconds > 0:
            return (now or datetime.now(timezone.utc)) + timedelta(seconds=seconds)
    return token_expiry(access_token)


def requires_step_up(payload: Mapping[str, Any]) -> bool:
    for key in ("requiresTwoFactor", "twoFactorRequired", "requires2FA", "mfaRequired"):
        if payload.get(key) is True:
            return True
    return False


def _ensure_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


__all__ = [
    "ADMIN_ROLES",
    "BackupCodesResponse",
    "PendingStepUp",
    "Session",
    "StepUpChallenge",
    "TokenPair",
    "TwoFactorSecret",
    "TwoFactorStatus",
    "User",
    "UserRole",
    "requires_step_up",
    "resolve_expiry",
    "token_expiry",
    "unwrap_envelope",
]
