"""Centralized configuration for the portal session pipeline."""
from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_ROOT_DIR = Path(__file__).resolve().parents[3]
_PORTAL_DIR = _ROOT_DIR / "backend" / "portal"
_DEFAULT_ENV_FILES: tuple[Path, ...] = (
    _ROOT_DIR / ".env",
    _PORTAL_DIR / ".env",
)


def _clean_path(value: str | None, *, name: str) -> str:
    if value is None:
        raise ValueError(f"{name} must be provided")
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"{name} must be a non-empty string")
    if not cleaned.startswith("/"):
        cleaned = f"/{cleaned}"
    return cleaned


class ApiSettings(BaseModel):
    """Storefront API endpoints consumed by the pipeline."""

    base_url: str = Field(
        default="http://localhost:8080",
        validation_alias=AliasChoices("PORTAL_API_BASE_URL", "API__BASE_URL"),
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        validation_alias=AliasChoices("PORTAL_API_TIMEOUT_SECONDS", "API__REQUEST_TIMEOUT_SECONDS"),
    )
    refresh_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        validation_alias=AliasChoices(
            "PORTAL_REFRESH_TIMEOUT_SECONDS",
            "API__REFRESH_TIMEOUT_SECONDS",
        ),
        description="Upper bound for a refresh round-trip; queued requests wait at most this long.",
    )
    login_path: str = "/auth/login"
    logout_path: str = "/auth/logout"
    refresh_path: str = "/auth/refresh-token"
    two_factor_path: str = Field(
        default="/auth/2fa",
        description="Prefix for the generate/verify/authenticate/disable/status endpoints.",
    )
    default_origin: str | None = Field(
        default=None,
        validation_alias=AliasChoices("PORTAL_ORIGIN", "API__DEFAULT_ORIGIN"),
        description="Calling origin used for tenant resolution when none is bound.",
    )

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("base_url", mode="before")
    @classmethod
    def _normalise_base_url(cls, value: str | None) -> str:
        if value is None:
            raise ValueError("PORTAL_API_BASE_URL must be provided")
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("PORTAL_API_BASE_URL must be a non-empty string")
        return cleaned.rstrip("/") or cleaned

    @field_validator("login_path", "logout_path", "refresh_path", "two_factor_path", mode="before")
    @classmethod
    def _normalise_paths(cls, value: str | None) -> str:
        return _clean_path(value, name="Endpoint paths").rstrip("/") or "/"

    @field_validator("default_origin", mode="before")
    @classmethod
    def _clean_origin(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    def two_factor_endpoint(self, action: str) -> str:
        return f"{self.two_factor_path}/{action.lstrip('/')}"


class StorageSettings(BaseModel):
    """Where credentials are persisted and under which keys."""

    redis_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("REDIS_URL", "STORAGE__REDIS_URL"),
    )
    access_token_key: str = Field(
        default="travel_auth_token",
        validation_alias=AliasChoices("PORTAL_AUTH_TOKEN_KEY", "STORAGE__ACCESS_TOKEN_KEY"),
    )
    refresh_token_key: str = Field(
        default="travel_refresh_token",
        validation_alias=AliasChoices("PORTAL_REFRESH_TOKEN_KEY", "STORAGE__REFRESH_TOKEN_KEY"),
    )
    tenant_key: str = "travel_tenant_id"
    session_key: str = "travel_session"
    namespace: str = "portal"

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("redis_url", mode="before")
    @classmethod
    def _clean_redis_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator(
        "access_token_key",
        "refresh_token_key",
        "tenant_key",
        "session_key",
        "namespace",
        mode="before",
    )
    @classmethod
    def _require_key(cls, value: str | None) -> str:
        if value is None:
            raise ValueError("Storage keys must be provided")
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Storage keys must be non-empty strings")
        return cleaned

    @model_validator(mode="after")
    def _distinct_keys(self) -> "StorageSettings":
        keys = [self.access_token_key, self.refresh_token_key, self.tenant_key, self.session_key]
        if len(set(keys)) != len(keys):
            raise ValueError("Storage keys must be distinct")
        return self


class TenantSettings(BaseModel):
    """Subdomain based tenant resolution."""

    header_name: str = Field(
        default="X-Tenant-Id",
        validation_alias=AliasChoices("PORTAL_TENANT_HEADER", "TENANT__HEADER_NAME"),
    )
    local_hosts: tuple[str, ...] = ("localhost",)
    admin_labels: tuple[str, ...] = ("admin",)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("local_hosts", "admin_labels", mode="before")
    @classmethod
    def _split_labels(cls, value: str | list[str] | tuple[str, ...] | None) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            candidates = value.replace(",", " ").split()
        else:
            candidates = [str(item) for item in value]
        cleaned: list[str] = []
        for candidate in candidates:
            normalised = candidate.strip().lower()
            if normalised and normalised not in cleaned:
                cleaned.append(normalised)
        return tuple(cleaned)


class SessionSettings(BaseModel):
    """Idle monitoring configuration."""

    idle_timeout_seconds: float = Field(default=30 * 60, gt=0)
    warning_lead_seconds: float = Field(default=5 * 60, ge=0)
    poll_interval_seconds: float = Field(default=60, gt=0)
    login_path: str = "/login"

    @field_validator("login_path", mode="before")
    @classmethod
    def _normalise_login_path(cls, value: str | None) -> str:
        return _clean_path(value, name="Login path")

    @model_validator(mode="after")
    def _lead_below_timeout(self) -> "SessionSettings":
        if self.warning_lead_seconds >= self.idle_timeout_seconds:
            raise ValueError("warning_lead_seconds must be smaller than idle_timeout_seconds")
        return self


class StepUpSettings(BaseModel):
    """Secondary factor configuration."""

    issuer_name: str = "Travelsphere"
    totp_digits: Literal[6] = 6
    backup_code_min_length: int = Field(default=8, ge=4)
    backup_code_max_length: int = Field(default=32, ge=4)

    @model_validator(mode="after")
    def _ordered_lengths(self) -> "StepUpSettings":
        if self.backup_code_min_length > self.backup_code_max_length:
            raise ValueError("backup_code_min_length must not exceed backup_code_max_length")
        return self


class LoggingSettings(BaseModel):
    level: str | None = Field(default=None, validation_alias=AliasChoices("LOG_LEVEL", "LOGGING__LEVEL"))

    model_config = ConfigDict(populate_by_name=True)


class Settings(BaseSettings):
    """Top level portal configuration."""

    env: str = Field(default="dev", validation_alias=AliasChoices("ENV", "APP_ENV"))
    api: ApiSettings = Field(default_factory=ApiSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    tenant: TenantSettings = Field(default_factory=TenantSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    step_up: StepUpSettings = Field(default_factory=StepUpSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_file=_DEFAULT_ENV_FILES,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )


settings = Settings()

__all__ = [
    "ApiSettings",
    "LoggingSettings",
    "SessionSettings",
    "Settings",
    "StepUpSettings",
    "StorageSettings",
    "TenantSettings",
    "settings",
]
