"""Tenant resolution from the calling origin."""
from __future__ import annotations

import ipaddress
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Iterator, Union

import httpx

from .config import TenantSettings


CallingContext = Union[str, httpx.URL, httpx.Request, None]

_current_origin: ContextVar[str | None] = ContextVar("portal_origin", default=None)


@contextmanager
def origin_scope(origin: str | None) -> Iterator[None]:
    """Bind the calling origin for requests issued inside the block."""

    token = _current_origin.set(origin)
    try:
        yield
    finally:
        _current_origin.reset(token)


def current_origin() -> str | None:
    return _current_origin.get()


@dataclass(frozen=True, slots=True)
class TenantContext:
    host_subdomain: str | None
    tenant_id: str | None


@dataclass(frozen=True, slots=True)
class SubdomainInfo:
    subdomain: str | None
    is_admin: bool
    is_tenant: bool
    is_localhost: bool
    full_domain: str


def extract_host(context: CallingContext) -> str | None:
    """Return the lower-cased host name of ``context`` without port."""

    if context is None:
        return None
    if isinstance(context, httpx.Request):
        origin = context.headers.get("origin")
        if origin and origin.lower() != "null":
            return extract_host(origin)
        return extract_host(context.url)
    if isinstance(context, httpx.URL):
        host = context.host
    else:
        text = context.strip()
        if not text:
            return None
        if "://" in text:
            host = httpx.URL(text).host
        else:
            host = text.split("/", 1)[0].rsplit(":", 1)[0] if text.count(":") <= 1 else text
    host = host.strip().strip("[]").rstrip(".").lower()
    return host or None


def _is_ip_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


class TenantResolver:
    """Pure mapping from a calling context to a tenant identifier."""

    def __init__(self, config: TenantSettings | None = None) -> None:
        self._config = config or TenantSettings()

    @property
    def header_name(self) -> str:
        return self._config.header_name

    def _is_local(self, host: str) -> bool:
        return host in self._config.local_hosts

    def resolve(self, context: CallingContext) -> str | None:
        host = extract_host(context)
        if host is None or self._is_local(host) or _is_ip_address(host):
            return None
        labels = host.split(".")
        if labels[0] in self._config.admin_labels:
            return None
        if len(labels) > 2:
            return labels[0]
        return None

    def context(self, context: CallingContext) -> TenantContext:
        host = extract_host(context)
        subdomain = None
        if host is not None and not _is_ip_address(host):
            labels = host.split(".")
            subdomain = labels[0] if len(labels) > 2 else None
        return TenantContext(host_subdomain=subdomain, tenant_id=self.resolve(context))

    def describe(self, context: CallingContext) -> SubdomainInfo:
        """Classify the host the way the storefront shell does (admin, tenant, local)."""

        host = extract_host(context) or ""
        labels = host.split(".") if host else []
        is_localhost = self._is_local(host) or host.endswith(".localhost") or host == "127.0.0.1"
        if is_localhost:
            subdomain = labels[0] if len(labels) > 1 else None
        elif len(labels) < 3 or _is_ip_address(host):
            subdomain = None
        else:
            subdomain = labels[0]
        is_admin = subdomain is not None and subdomain in self._config.admin_labels
        is_tenant = subdomain is not None and not is_admin and subdomain != "www"
        return SubdomainInfo(
            subdomain=subdomain,
            is_admin=is_admin,
            is_tenant=is_tenant,
            is_localhost=is_localhost,
            full_domain=host,
        )


__all__ = [
    "CallingContext",
    "SubdomainInfo",
    "TenantContext",
    "TenantResolver",
    "current_origin",
    "extract_host",
    "origin_scope",
]
