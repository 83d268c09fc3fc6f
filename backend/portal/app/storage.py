"""Durable key/value persistence for portal credentials."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import redis.asyncio as redis
from pydantic import ValidationError

from .config import StorageSettings
from .models import Session


LOGGER = logging.getLogger("portal.storage")


class KeyValueStore:
    """Minimal async key/value interface backing the credential store."""

    async def get(self, key: str) -> Optional[str]:  # pragma: no cover - interface
        raise NotImplementedError

    async def set(self, key: str, value: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, *keys: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class MemoryKeyValueStore(KeyValueStore):
    """In-process store used by tests and single-process hosts."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._store.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            self._store[key] = value

    async def delete(self, *keys: str) -> None:
        async with self._lock:
            for key in keys:
                self._store.pop(key, None)

    def snapshot(self) -> dict[str, str]:
        return dict(self._store)


class RedisKeyValueStore(KeyValueStore):
    """Redis backed store using ``redis.asyncio``."""

    def __init__(
        self,
        url: str | None = None,
        *,
        namespace: str = "portal",
        client: redis.Redis | None = None,
    ) -> None:
        if client is None:
            if not url:
                raise ValueError("A redis URL or client is required")
            client = redis.from_url(url, decode_responses=True)
        self._client = client
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(self._key(key))

    async def set(self, key: str, value: str) -> None:
        await self._client.set(name=self._key(key), value=value)

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._client.delete(*(self._key(key) for key in keys))

    async def aclose(self) -> None:
        await self._client.aclose()


def build_key_value_store(redis_url: str | None, *, namespace: str = "portal") -> KeyValueStore:
    if redis_url:
        try:
            return RedisKeyValueStore(redis_url, namespace=namespace)
        except ValueError:
            LOGGER.warning("redis credential store initialisation failed", exc_info=True)
    return MemoryKeyValueStore()


class CredentialStore:
    """Typed access to the access token, refresh token, tenant binding and session."""

    def __init__(self, backend: KeyValueStore, config: StorageSettings | None = None) -> None:
        self._backend = backend
        self._config = config or StorageSettings()

    @property
    def backend(self) -> KeyValueStore:
        return self._backend

    async def get_access_token(self) -> str | None:
        return await self._backend.get(self._config.access_token_key)

    async def get_refresh_token(self) -> str | None:
        return await self._backend.get(self._config.refresh_token_key)

    async def get_tenant_id(self) -> str | None:
        return await self._backend.get(self._config.tenant_key)

    async def set_tokens(self, access_token: str, refresh_token: str | None = None) -> None:
        await self._backend.set(self._config.access_token_key, access_token)
        if refresh_token:
            await self._backend.set(self._config.refresh_token_key, refresh_token)

    async def bind_tenant(self, tenant_id: str | None) -> None:
        if tenant_id:
            await self._backend.set(self._config.tenant_key, tenant_id)
        else:
            await self._backend.delete(self._config.tenant_key)

    async def save_session(self, session: Session) -> None:
        """Persist ``session``; tokens live under their own keys."""

        await self.set_tokens(session.access_token, session.refresh_token)
        await self.bind_tenant(session.tenant_id)
        metadata = session.model_dump_json(exclude={"access_token", "refresh_token"})
        await self._backend.set(self._config.session_key, metadata)

    async def load_session(self) -> Session | None:
        access_token = await self.get_access_token()
        if not access_token:
            return None
        refresh_token = await self.get_refresh_token()
        raw = await self._backend.get(self._config.session_key)
        if raw:
            try:
                metadata = json.loads(raw)
                return Session.model_validate(
                    {**metadata, "access_token": access_token, "refresh_token": refresh_token}
                )
            except (ValueError, TypeError, ValidationError):
                LOGGER.warning("stored session metadata is unreadable; ignoring it")
        return Session(
            access_token=access_token,
            refresh_token=refresh_token,
            tenant_id=await self.get_tenant_id(),
        )

    async def update_session(self, session: Session) -> None:
        metadata = session.model_dump_json(exclude={"access_token", "refresh_token"})
        await self._backend.set(self._config.session_key, metadata)

    async def clear(self) -> None:
        await self._backend.delete(
            self._config.access_token_key,
            self._config.refresh_token_key,
            self._config.tenant_key,
            self._config.session_key,
        )


__all__ = [
    "CredentialStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "RedisKeyValueStore",
    "build_key_value_store",
]
