"""Capabilities the pipeline needs from the host application."""
from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Protocol, runtime_checkable


@runtime_checkable
class HostBridge(Protocol):
    """Navigation and notification hooks supplied by the embedding application."""

    def redirect_to_login(self, reason: str) -> Awaitable[None] | None:
        ...

    def show_warning(self, message: str, remaining_seconds: float) -> Awaitable[None] | None:
        ...


async def notify(result: Awaitable[Any] | Any) -> None:
    """Await ``result`` when a host hook returned a coroutine."""

    if inspect.isawaitable(result):
        await result


@dataclass
class RecordingHost:
    """Host that records every signal; used by headless runners and tests."""

    redirects: list[str] = field(default_factory=list)
    warnings: list[tuple[str, float]] = field(default_factory=list)

    def redirect_to_login(self, reason: str) -> None:
        self.redirects.append(reason)

    def show_warning(self, message: str, remaining_seconds: float) -> None:
        self.warnings.append((message, remaining_seconds))


def login_location(login_path: str, reason: str) -> str:
    return f"{login_path}?reason={reason}"


__all__ = ["HostBridge", "RecordingHost", "login_location", "notify"]
