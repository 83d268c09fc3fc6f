"""Idle-session monitoring with a one-time warning and forced logout."""
from __future__ import annotations

import asyncio
import enum
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

from .config import SessionSettings
from .errors import SESSION_EXPIRED_REASON
from .gateway import RequestGateway
from .host import HostBridge, notify
from .logging import get_logger


logger = get_logger(__name__)

ACTIVITY_SIGNALS = frozenset(
    {
        "pointer",
        "key",
        "scroll",
        "touch",
        "mousedown",
        "keydown",
        "touchstart",
        "click",
    }
)

ActivityCallback = Callable[[str], object]
VisibilityCallback = Callable[[bool], Awaitable[None]]
Unsubscribe = Callable[[], None]


class MonitorState(str, enum.Enum):
    ACTIVE = "active"
    WARNED = "warned"
    EXPIRED = "expired"


@dataclass(slots=True)
class ActivityClock:
    last_activity_at: float
    warning_shown: bool = False

    def reset(self, now: float) -> None:
        self.last_activity_at = now
        self.warning_shown = False

    def idle_for(self, now: float) -> float:
        return max(0.0, now - self.last_activity_at)


class ActivityObserver(Protocol):
    """Source of user-activity and visibility signals."""

    def subscribe(
        self,
        on_activity: ActivityCallback,
        on_visibility: VisibilityCallback,
    ) -> Unsubscribe:
        ...


class ManualActivityObserver:
    """Observer driven explicitly by the host (or by tests)."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[ActivityCallback, VisibilityCallback]] = []

    def subscribe(
        self,
        on_activity: ActivityCallback,
        on_visibility: VisibilityCallback,
    ) -> Unsubscribe:
        entry = (on_activity, on_visibility)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, signal: str) -> None:
        for on_activity, _ in list(self._subscribers):
            on_activity(signal)

    async def emit_visibility(self, visible: bool) -> None:
        for _, on_visibility in list(self._subscribers):
            await on_visibility(visible)


def warning_message(remaining_seconds: float) -> str:
    minutes = max(1, math.ceil(remaining_seconds / 60))
    unit = "minute" if minutes == 1 else "minutes"
    return f"Your session will expire in {minutes} {unit}. Click anywhere to stay logged in."


class SessionMonitor:
    """Track user idleness and end the session once the idle timeout elapses.

    ``clock`` returns wall-clock seconds so that time spent in a suspended or
    backgrounded host still counts towards the timeout.
    A session ended through the gateway halts the monitor until :meth:`start`
    is called for the next session.
    """

    def __init__(
        self,
        gateway: RequestGateway,
        host: HostBridge,
        config: SessionSettings | None = None,
        *,
        clock: Callable[[], float] = time.time,
        observer: ActivityObserver | None = None,
    ) -> None:
        self._gateway = gateway
        self._host = host
        self._config = config or SessionSettings()
        self._clock = clock
        self._observer = observer
        self._activity = ActivityClock(last_activity_at=clock())
        self._state = MonitorState.ACTIVE
        self._task: Optional[asyncio.Task[None]] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        gateway.add_session_listener(self._session_ended)

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def activity(self) -> ActivityClock:
        return self._activity

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def record_activity(self, signal: str = "pointer") -> bool:
        """Reset the idle clock for a recognized activity ``signal``."""

        if signal.lower() not in ACTIVITY_SIGNALS:
            return False
        self._activity.reset(self._clock())
        if self._state is MonitorState.WARNED:
            self._state = MonitorState.ACTIVE
        return True

    async def check(self) -> MonitorState:
        """Evaluate the idle clock once; one poll tick."""

        if self._state is MonitorState.EXPIRED:
            return self._state
        elapsed = self._activity.idle_for(self._clock())
        if elapsed >= self._config.idle_timeout_seconds:
            await self._expire(elapsed)
            return self._state

        remaining = self._config.idle_timeout_seconds - elapsed
        if remaining <= self._config.warning_lead_seconds and not self._activity.warning_shown:
            self._activity.warning_shown = True
            self._state = MonitorState.WARNED
            logger.info("session.warning_shown", remaining_seconds=round(remaining, 3))
            await notify(self._host.show_warning(warning_message(remaining), remaining))
        return self._state

    async def visibility_changed(self, visible: bool) -> None:
        if visible:
            await self.check()

    async def extend_session(self) -> None:
        self._activity.reset(self._clock())
        if self._state is MonitorState.WARNED:
            self._state = MonitorState.ACTIVE
        await self._gateway.refresh()

    async def _expire(self, elapsed: float) -> None:
        self._state = MonitorState.EXPIRED
        logger.warning("session.forced_logout", idle_seconds=round(elapsed, 3))
        self._stop_polling()
        await self._gateway.logout()
        await notify(self._host.redirect_to_login(SESSION_EXPIRED_REASON))

    def _session_ended(self, reason: str | None) -> None:
        # Ended elsewhere; no warning or redirect may follow.
        if self._state is not MonitorState.EXPIRED:
            logger.info("session.monitor_halted", reason=reason)
        self._state = MonitorState.EXPIRED
        self._stop_polling()

    def _stop_polling(self) -> None:
        task = self._task
        self._task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self._config.poll_interval_seconds)
            if await self.check() is MonitorState.EXPIRED:
                return

    def start(self) -> None:
        """Begin polling; a monitor that expired starts a fresh idle cycle."""

        if self.running:
            return
        self._state = MonitorState.ACTIVE
        self._activity.reset(self._clock())
        if self._observer is not None and self._unsubscribe is None:
            self._unsubscribe = self._observer.subscribe(self.record_activity, self.visibility_changed)
        self._task = asyncio.get_running_loop().create_task(self._poll(), name="portal-session-monitor")
        logger.info("session.monitor_started", idle_timeout_seconds=self._config.idle_timeout_seconds)

    async def stop(self) -> None:
        task = self._task
        self._stop_polling()
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def __aenter__(self) -> "SessionMonitor":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()


__all__ = [
    "ACTIVITY_SIGNALS",
    "ActivityClock",
    "ActivityObserver",
    "ManualActivityObserver",
    "MonitorState",
    "SessionMonitor",
    "warning_message",
]
