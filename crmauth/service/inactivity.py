from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol, Set

from crmauth.config import Settings
from crmauth.logging import get_logger
from crmauth.service.errors import InactivityExpiredError
from crmauth.service.session import SessionState, SessionStore

logger = get_logger(__name__)


class ActivitySignal(str, Enum):
    POINTER_DOWN = "pointer_down"
    KEY_DOWN = "key_down"
    SCROLL = "scroll"
    TOUCH_START = "touch_start"


ActivityListener = Callable[[ActivitySignal], None]
WarningListener = Callable[[int], None]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Deferred-callback facility; callbacks may return a coroutine."""

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle: ...


class LoopScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._tasks: Set[asyncio.Task] = set()

    def _run(self, callback: Callable[[], Any]) -> None:
        result = callback()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result, loop=self._loop)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def call_later(self, delay: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), self._run, callback)


class ActivitySource(Protocol):
    def add_listener(self, signal: ActivitySignal, listener: ActivityListener) -> None: ...

    def remove_listener(self, signal: ActivitySignal, listener: ActivityListener) -> None: ...


class ActivityHub:
    """In-process activity source; UI adapters call ``emit`` on user input."""

    def __init__(self) -> None:
        self._listeners: dict[ActivitySignal, List[ActivityListener]] = {}

    def add_listener(self, signal: ActivitySignal, listener: ActivityListener) -> None:
        self._listeners.setdefault(signal, []).append(listener)

    def remove_listener(self, signal: ActivitySignal, listener: ActivityListener) -> None:
        listeners = self._listeners.get(signal, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self) -> int:
        return sum(len(listeners) for listeners in self._listeners.values())

    def emit(self, signal: ActivitySignal) -> None:
        for listener in list(self._listeners.get(signal, [])):
            listener(signal)


class InactivityMonitor:
    """Signs the tab out after ``timeout_seconds`` without user activity.

    The monitor follows the session store: it arms itself when the store
    becomes authenticated and tears down (timers cancelled, activity
    listeners removed) as soon as the session ends for any reason.
    """

    def __init__(
        self,
        store: SessionStore,
        scheduler: Scheduler,
        activity: ActivitySource,
        *,
        timeout_seconds: int = 30 * 60,
        warning_seconds: int = 5 * 60,
    ) -> None:
        if warning_seconds >= timeout_seconds:
            raise ValueError("warning lead must be shorter than the inactivity timeout")
        self.store = store
        self.scheduler = scheduler
        self.activity = activity
        self.timeout_seconds = timeout_seconds
        self.warning_seconds = warning_seconds
        self._warning_timer: Optional[TimerHandle] = None
        self._expiry_timer: Optional[TimerHandle] = None
        self._warning_listeners: List[WarningListener] = []
        self._running = False
        self._unsubscribe_store: Optional[Callable[[], None]] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: SessionStore,
        scheduler: Scheduler,
        activity: ActivitySource,
    ) -> "InactivityMonitor":
        return cls(
            store,
            scheduler,
            activity,
            timeout_seconds=settings.inactivity_timeout_seconds,
            warning_seconds=settings.inactivity_warning_seconds,
        )

    @property
    def running(self) -> bool:
        return self._running

    def attach(self) -> None:
        """Follow the session store from now on."""
        if self._unsubscribe_store is None:
            self._unsubscribe_store = self.store.subscribe(self._on_state)
        self._on_state(self.store.snapshot())

    def detach(self) -> None:
        if self._unsubscribe_store is not None:
            self._unsubscribe_store()
            self._unsubscribe_store = None
        self.stop()

    def on_warning(self, listener: WarningListener) -> Callable[[], None]:
        self._warning_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._warning_listeners:
                self._warning_listeners.remove(listener)

        return _unsubscribe

    def _on_state(self, state: SessionState) -> None:
        if state.authenticated and not self._running:
            self.start()
        elif not state.authenticated and self._running:
            self.stop()

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for signal in ActivitySignal:
            self.activity.add_listener(signal, self.record_activity)
        self._arm()
        logger.debug("inactivity_monitor_started", timeout_seconds=self.timeout_seconds)

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._cancel_timers()
        for signal in ActivitySignal:
            self.activity.remove_listener(signal, self.record_activity)
        logger.debug("inactivity_monitor_stopped")

    def record_activity(self, signal: Optional[ActivitySignal] = None) -> None:
        if not self._running:
            return
        self._cancel_timers()
        self._arm()

    def _arm(self) -> None:
        self._warning_timer = self.scheduler.call_later(
            self.timeout_seconds - self.warning_seconds, self._warn
        )
        self._expiry_timer = self.scheduler.call_later(self.timeout_seconds, self.expire)

    def _cancel_timers(self) -> None:
        for timer in (self._warning_timer, self._expiry_timer):
            if timer is not None:
                timer.cancel()
        self._warning_timer = None
        self._expiry_timer = None

    def _warn(self) -> None:
        self._warning_timer = None
        if not self._running:
            return
        logger.info("inactivity_warning", seconds_remaining=self.warning_seconds)
        for listener in list(self._warning_listeners):
            try:
                listener(self.warning_seconds)
            except Exception as exc:
                logger.error("inactivity_warning_listener_failed", error=str(exc))

    async def expire(self) -> None:
        """Force a logout and report the inactivity-specific error."""
        self._expiry_timer = None
        self.stop()
        logger.info("inactivity_timeout", timeout_seconds=self.timeout_seconds)
        await self.store.force_sign_out(reason="inactivity_timeout")
        self.store.set_error(InactivityExpiredError())
