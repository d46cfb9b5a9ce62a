from __future__ import annotations

import math
import time
from typing import Callable, Optional

from crmauth.config import Settings
from crmauth.logging import get_logger
from crmauth.storage.device import DeviceStorage, read_json, write_json
from crmauth.storage.models import LockoutState

logger = get_logger(__name__)


class LockoutTracker:
    """Per-device login rate limiting with exponential backoff.

    After ``max_attempts`` consecutive failures the device is locked for
    ``base * 2 ** (attempts - max_attempts)`` seconds, capped at ``cap``. The
    counter is not decremented when a lockout window passes, so the next
    failure locks for twice as long; only a successful login resets it.

    The state is keyed by device, not by account: every account tried from a
    shared device shares one counter, and an attacker spreading attempts over
    several devices is not slowed down. Account-level throttling has to be
    enforced by the identity provider.
    """

    # Exponent ceiling; any larger value is already far beyond the cap
    _MAX_EXPONENT = 32

    def __init__(
        self,
        storage: DeviceStorage,
        *,
        key: str = "crm-login-lockout",
        max_attempts: int = 5,
        base_seconds: int = 5 * 60,
        cap_seconds: int = 5 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.key = key
        self.max_attempts = max_attempts
        self.base_seconds = base_seconds
        self.cap_seconds = cap_seconds
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        storage: DeviceStorage,
        *,
        clock: Callable[[], float] = time.time,
    ) -> "LockoutTracker":
        return cls(
            storage,
            key=settings.lockout_storage_key,
            max_attempts=settings.lockout_max_attempts,
            base_seconds=settings.lockout_base_seconds,
            cap_seconds=settings.lockout_cap_seconds,
            clock=clock,
        )

    def window_for(self, attempts: int) -> int:
        """Lockout length in seconds after ``attempts`` consecutive failures."""
        if attempts < self.max_attempts:
            return 0
        exponent = min(attempts - self.max_attempts, self._MAX_EXPONENT)
        return min(self.base_seconds * 2**exponent, self.cap_seconds)

    def read(self) -> LockoutState:
        # Another tab may have written since the last check
        data = read_json(self.storage, self.key)
        if not isinstance(data, dict):
            return LockoutState()
        try:
            return LockoutState.from_dict(data)
        except (TypeError, ValueError):
            logger.warning("lockout_state_unreadable", key=self.key)
            return LockoutState()

    def remaining_seconds(self, now: Optional[float] = None) -> int:
        state = self.read()
        current = self.clock() if now is None else now
        if state.locked_until <= current:
            return 0
        return math.ceil(state.locked_until - current)

    def is_locked(self) -> bool:
        return self.remaining_seconds() > 0

    def record_failure(self) -> LockoutState:
        state = self.read()
        now = self.clock()
        state.attempts += 1
        window = self.window_for(state.attempts)
        if window:
            state.locked_until = now + window
            logger.warning(
                "login_lockout_triggered",
                attempts=state.attempts,
                window_seconds=window,
            )
        else:
            logger.info("login_failure_recorded", attempts=state.attempts)
        write_json(self.storage, self.key, state.to_dict())
        return state

    def reset(self) -> None:
        if self.storage.get_item(self.key) is not None:
            logger.info("login_lockout_reset")
        self.storage.remove_item(self.key)
