from __future__ import annotations

import threading
import time
import uuid
from typing import Any, Callable, Dict, Optional, Union
from urllib.parse import urlparse, urlunparse

from crmauth.config import Settings, get_settings, reset_settings_cache
from crmauth.logging import get_logger
from crmauth.service.auth import AuthOrchestrator
from crmauth.service.crm_data import CollectionReloader, LocalCollectionCache
from crmauth.service.gotrue import GoTrueIdentityProvider, PostgrestProfileStore
from crmauth.service.inactivity import (
    ActivityHub,
    InactivityMonitor,
    LoopScheduler,
    Scheduler,
)
from crmauth.service.lockout import LockoutTracker
from crmauth.service.memory import (
    MemoryIdentityBackend,
    MemoryIdentityProvider,
    MemoryProfileStore,
)
from crmauth.service.mfa import MFAService, StepUpGate
from crmauth.service.session import SessionStore
from crmauth.service.tab_sync import CrossTabSync
from crmauth.storage.device import SharedStorage, StorageView
from crmauth.storage.preferences import PreferencesStore
from crmauth.storage.redis_storage import RedisDeviceStorage, RedisStorageChannel

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class TabRuntime:
    """All auth components for one open tab, wired to shared device state."""

    def __init__(
        self,
        runtime: "Runtime",
        tab_id: str,
        *,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        settings = runtime.settings
        self.tab_id = tab_id
        self.redis_channel: Optional[RedisStorageChannel] = None
        if settings.redis_url:
            self.storage: Union[StorageView, RedisDeviceStorage] = RedisDeviceStorage(
                settings.redis_url, tab_id=tab_id
            )
            self.redis_channel = RedisStorageChannel(settings.redis_url, tab_id=tab_id)
            channel: Any = self.redis_channel
        else:
            self.storage = runtime.shared_storage.view(tab_id)
            channel = self.storage

        self.http_provider: Optional[GoTrueIdentityProvider] = None
        if runtime.identity_backend is not None:
            self.provider: Any = MemoryIdentityProvider(
                runtime.identity_backend, self.storage, settings.auth_token_storage_key
            )
            self.profiles: Any = MemoryProfileStore(runtime.identity_backend)
            self.reloader: Any = LocalCollectionCache()
        else:
            self.http_provider = GoTrueIdentityProvider(settings, self.storage)
            self.provider = self.http_provider
            self.profiles = PostgrestProfileStore(settings, self.http_provider)
            self.reloader = CollectionReloader(settings, self.http_provider)

        self.store = SessionStore(
            self.provider,
            self.profiles,
            self.storage,
            token_key=settings.auth_token_storage_key,
            reloader=self.reloader,
        )
        self.lockout = LockoutTracker.from_settings(
            settings, self.storage, clock=clock or time.time
        )
        self.activity = ActivityHub()
        self.monitor = InactivityMonitor.from_settings(
            settings, self.store, scheduler or LoopScheduler(), self.activity
        )
        self.tab_sync = CrossTabSync(
            channel, self.store, token_key=settings.auth_token_storage_key
        )
        self.mfa = MFAService(self.store)
        self.gate = StepUpGate(self.store)
        self.auth = AuthOrchestrator(
            self.store, self.lockout, settings=settings, mfa=self.mfa, monitor=self.monitor
        )
        self.preferences = PreferencesStore(self.storage, settings.preferences_storage_key)

    async def start(self) -> None:
        """Begin listening for other tabs and resolve the persisted session."""
        self.tab_sync.start()
        self.monitor.attach()
        if self.redis_channel is not None:
            self.redis_channel.start()
        await self.store.initialize()
        logger.info("tab_started", tab_id=self.tab_id, status=self.store.status.value)

    async def close(self) -> None:
        self.tab_sync.stop()
        self.monitor.detach()
        self.store.close()
        if self.redis_channel is not None:
            await self.redis_channel.close()
        if isinstance(self.storage, RedisDeviceStorage):
            self.storage.close()
        if self.http_provider is not None:
            await self.http_provider.close()


class Runtime:
    """Device-wide state shared by every tab: settings, storage, identity backend."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_identity=self.settings.use_memory_identity,
            test_mode=self.settings.test_mode,
        )
        self.shared_storage = SharedStorage(self.settings.device_storage_path)
        if self.settings.redis_url:
            checker = RedisDeviceStorage(self.settings.redis_url)
            try:
                checker.verify_connection()
            except Exception as exc:
                logger.error(
                    "redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise RuntimeError(
                    "Redis is configured for shared device storage but is unreachable"
                ) from exc
            finally:
                checker.close()
        self.identity_backend: Optional[MemoryIdentityBackend] = (
            MemoryIdentityBackend() if self.settings.use_memory_identity else None
        )
        self.tabs: Dict[str, TabRuntime] = {}
        logger.info(
            "runtime_initialized",
            identity="memory" if self.identity_backend else "gotrue",
            identity_url=self.settings.identity_url,
            redis_enabled=bool(self.settings.redis_url),
            persisted_storage=bool(self.settings.device_storage_path),
        )

    def open_tab(
        self,
        tab_id: Optional[str] = None,
        *,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> TabRuntime:
        tab_id = tab_id or uuid.uuid4().hex[:8]
        tab = TabRuntime(self, tab_id, scheduler=scheduler, clock=clock)
        self.tabs[tab_id] = tab
        return tab

    async def close_tab(self, tab_id: str) -> None:
        tab = self.tabs.pop(tab_id, None)
        if tab is not None:
            await tab.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
