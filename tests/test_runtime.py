import asyncio
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from crmauth.config import Settings
from crmauth.service import runtime as runtime_module
from crmauth.service.crm_data import LocalCollectionCache
from crmauth.service.inactivity import LoopScheduler
from crmauth.service.memory import MemoryIdentityProvider
from crmauth.service.runtime import (
    Runtime,
    _mask_url_password,
    get_runtime,
    reset_runtime_for_tests,
)
from crmauth.storage.models import AuthStatus

PASSWORD = "Password123"


def test_memory_identity_wiring(runtime):
    tab = runtime.open_tab("tab-x")
    assert isinstance(tab.provider, MemoryIdentityProvider)
    assert isinstance(tab.reloader, LocalCollectionCache)
    assert tab.store.token_key == "sb-testproj-auth-token"
    assert runtime.tabs["tab-x"] is tab


def test_get_runtime_is_singleton():
    assert get_runtime() is get_runtime()


def test_reset_refuses_outside_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    with pytest.raises(RuntimeError):
        reset_runtime_for_tests()
    monkeypatch.setenv("TEST_MODE", "true")
    reset_runtime_for_tests()


def test_mask_url_password():
    assert _mask_url_password("redis://:hunter2@localhost:6379/0") == "redis://:***@localhost:6379/0"
    assert _mask_url_password("redis://localhost:6379") == "redis://localhost:6379"


async def test_loop_scheduler_runs_sync_and_async_callbacks():
    scheduler = LoopScheduler()
    ran = []

    async def later():
        ran.append("async")

    scheduler.call_later(0.01, lambda: ran.append("sync"))
    scheduler.call_later(0.01, later)
    cancelled = scheduler.call_later(0.01, lambda: ran.append("cancelled"))
    cancelled.cancel()
    await asyncio.sleep(0.05)

    assert sorted(ran) == ["async", "sync"]


async def test_tab_lifecycle_with_event_loop(runtime, backend):
    backend.create_user("alice@example.com", PASSWORD)
    tab = runtime.open_tab("tab-live")
    await tab.start()
    assert tab.store.status == AuthStatus.UNAUTHENTICATED

    result = await tab.auth.login("alice@example.com", PASSWORD)
    assert result.ok
    assert tab.monitor.running

    await runtime.close_tab("tab-live")
    assert not tab.monitor.running
    assert "tab-live" not in runtime.tabs


@pytest.mark.parametrize("reachable", [True, False])
def test_redis_connection_check_is_closed(monkeypatch, reachable):
    checker = MagicMock()
    if not reachable:
        checker.verify_connection.side_effect = RedisConnectionError("refused")
    monkeypatch.setattr(runtime_module, "RedisDeviceStorage", MagicMock(return_value=checker))
    settings = Settings(redis_url="redis://localhost:6379/0", use_memory_identity=True)

    if reachable:
        Runtime(settings)
    else:
        with pytest.raises(RuntimeError):
            Runtime(settings)

    checker.verify_connection.assert_called_once()
    checker.close.assert_called_once()
