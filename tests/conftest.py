import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("CRM_USE_MEMORY_IDENTITY", "true")
os.environ.setdefault("CRM_IDENTITY_PROJECT_REF", "testproj")
os.environ.setdefault("LOG_LEVEL", "WARNING")
# Shared storage stays in-process unless a test opts into Redis explicitly
os.environ.pop("REDIS_URL", None)
os.environ.pop("CRM_DEVICE_STORAGE_PATH", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from crmauth.service.memory import MemoryIdentityBackend  # noqa: E402
from crmauth.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from crmauth.storage.models import Role  # noqa: E402

PASSWORD = "Password123"


class FakeTimer:
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Manual clock; ``advance`` fires due callbacks in time order."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start
        self.timers = []

    def time(self):
        return self.now

    def call_later(self, delay, callback):
        timer = FakeTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    def pending(self):
        return [t for t in self.timers if not t.cancelled]

    async def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [t for t in self.pending() if t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self.timers.remove(timer)
            self.now = timer.when
            result = timer.callback()
            if inspect.isawaitable(result):
                await result
        self.now = target


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime() -> Runtime:
    return reset_runtime_for_tests()


@pytest.fixture
def backend(runtime) -> MemoryIdentityBackend:
    return runtime.identity_backend


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def open_tab(runtime, scheduler):
    def _open(tab_id=None):
        return runtime.open_tab(tab_id, scheduler=scheduler, clock=scheduler.time)

    return _open


@pytest.fixture
def tab(open_tab):
    return open_tab("tab-a")


@pytest.fixture
def user(backend):
    return backend.create_user(
        "alice@example.com", PASSWORD, name="Alice", role=Role.SALES
    )


@pytest.fixture
def admin(backend):
    return backend.create_user(
        "root@example.com", PASSWORD, name="Root", role=Role.ADMIN
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
