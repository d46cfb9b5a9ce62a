"""Cross-tab logout propagation through shared device storage."""

from crmauth.service.tab_sync import CrossTabSync
from crmauth.storage.models import AuthStatus, StorageSignal

PASSWORD = "Password123"
TOKEN_KEY = "sb-testproj-auth-token"


async def _start_two_tabs(open_tab):
    tab_a = open_tab("tab-a")
    tab_b = open_tab("tab-b")
    await tab_a.start()
    await tab_a.auth.login("alice@example.com", PASSWORD)
    await tab_b.start()
    assert tab_b.store.is_authenticated
    return tab_a, tab_b


async def test_logout_in_one_tab_clears_the_other(open_tab, backend, user):
    tab_a, tab_b = await _start_two_tabs(open_tab)
    sign_outs = backend.calls["sign_out"]

    await tab_a.auth.logout()

    assert tab_b.store.session is None
    assert tab_b.store.profile is None
    assert tab_b.store.status == AuthStatus.UNAUTHENTICATED
    # Tab B never issued its own sign-out
    assert backend.calls["sign_out"] == sign_outs + 1


async def test_external_token_removal_clears_session(open_tab, runtime, user):
    tab_a, tab_b = await _start_two_tabs(open_tab)

    runtime.shared_storage.remove_item(TOKEN_KEY, origin="devtools")

    assert tab_a.store.session is None
    assert tab_b.store.session is None


async def test_token_rewrite_does_not_clear(open_tab, user):
    tab_a, tab_b = await _start_two_tabs(open_tab)
    await tab_a.provider.refresh_session()
    assert tab_b.store.is_authenticated


async def test_other_keys_are_ignored(open_tab, user):
    tab_a, tab_b = await _start_two_tabs(open_tab)
    tab_a.preferences.toggle_dark_mode()
    tab_a.storage.remove_item("adwood-crm-storage")
    assert tab_b.store.is_authenticated


async def test_cross_tab_clear_stops_inactivity_monitor(open_tab, scheduler, user):
    tab_a, tab_b = await _start_two_tabs(open_tab)
    assert tab_b.monitor.running
    await tab_a.auth.logout()
    assert not tab_b.monitor.running
    assert scheduler.pending() == []


class FakeChannel:
    def __init__(self):
        self.listeners = []

    def subscribe(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    def deliver(self, signal):
        for listener in list(self.listeners):
            listener(signal)


async def test_sync_with_injected_channel(tab, user):
    await tab.store.initialize()
    await tab.auth.login("alice@example.com", PASSWORD)
    channel = FakeChannel()
    sync = CrossTabSync(channel, tab.store, token_key=TOKEN_KEY)
    sync.start()

    channel.deliver(StorageSignal(TOKEN_KEY, "{}", "{}", "tab-z"))
    assert tab.store.is_authenticated

    channel.deliver(StorageSignal(TOKEN_KEY, "{}", None, "tab-z"))
    assert tab.store.session is None

    sync.stop()
    assert channel.listeners == []
