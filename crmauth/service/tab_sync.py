from __future__ import annotations

from typing import Callable, Optional

from crmauth.logging import get_logger
from crmauth.service.session import SessionStore
from crmauth.storage.device import StorageChannel
from crmauth.storage.models import StorageSignal

logger = get_logger(__name__)


class CrossTabSync:
    """Clears this tab's session when another tab removes the auth token.

    Receive-only: the removal signal is produced by whichever tab signs out,
    as a side effect of deleting the token from shared storage.
    """

    def __init__(self, channel: StorageChannel, store: SessionStore, *, token_key: str) -> None:
        self.channel = channel
        self.store = store
        self.token_key = token_key
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.channel.subscribe(self.handle_signal)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def handle_signal(self, signal: StorageSignal) -> None:
        if signal.key != self.token_key or signal.new_value:
            return
        logger.info("cross_tab_sign_out", origin=signal.origin)
        self.store.clear(reason="cross_tab_sign_out")
