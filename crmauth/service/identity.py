from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from crmauth.logging import get_logger
from crmauth.storage.models import (
    AssuranceLevels,
    AuthEvent,
    MFAChallenge,
    MFAFactor,
    Session,
    UserProfile,
)

logger = get_logger(__name__)

AuthListener = Callable[[AuthEvent, Optional[Session]], Awaitable[None]]


class MFAApi(Protocol):
    async def list_factors(self) -> List[MFAFactor]: ...

    async def enroll(self, friendly_name: Optional[str] = None) -> MFAFactor: ...

    async def challenge(self, factor_id: str) -> MFAChallenge: ...

    async def verify(self, factor_id: str, challenge_id: str, code: str) -> Session: ...

    async def unenroll(self, factor_id: str) -> None: ...

    async def get_assurance_level(self) -> AssuranceLevels: ...


class IdentityProvider(Protocol):
    """Hosted authentication service as seen from one browser tab.

    Every coroutine raises ``IdentityProviderError`` on failure;
    ``sign_in_with_password`` raises ``InvalidCredentials`` for a rejected
    email/password pair.
    """

    mfa: MFAApi

    async def get_persisted_session(self) -> Optional[Session]: ...

    async def refresh_session(self) -> Session: ...

    async def sign_in_with_password(self, email: str, password: str) -> Session: ...

    async def sign_out(self) -> None: ...

    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]: ...

    async def reset_password_for_email(self, email: str, redirect_to: str) -> None: ...

    async def update_user_password(self, new_password: str) -> None: ...


class ProfileStore(Protocol):
    """CRUD over the ``profiles`` records keyed by subject id."""

    async def get_profile(self, user_id: str) -> Optional[UserProfile]: ...

    async def update_profile(self, user_id: str, fields: Dict[str, Any]) -> UserProfile: ...


class DataReloader(Protocol):
    """Bulk reload of the CRM collections after a (re)authentication."""

    async def fetch_all(self) -> None: ...


class AuthEventEmitter:
    """Listener registry shared by identity provider implementations."""

    def __init__(self) -> None:
        self._auth_listeners: List[AuthListener] = []

    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]:
        self._auth_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._auth_listeners:
                self._auth_listeners.remove(listener)

        return _unsubscribe

    async def _emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        for listener in list(self._auth_listeners):
            try:
                await listener(event, session)
            except Exception as exc:
                logger.error(
                    "auth_listener_failed", auth_event=event.value, error=str(exc)
                )
