from __future__ import annotations

import contextlib
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional

from crmauth.logging import get_logger
from crmauth.service.errors import (
    AccountDeactivatedError,
    AuthError,
    IdentityProviderError,
)
from crmauth.service.identity import DataReloader, IdentityProvider, ProfileStore
from crmauth.storage.device import DeviceStorage
from crmauth.storage.models import AuthEvent, AuthStatus, Session, UserProfile

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionState:
    status: AuthStatus
    session: Optional[Session]
    profile: Optional[UserProfile]
    error: Optional[AuthError]

    @property
    def authenticated(self) -> bool:
        return (
            self.status == AuthStatus.AUTHENTICATED
            and self.session is not None
            and self.profile is not None
            and self.profile.is_active
        )


SessionListener = Callable[[SessionState], None]


class SessionStore:
    """Single owner of the current Session/Profile pair for one tab.

    Every state change goes through this object; consumers read snapshots and
    subscribe for changes instead of keeping their own copies.

    Async transitions (initialize, login, provider events) are tagged with a
    generation number taken from ``begin_transition()``. ``clear()`` always
    advances the generation, so a profile fetch that resolves after a logout
    is discarded instead of resurrecting the session.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        profiles: ProfileStore,
        storage: DeviceStorage,
        *,
        token_key: str,
        reloader: Optional[DataReloader] = None,
    ) -> None:
        self.provider = provider
        self.profiles = profiles
        self.storage = storage
        self.token_key = token_key
        self.reloader = reloader
        self._session: Optional[Session] = None
        self._profile: Optional[UserProfile] = None
        self._status = AuthStatus.LOADING
        self._error: Optional[AuthError] = None
        self._generation = 0
        self._local_depth = 0
        self._listeners: List[SessionListener] = []
        self._unsubscribe_provider = provider.on_auth_state_change(self.on_auth_event)

    # ------------------------------------------------------------------ state
    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def profile(self) -> Optional[UserProfile]:
        return self._profile

    @property
    def status(self) -> AuthStatus:
        return self._status

    @property
    def loading(self) -> bool:
        return self._status == AuthStatus.LOADING

    @property
    def error(self) -> Optional[AuthError]:
        return self._error

    @property
    def generation(self) -> int:
        return self._generation

    def snapshot(self) -> SessionState:
        return SessionState(self._status, self._session, self._profile, self._error)

    @property
    def is_authenticated(self) -> bool:
        return self.snapshot().authenticated

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        state = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as exc:
                logger.error("session_listener_failed", error=str(exc))

    def set_error(self, error: Optional[AuthError]) -> None:
        self._error = error
        self._notify()

    def clear_error(self) -> None:
        if self._error is not None:
            self.set_error(None)

    # ------------------------------------------------------------ transitions
    def begin_transition(self) -> int:
        self._generation += 1
        return self._generation

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    @contextlib.asynccontextmanager
    async def local_transition(self) -> AsyncIterator[int]:
        """Run a locally driven transition; provider echoes are ignored meanwhile."""
        self._local_depth += 1
        try:
            yield self.begin_transition()
        finally:
            self._local_depth -= 1

    def clear(self, *, reason: str = "cleared") -> None:
        """Drop the Session/Profile pair immediately. Safe to call repeatedly."""
        self._generation += 1
        changed = (
            self._session is not None
            or self._profile is not None
            or self._status != AuthStatus.UNAUTHENTICATED
        )
        self._session = None
        self._profile = None
        self._status = AuthStatus.UNAUTHENTICATED
        if changed:
            logger.info("session_cleared", reason=reason)
            self._notify()

    async def force_sign_out(self, *, reason: str) -> None:
        """Clear local state, then sign out remotely on a best-effort basis.

        The persisted token is removed whatever the remote call does, so a
        failed sign-out cannot leave a token behind for the next page load.
        """
        self.clear(reason=reason)
        try:
            await self.provider.sign_out()
        except IdentityProviderError as exc:
            logger.warning(
                "sign_out_failed", reason=reason, error=exc.message, code=exc.code
            )
        self.storage.remove_item(self.token_key)

    async def discard_stale(self, session: Session, *, reason: str) -> None:
        """Revoke a session that a newer transition superseded before adoption.

        The provider may have persisted it after a logout already removed the
        token. Nothing is done once a different session has been persisted.
        """
        try:
            persisted = await self.provider.get_persisted_session()
        except IdentityProviderError as exc:
            logger.warning("persisted_session_read_failed", error=exc.message)
            persisted = None
        if persisted is not None and persisted.access_token != session.access_token:
            return
        logger.info("stale_session_revoked", reason=reason, user_id=session.user_id)
        try:
            await self.provider.sign_out()
        except IdentityProviderError as exc:
            logger.warning(
                "sign_out_failed", reason=reason, error=exc.message, code=exc.code
            )
        if persisted is not None:
            self.storage.remove_item(self.token_key)

    async def adopt(
        self, session: Session, generation: int, *, reload: bool
    ) -> Optional[UserProfile]:
        """Fetch the profile for ``session`` and make the pair authoritative.

        Returns ``None`` when a newer transition superseded this one. Raises
        ``AccountDeactivatedError`` (after signing out) when the profile is
        missing or inactive; provider failures propagate.
        """
        try:
            profile = await self.profiles.get_profile(session.user_id)
        except IdentityProviderError as exc:
            # A row with an unknown role is as unusable as a missing one
            if exc.code != "profile_invalid":
                raise
            logger.warning("profile_unusable", user_id=session.user_id)
            profile = None
        if not self.is_current(generation):
            logger.info("stale_transition_discarded", generation=generation)
            return None
        if profile is None or not profile.is_active:
            logger.warning(
                "account_deactivated",
                user_id=session.user_id,
                profile_missing=profile is None,
            )
            await self.force_sign_out(reason="account_deactivated")
            error = AccountDeactivatedError(
                None
                if profile is not None
                else "Account not found or deactivated. Contact your administrator."
            )
            self.set_error(error)
            raise error
        self._session = session
        self._profile = profile
        self._status = AuthStatus.AUTHENTICATED
        self._notify()
        if reload:
            await self.reload_data()
        return profile

    def apply_profile(self, profile: UserProfile) -> bool:
        """Replace the held profile with a server-confirmed copy of it."""
        if self._session is None or self._session.user_id != profile.id:
            logger.info("profile_update_discarded", user_id=profile.id)
            return False
        self._profile = profile
        self._notify()
        return True

    async def reload_data(self) -> None:
        if self.reloader is None:
            return
        try:
            await self.reloader.fetch_all()
        except Exception as exc:
            # Data collections are a separate concern; the session stays valid
            logger.warning("data_reload_failed", error=str(exc))

    async def initialize(self) -> SessionState:
        """Restore a persisted session at startup.

        A cached token is never trusted as-is: it is always refreshed first.
        Every failure ends in a definite unauthenticated state.
        """
        self._status = AuthStatus.LOADING
        try:
            async with self.local_transition() as generation:
                try:
                    persisted = await self.provider.get_persisted_session()
                except IdentityProviderError as exc:
                    logger.warning("persisted_session_read_failed", error=exc.message)
                    persisted = None
                if persisted is None:
                    if self.is_current(generation):
                        self.clear(reason="no_persisted_session")
                    return self.snapshot()
                try:
                    fresh = await self.provider.refresh_session()
                except IdentityProviderError as exc:
                    logger.info(
                        "session_refresh_failed", error=exc.message, code=exc.code
                    )
                    if self.is_current(generation):
                        await self.force_sign_out(reason="refresh_failed")
                    return self.snapshot()
                try:
                    profile = await self.adopt(fresh, generation, reload=True)
                except AccountDeactivatedError:
                    pass
                except IdentityProviderError as exc:
                    logger.warning("profile_fetch_failed", error=exc.message)
                    if self.is_current(generation):
                        await self.force_sign_out(reason="profile_fetch_failed")
                else:
                    if profile is None:
                        await self.discard_stale(fresh, reason="restore_superseded")
        finally:
            if self._status == AuthStatus.LOADING:
                self.clear(reason="initialize_incomplete")
        return self.snapshot()

    async def on_auth_event(self, event: AuthEvent, session: Optional[Session]) -> None:
        """React to events pushed by the identity provider."""
        if event == AuthEvent.SIGNED_OUT:
            self.clear(reason="provider_signed_out")
            return
        if event == AuthEvent.INITIAL_SESSION or session is None:
            return
        if self._local_depth:
            logger.debug("auth_event_deferred_to_local_transition", auth_event=event.value)
            return
        if event != AuthEvent.SIGNED_IN and self._session is None:
            # Refresh echoes for a tab that is not signed in change nothing
            return
        generation = self.begin_transition()
        try:
            await self.adopt(session, generation, reload=event == AuthEvent.SIGNED_IN)
        except AccountDeactivatedError:
            return
        except IdentityProviderError as exc:
            logger.warning(
                "profile_revalidation_failed", auth_event=event.value, error=exc.message
            )
            if self.is_current(generation):
                await self.force_sign_out(reason="profile_revalidation_failed")

    def close(self) -> None:
        self._unsubscribe_provider()
        self._listeners.clear()
