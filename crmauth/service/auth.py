from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from crmauth.config import Settings
from crmauth.logging import get_logger, sanitize_error_message, set_flow_id
from crmauth.service.errors import (
    AccountDeactivatedError,
    AuthError,
    CredentialError,
    IdentityProviderError,
    InactivityExpiredError,
    InvalidCredentials,
    LockoutError,
    NetworkError,
    ProfileUpdateError,
    ValidationError,
)
from crmauth.service.inactivity import InactivityMonitor
from crmauth.service.lockout import LockoutTracker
from crmauth.service.mfa import MFAService
from crmauth.service.session import SessionStore
from crmauth.storage.models import UserProfile

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 8

# Fields a user may change on their own profile; role and active flag are
# administered server-side only.
EDITABLE_PROFILE_FIELDS = ("name", "phone", "avatar_url")
_FIELD_ALIASES = {"avatar": "avatar_url"}


@dataclass
class AuthResult:
    ok: bool
    profile: Optional[UserProfile] = None
    error: Optional[AuthError] = None
    redirect_to: Optional[str] = None


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_login_form(email: str, password: str) -> None:
    if not email:
        raise ValidationError("Email is required.", detail={"field": "email"})
    if not EMAIL_RE.match(email):
        raise ValidationError("Enter a valid email address.", detail={"field": "email"})
    if not password:
        raise ValidationError("Password is required.", detail={"field": "password"})
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
            detail={"field": "password"},
        )


def validate_new_password(password: str, confirmation: Optional[str] = None) -> None:
    problems = []
    if len(password or "") < MIN_PASSWORD_LENGTH:
        problems.append(f"at least {MIN_PASSWORD_LENGTH} characters")
    if not re.search(r"[A-Z]", password or ""):
        problems.append("one uppercase letter")
    if not re.search(r"[a-z]", password or ""):
        problems.append("one lowercase letter")
    if not re.search(r"\d", password or ""):
        problems.append("one number")
    if problems:
        raise ValidationError(
            "Password must contain " + ", ".join(problems) + ".",
            detail={"field": "password", "missing": problems},
        )
    if confirmation is not None and confirmation != password:
        raise ValidationError("Passwords do not match.", detail={"field": "confirm_password"})


def _provider_failure(exc: IdentityProviderError, *, error_code: str) -> AuthError:
    if exc.transient:
        return NetworkError(detail={"code": exc.code})
    return AuthError(sanitize_error_message(exc.message), error_code=error_code, detail={"code": exc.code})


class AuthOrchestrator:
    """User-facing auth verbs for one tab.

    Every verb returns an ``AuthResult``; collaborator failures are converted
    to ``AuthError`` subclasses here and never escape to the caller. The last
    surfaced error lives on the session store so every screen reads the same
    value.
    """

    def __init__(
        self,
        store: SessionStore,
        lockout: LockoutTracker,
        *,
        settings: Settings,
        mfa: Optional[MFAService] = None,
        monitor: Optional[InactivityMonitor] = None,
    ) -> None:
        self.store = store
        self.lockout = lockout
        self.settings = settings
        self.mfa = mfa or MFAService(store)
        self.monitor = monitor
        self.provider = store.provider
        self.profiles = store.profiles

    @property
    def error(self) -> Optional[AuthError]:
        return self.store.error

    def clear_error(self) -> None:
        self.store.clear_error()

    def _fail(self, error: AuthError) -> AuthResult:
        self.store.set_error(error)
        return AuthResult(False, error=error)

    async def login(self, email: str, password: str) -> AuthResult:
        set_flow_id()
        try:
            return await self._login(normalize_email(email), password)
        finally:
            # An attempt on a store that never finished restoring settles it
            if self.store.loading:
                self.store.clear(reason="login_failed")

    async def _login(self, email: str, password: str) -> AuthResult:
        remaining = self.lockout.remaining_seconds()
        if remaining > 0:
            logger.info("login_rejected_locked_out", remaining_seconds=remaining)
            return self._fail(LockoutError(remaining))
        try:
            validate_login_form(email, password)
        except ValidationError as exc:
            return self._fail(exc)
        self.store.clear_error()

        await self._clear_stale_session()

        async with self.store.local_transition() as generation:
            try:
                session = await self.provider.sign_in_with_password(email, password)
            except InvalidCredentials:
                self.lockout.record_failure()
                remaining = self.lockout.remaining_seconds()
                logger.info("login_failed", reason="invalid_credentials")
                if remaining > 0:
                    return self._fail(LockoutError(remaining))
                return self._fail(CredentialError())
            except IdentityProviderError as exc:
                logger.warning("login_failed", reason="provider_error", code=exc.code, error=exc.message)
                return self._fail(NetworkError(detail={"code": exc.code}))

            try:
                profile = await self.store.adopt(session, generation, reload=False)
            except AccountDeactivatedError as exc:
                return AuthResult(False, error=exc)
            except IdentityProviderError as exc:
                logger.warning("login_profile_fetch_failed", code=exc.code, error=exc.message)
                await self.store.force_sign_out(reason="profile_fetch_failed")
                return self._fail(NetworkError(detail={"code": exc.code}))

        if profile is None:
            logger.info("login_superseded")
            await self.store.discard_stale(session, reason="login_superseded")
            return AuthResult(False)
        self.lockout.reset()
        logger.info("login_succeeded", user_id=profile.id, role=profile.role.value)
        await self.store.reload_data()
        return AuthResult(True, profile=profile)

    async def _clear_stale_session(self) -> None:
        if self.store.session is None:
            try:
                persisted = await self.provider.get_persisted_session()
            except IdentityProviderError as exc:
                logger.warning("persisted_session_read_failed", error=exc.message)
                persisted = None
            if persisted is None:
                return
        await self.store.force_sign_out(reason="stale_session")

    async def logout(self) -> AuthResult:
        """Sign out; always succeeds locally even when the remote call fails."""
        was_signed_in = self.store.session is not None
        await self.store.force_sign_out(reason="logout")
        if was_signed_in:
            logger.info("logout_completed")
        return AuthResult(True)

    async def reset_password_request(self, email: str) -> AuthResult:
        email = normalize_email(email)
        if not EMAIL_RE.match(email):
            return self._fail(ValidationError("Enter a valid email address.", detail={"field": "email"}))
        try:
            await self.provider.reset_password_for_email(
                email, self.settings.password_reset_redirect
            )
        except IdentityProviderError as exc:
            logger.warning("password_reset_request_failed", code=exc.code, error=exc.message)
            return self._fail(_provider_failure(exc, error_code="password_reset_failed"))
        logger.info("password_reset_requested")
        return AuthResult(True)

    async def update_password(
        self, new_password: str, confirmation: Optional[str] = None
    ) -> AuthResult:
        try:
            validate_new_password(new_password, confirmation)
        except ValidationError as exc:
            return self._fail(exc)
        try:
            await self.provider.update_user_password(new_password)
        except IdentityProviderError as exc:
            logger.warning("password_update_failed", code=exc.code, error=exc.message)
            return self._fail(_provider_failure(exc, error_code="password_update_failed"))
        logger.info("password_updated")
        return AuthResult(True, redirect_to="/")

    async def update_profile(self, changes: Mapping[str, Any]) -> AuthResult:
        profile = self.store.profile
        if profile is None:
            return self._fail(
                AuthError("You must be signed in to update your profile.", error_code="not_authenticated")
            )
        payload: Dict[str, Any] = {}
        rejected = []
        for name, value in changes.items():
            field = _FIELD_ALIASES.get(name, name)
            if field in EDITABLE_PROFILE_FIELDS:
                payload[field] = value
            else:
                rejected.append(name)
        if rejected:
            logger.warning("profile_fields_rejected", fields=sorted(rejected))
        if not payload:
            return self._fail(ValidationError("No editable profile fields were supplied."))
        payload["updated_at"] = datetime.now(timezone.utc).isoformat()

        try:
            updated = await self.profiles.update_profile(profile.id, payload)
        except IdentityProviderError as exc:
            logger.warning("profile_update_failed", code=exc.code, error=exc.message)
            if exc.transient:
                return self._fail(NetworkError(detail={"code": exc.code}))
            return self._fail(ProfileUpdateError(detail={"code": exc.code}))
        if not self.store.apply_profile(updated):
            logger.warning("profile_update_not_applied", user_id=profile.id)
            return AuthResult(
                False,
                error=AuthError(
                    "Your session changed before the update finished.",
                    error_code="session_changed",
                ),
            )
        return AuthResult(True, profile=updated)

    async def verify_mfa(self, code: str) -> AuthResult:
        """Second-factor step-up; errors stay scoped to the MFA screen."""
        try:
            target = await self.mfa.verify(code)
        except AuthError as exc:
            return AuthResult(False, error=exc)
        return AuthResult(True, profile=self.store.profile, redirect_to=target)

    async def expire_for_inactivity(self) -> None:
        if self.monitor is not None:
            await self.monitor.expire()
            return
        await self.store.force_sign_out(reason="inactivity_timeout")
        self.store.set_error(InactivityExpiredError())
