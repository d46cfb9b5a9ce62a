from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from crmauth.logging import get_logger, sanitize_error_message
from crmauth.service.access import (
    HOME_PATH,
    LOGIN_PATH,
    MFA_VERIFY_PATH,
    has_access,
    is_public,
    normalize_path,
)
from crmauth.service.errors import IdentityProviderError, MFAError, ValidationError
from crmauth.service.session import SessionStore
from crmauth.storage.models import MFAFactor, Session

logger = get_logger(__name__)

TOTP_CODE_RE = re.compile(r"^\d{6}$")


def _mfa_error(operation: str, exc: IdentityProviderError) -> MFAError:
    logger.warning("mfa_operation_failed", operation=operation, code=exc.code, error=exc.message)
    return MFAError(sanitize_error_message(exc.message) or None, detail={"code": exc.code})


class MFAService:
    """Second-factor lifecycle for the signed-in user.

    Operations raise ``MFAError`` (or ``ValidationError`` for malformed codes);
    failures never touch the primary session.
    """

    def __init__(self, store: SessionStore) -> None:
        self.store = store
        self.mfa = store.provider.mfa

    @staticmethod
    def _check_code(code: str) -> str:
        code = (code or "").strip()
        if not TOTP_CODE_RE.match(code):
            raise ValidationError("Enter the 6-digit code from your authenticator app.")
        return code

    async def list_factors(self) -> List[MFAFactor]:
        try:
            return await self.mfa.list_factors()
        except IdentityProviderError as exc:
            raise _mfa_error("list_factors", exc) from exc

    async def enroll(self, friendly_name: Optional[str] = None) -> MFAFactor:
        """Start TOTP enrollment; the returned factor carries the secret and URI."""
        try:
            factor = await self.mfa.enroll(friendly_name)
        except IdentityProviderError as exc:
            raise _mfa_error("enroll", exc) from exc
        logger.info("mfa_enrollment_started", factor_id=factor.id)
        return factor

    async def _challenge_and_verify(self, factor_id: str, code: str, operation: str) -> Session:
        async with self.store.local_transition() as generation:
            try:
                challenge = await self.mfa.challenge(factor_id)
                session = await self.mfa.verify(factor_id, challenge.id, code)
            except IdentityProviderError as exc:
                raise _mfa_error(operation, exc) from exc
            try:
                profile = await self.store.adopt(session, generation, reload=False)
            except IdentityProviderError as exc:
                raise _mfa_error(operation, exc) from exc
        if profile is None:
            logger.info("mfa_superseded", operation=operation)
            await self.store.discard_stale(session, reason="mfa_superseded")
            raise MFAError(
                "Your session changed during verification. Sign in again.",
                error_code="mfa_superseded",
            )
        return session

    async def confirm_enrollment(self, factor_id: str, code: str) -> Session:
        code = self._check_code(code)
        session = await self._challenge_and_verify(factor_id, code, "confirm_enrollment")
        logger.info("mfa_enrollment_confirmed", factor_id=factor_id)
        return session

    async def verify(self, code: str) -> str:
        """Satisfy the step-up requirement; returns the path to continue to."""
        code = self._check_code(code)
        factors = await self.list_factors()
        totp = next(
            (f for f in factors if f.factor_type == "totp" and f.verified), None
        )
        if totp is None:
            raise MFAError("No TOTP factor found.", error_code="mfa_factor_missing")
        await self._challenge_and_verify(totp.id, code, "verify")
        logger.info("mfa_step_up_verified", factor_id=totp.id)
        return HOME_PATH

    async def unenroll(self, factor_id: str) -> None:
        try:
            await self.mfa.unenroll(factor_id)
        except IdentityProviderError as exc:
            raise _mfa_error("unenroll", exc) from exc
        logger.info("mfa_factor_removed", factor_id=factor_id)


class GateAction(str, Enum):
    LOADING = "loading"
    REDIRECT = "redirect"
    RENDER = "render"


@dataclass(frozen=True)
class GateDecision:
    action: GateAction
    target: Optional[str] = None
    return_to: Optional[str] = None

    @classmethod
    def render(cls) -> "GateDecision":
        return cls(GateAction.RENDER)

    @classmethod
    def redirect(cls, target: str, return_to: Optional[str] = None) -> "GateDecision":
        return cls(GateAction.REDIRECT, target, return_to)


class StepUpGate:
    """Decides, per navigation, whether a route renders or where to redirect.

    Checks run in a fixed order and the first failing one wins: loading,
    unauthenticated, deactivated, step-up required, role access. Nothing is
    cached between navigations.
    """

    def __init__(self, store: SessionStore) -> None:
        self.store = store

    async def evaluate(self, path: str) -> GateDecision:
        path = normalize_path(path)
        if is_public(path):
            return GateDecision.render()
        state = self.store.snapshot()
        if self.store.loading:
            return GateDecision(GateAction.LOADING)
        if state.session is None or state.profile is None:
            return GateDecision.redirect(LOGIN_PATH, return_to=path)
        if not state.profile.is_active:
            return GateDecision.redirect(LOGIN_PATH)
        generation = self.store.generation
        try:
            levels = await self.store.provider.mfa.get_assurance_level()
        except IdentityProviderError as exc:
            levels = None
            logger.warning("assurance_level_unavailable", error=exc.message)
        if not self.store.is_current(generation):
            # The session changed while the level was fetched; decide again
            return await self.evaluate(path)
        if levels is None:
            # Unknown assurance is treated as insufficient
            return GateDecision.redirect(MFA_VERIFY_PATH)
        if levels.step_up_required:
            return GateDecision.redirect(MFA_VERIFY_PATH)
        if not has_access(state.profile.role, path):
            logger.info("route_denied", path=path, role=state.profile.role.value)
            return GateDecision.redirect(HOME_PATH)
        return GateDecision.render()
