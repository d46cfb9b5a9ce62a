from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
import threading
import time
import uuid
from collections import Counter
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError
from cryptography.fernet import Fernet, InvalidToken

from crmauth.logging import get_logger
from crmauth.service.errors import IdentityProviderError, InvalidCredentials
from crmauth.service.identity import AuthEventEmitter
from crmauth.storage.device import DeviceStorage, read_json, write_json
from crmauth.storage.models import (
    AssuranceLevel,
    AssuranceLevels,
    AuthEvent,
    FactorStatus,
    MFAChallenge,
    MFAFactor,
    Role,
    Session,
    UserProfile,
)

logger = get_logger(__name__)

# Profile columns a signed-in user may never change on their own record
_SERVER_PROTECTED_FIELDS = {"id", "email", "role", "is_active", "created_at", "created_by"}


def generate_totp(secret: str, timestamp: float, *, interval: int = 30, digits: int = 6) -> str:
    """RFC 6238 TOTP code for a base32 secret."""
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    key = base64.b32decode(padded, True)
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


class MemoryIdentityBackend:
    """In-process stand-in for the hosted auth service and ``profiles`` table.

    One backend is shared by every tab; each tab talks to it through its own
    ``MemoryIdentityProvider``. ``calls`` counts operations per name and
    ``offline``/``fail_next`` simulate transport failures.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        secret_key: Optional[str] = None,
        session_ttl_seconds: int = 3600,
        issuer: str = "AdwoodCRM",
    ) -> None:
        self.clock = clock
        self.session_ttl_seconds = session_ttl_seconds
        self.issuer = issuer
        self._lock = threading.RLock()
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._cipher = Fernet(
            base64.urlsafe_b64encode(hashlib.sha256(secret_key.encode()).digest())
            if secret_key
            else Fernet.generate_key()
        )
        self.credentials: Dict[str, Tuple[str, str]] = {}  # user_id -> (email, hash)
        self.profiles: Dict[str, UserProfile] = {}
        self.access_tokens: Dict[str, Tuple[str, AssuranceLevel]] = {}
        self.refresh_tokens: Dict[str, str] = {}
        self.factors: Dict[str, Tuple[str, MFAFactor]] = {}  # factor_id -> (user_id, factor)
        self.challenges: Dict[str, Tuple[str, float]] = {}  # challenge_id -> (factor_id, exp)
        self.reset_emails: List[Tuple[str, str]] = []
        self.calls: Counter = Counter()
        self.offline = False
        self._failures: Dict[str, IdentityProviderError] = {}

    # failure injection
    def fail_next(self, operation: str, error: Optional[IdentityProviderError] = None) -> None:
        self._failures[operation] = error or IdentityProviderError(
            f"{operation} failed", code="network_error", transient=True
        )

    def record(self, operation: str) -> None:
        with self._lock:
            self.calls[operation] += 1
            failure = self._failures.pop(operation, None)
        if failure is not None:
            raise failure
        if self.offline:
            raise IdentityProviderError(
                "Unable to reach the authentication service",
                code="network_error",
                transient=True,
            )

    # administration (server side, not reachable from a tab)
    def create_user(
        self,
        email: str,
        password: str,
        *,
        name: str = "",
        role: Role = Role.SALES,
        is_active: bool = True,
        phone: Optional[str] = None,
    ) -> UserProfile:
        normalized = email.strip().lower()
        with self._lock:
            if any(stored == normalized for stored, _ in self.credentials.values()):
                raise ValueError("email already exists")
            user_id = str(uuid.uuid4())
            self.credentials[user_id] = (normalized, self._pwd_hasher.hash(password))
            profile = UserProfile(
                id=user_id,
                email=normalized,
                name=name or normalized.split("@")[0],
                role=Role(role),
                is_active=is_active,
                phone=phone,
            )
            self.profiles[user_id] = profile
            return profile

    def set_active(self, user_id: str, active: bool) -> None:
        with self._lock:
            self.profiles[user_id].is_active = active

    def revoke_user_tokens(self, user_id: str) -> None:
        with self._lock:
            for token, owner in list(self.refresh_tokens.items()):
                if owner == user_id:
                    self.refresh_tokens.pop(token, None)
            for token, (owner, _) in list(self.access_tokens.items()):
                if owner == user_id:
                    self.access_tokens.pop(token, None)

    # sessions
    def _issue(self, user_id: str, aal: AssuranceLevel) -> Session:
        access = secrets.token_urlsafe(24)
        refresh = secrets.token_urlsafe(24)
        with self._lock:
            self.access_tokens[access] = (user_id, aal)
            self.refresh_tokens[refresh] = user_id
            email = self.credentials[user_id][0]
        return Session(
            user_id=user_id,
            access_token=access,
            refresh_token=refresh,
            expires_at=datetime.fromtimestamp(
                self.clock() + self.session_ttl_seconds, tz=timezone.utc
            ),
            assurance_level=aal,
            email=email,
        )

    def user_for_token(self, access_token: Optional[str]) -> Tuple[str, AssuranceLevel]:
        with self._lock:
            entry = self.access_tokens.get(access_token or "")
        if not entry:
            raise IdentityProviderError(
                "Invalid or expired session", code="session_missing", status_code=401
            )
        return entry

    def authenticate(self, email: str, password: str) -> Session:
        with self._lock:
            match = next(
                (uid for uid, (stored, _) in self.credentials.items() if stored == email),
                None,
            )
            stored_hash = self.credentials[match][1] if match else None
        if not match or not stored_hash:
            raise InvalidCredentials()
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            raise InvalidCredentials()
        return self._issue(match, AssuranceLevel.AAL1)

    def refresh(self, refresh_token: str, aal: AssuranceLevel) -> Session:
        with self._lock:
            user_id = self.refresh_tokens.pop(refresh_token, None)
        if not user_id:
            raise IdentityProviderError(
                "Invalid Refresh Token: Refresh Token Not Found",
                code="refresh_token_not_found",
                status_code=400,
            )
        return self._issue(user_id, aal)

    def revoke(self, access_token: str) -> None:
        with self._lock:
            entry = self.access_tokens.pop(access_token, None)
            if entry:
                for token, owner in list(self.refresh_tokens.items()):
                    if owner == entry[0]:
                        self.refresh_tokens.pop(token, None)

    def set_password(self, user_id: str, new_password: str) -> None:
        with self._lock:
            email, _ = self.credentials[user_id]
            self.credentials[user_id] = (email, self._pwd_hasher.hash(new_password))

    def verify_password(self, email: str, password: str) -> bool:
        try:
            self.authenticate(email, password)
        except InvalidCredentials:
            return False
        return True

    # factors
    def factor_secret(self, factor_id: str) -> str:
        with self._lock:
            _, factor = self.factors[factor_id]
        try:
            return self._cipher.decrypt(factor.secret.encode()).decode()
        except InvalidToken as exc:
            raise IdentityProviderError("Factor secret unreadable", code="mfa_error") from exc

    def enroll(self, user_id: str, friendly_name: Optional[str]) -> MFAFactor:
        secret = base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")
        factor_id = str(uuid.uuid4())
        with self._lock:
            email = self.credentials[user_id][0]
            stored = MFAFactor(
                id=factor_id,
                friendly_name=friendly_name,
                secret=self._cipher.encrypt(secret.encode()).decode(),
            )
            self.factors[factor_id] = (user_id, stored)
        uri = f"otpauth://totp/{self.issuer}:{email}?secret={secret}&issuer={self.issuer}"
        return replace(stored, secret=secret, uri=uri)

    def list_factors(self, user_id: str) -> List[MFAFactor]:
        with self._lock:
            owned = [f for owner, f in self.factors.values() if owner == user_id]
        # Secrets never leave the server after enrollment
        return [replace(f, secret=None, uri=None, qr_code=None) for f in owned]

    def _owned_factor(self, user_id: str, factor_id: str) -> MFAFactor:
        with self._lock:
            entry = self.factors.get(factor_id)
        if not entry or entry[0] != user_id:
            raise IdentityProviderError("Factor not found", code="mfa_factor_not_found", status_code=404)
        return entry[1]

    def challenge(self, user_id: str, factor_id: str) -> MFAChallenge:
        self._owned_factor(user_id, factor_id)
        challenge_id = str(uuid.uuid4())
        expires = self.clock() + 300
        with self._lock:
            self.challenges[challenge_id] = (factor_id, expires)
        return MFAChallenge(
            id=challenge_id,
            factor_id=factor_id,
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc),
        )

    def verify(self, user_id: str, factor_id: str, challenge_id: str, code: str) -> Session:
        factor = self._owned_factor(user_id, factor_id)
        with self._lock:
            entry = self.challenges.pop(challenge_id, None)
        if not entry or entry[0] != factor_id:
            raise IdentityProviderError("Challenge not found", code="mfa_challenge_mismatch", status_code=422)
        if entry[1] <= self.clock():
            raise IdentityProviderError("Challenge expired", code="mfa_challenge_expired", status_code=422)
        secret = self.factor_secret(factor_id)
        now = self.clock()
        valid = any(
            hmac.compare_digest(generate_totp(secret, now + step * 30), code)
            for step in (-1, 0, 1)
        )
        if not valid:
            raise IdentityProviderError("Invalid TOTP code entered", code="mfa_verification_failed", status_code=422)
        with self._lock:
            factor.status = FactorStatus.VERIFIED
        return self._issue(user_id, AssuranceLevel.AAL2)

    def unenroll(self, user_id: str, factor_id: str) -> None:
        self._owned_factor(user_id, factor_id)
        with self._lock:
            self.factors.pop(factor_id, None)


class MemoryIdentityProvider(AuthEventEmitter):
    """One tab's client onto a ``MemoryIdentityBackend``."""

    def __init__(
        self, backend: MemoryIdentityBackend, storage: DeviceStorage, storage_key: str
    ) -> None:
        super().__init__()
        self.backend = backend
        self.storage = storage
        self.storage_key = storage_key
        self.mfa = MemoryMFA(self)

    def load_session(self) -> Optional[Session]:
        data = read_json(self.storage, self.storage_key)
        if not isinstance(data, dict):
            return None
        try:
            return Session.from_dict(data)
        except (KeyError, ValueError, TypeError):
            return None

    def save_session(self, session: Session) -> None:
        write_json(self.storage, self.storage_key, session.to_dict())

    def require_session(self) -> Session:
        session = self.load_session()
        if not session:
            raise IdentityProviderError("Not signed in", code="session_missing", status_code=401)
        return session

    async def get_persisted_session(self) -> Optional[Session]:
        return self.load_session()

    async def refresh_session(self) -> Session:
        self.backend.record("refresh_session")
        current = self.require_session()
        session = self.backend.refresh(current.refresh_token, current.assurance_level)
        self.save_session(session)
        await self._emit(AuthEvent.TOKEN_REFRESHED, session)
        return session

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        self.backend.record("sign_in_with_password")
        session = self.backend.authenticate(email, password)
        self.save_session(session)
        await self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        self.backend.record("sign_out")
        current = self.load_session()
        if current is None:
            return
        self.backend.revoke(current.access_token)
        self.storage.remove_item(self.storage_key)
        await self._emit(AuthEvent.SIGNED_OUT, None)

    async def reset_password_for_email(self, email: str, redirect_to: str) -> None:
        self.backend.record("reset_password_for_email")
        # Unknown addresses are accepted silently, like the hosted service
        self.backend.reset_emails.append((email, redirect_to))

    async def update_user_password(self, new_password: str) -> None:
        self.backend.record("update_user_password")
        user_id, _ = self.backend.user_for_token(self.require_session().access_token)
        self.backend.set_password(user_id, new_password)
        await self._emit(AuthEvent.USER_UPDATED, self.load_session())


class MemoryMFA:
    def __init__(self, provider: MemoryIdentityProvider) -> None:
        self.provider = provider
        self.backend = provider.backend

    def _user_id(self) -> str:
        user_id, _ = self.backend.user_for_token(self.provider.require_session().access_token)
        return user_id

    async def list_factors(self) -> List[MFAFactor]:
        self.backend.record("mfa.list_factors")
        return self.backend.list_factors(self._user_id())

    async def enroll(self, friendly_name: Optional[str] = None) -> MFAFactor:
        self.backend.record("mfa.enroll")
        return self.backend.enroll(self._user_id(), friendly_name)

    async def challenge(self, factor_id: str) -> MFAChallenge:
        self.backend.record("mfa.challenge")
        return self.backend.challenge(self._user_id(), factor_id)

    async def verify(self, factor_id: str, challenge_id: str, code: str) -> Session:
        self.backend.record("mfa.verify")
        session = self.backend.verify(self._user_id(), factor_id, challenge_id, code)
        self.provider.save_session(session)
        await self.provider._emit(AuthEvent.MFA_CHALLENGE_VERIFIED, session)
        return session

    async def unenroll(self, factor_id: str) -> None:
        self.backend.record("mfa.unenroll")
        self.backend.unenroll(self._user_id(), factor_id)

    async def get_assurance_level(self) -> AssuranceLevels:
        self.backend.record("mfa.get_assurance_level")
        session = self.provider.load_session()
        if session is None:
            return AssuranceLevels(AssuranceLevel.AAL1, AssuranceLevel.AAL1)
        user_id, current = self.backend.user_for_token(session.access_token)
        verified = any(f.verified for f in self.backend.list_factors(user_id))
        return AssuranceLevels(
            current, AssuranceLevel.AAL2 if verified else AssuranceLevel.AAL1
        )


class MemoryProfileStore:
    """``profiles`` table held by a ``MemoryIdentityBackend``.

    Mirrors the hosted row-level policy: a user updating their own row may not
    touch role, active flag or audit columns.
    """

    def __init__(self, backend: MemoryIdentityBackend) -> None:
        self.backend = backend
        self.updates: List[Dict[str, Any]] = []

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        self.backend.record("get_profile")
        profile = self.backend.profiles.get(user_id)
        return replace(profile) if profile else None

    async def update_profile(self, user_id: str, fields: Dict[str, Any]) -> UserProfile:
        self.backend.record("update_profile")
        self.updates.append(dict(fields))
        blocked = _SERVER_PROTECTED_FIELDS & set(fields)
        if blocked:
            raise IdentityProviderError(
                "new row violates row-level security policy for table \"profiles\"",
                code="42501",
                status_code=403,
            )
        profile = self.backend.profiles.get(user_id)
        if not profile:
            raise IdentityProviderError("Profile not found", code="PGRST116", status_code=406)
        for key in ("name", "phone", "avatar_url"):
            if key in fields:
                setattr(profile, key, fields[key])
        if "updated_at" in fields:
            profile.updated_at = datetime.fromisoformat(fields["updated_at"])
        return replace(profile)
