from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    SALES = "sales"
    SUPPORT = "support"


class AssuranceLevel(str, Enum):
    AAL1 = "aal1"
    AAL2 = "aal2"


class AuthEvent(str, Enum):
    """Events pushed by the identity provider to its subscribers."""

    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    MFA_CHALLENGE_VERIFIED = "MFA_CHALLENGE_VERIFIED"


class AuthStatus(str, Enum):
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


class FactorStatus(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"


@dataclass
class Session:
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    assurance_level: AssuranceLevel = AssuranceLevel.AAL1
    email: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or _utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": int(self.expires_at.timestamp()),
            "aal": self.assurance_level.value,
            "email": self.email,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            user_id=data["user_id"],
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=_parse_ts(data.get("expires_at")) or _utcnow(),
            assurance_level=AssuranceLevel(data.get("aal") or AssuranceLevel.AAL1.value),
            email=data.get("email"),
        )


@dataclass
class UserProfile:
    id: str
    email: str
    name: str
    role: Role
    is_active: bool = True
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    created_by: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "UserProfile":
        """Build a profile from a ``profiles`` row.

        Unknown roles raise ``ValueError``; the caller treats such a row as
        unusable rather than guessing a role.
        """
        return cls(
            id=str(record["id"]),
            email=record.get("email") or "",
            name=record.get("name") or "",
            role=Role(record["role"]),
            is_active=bool(record.get("is_active", False)),
            phone=record.get("phone"),
            avatar_url=record.get("avatar_url"),
            created_at=_parse_ts(record.get("created_at")) or _utcnow(),
            updated_at=_parse_ts(record.get("updated_at")) or _utcnow(),
            created_by=record.get("created_by"),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role.value,
            "is_active": self.is_active,
            "phone": self.phone,
            "avatar_url": self.avatar_url,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "created_by": self.created_by,
        }


@dataclass
class LockoutState:
    attempts: int = 0
    locked_until: float = 0.0  # epoch seconds, 0 when not locked

    def to_dict(self) -> Dict[str, Any]:
        return {"attempts": self.attempts, "lockedUntil": self.locked_until}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LockoutState":
        attempts = int(data.get("attempts") or 0)
        locked_until = float(data.get("lockedUntil") or 0.0)
        return cls(attempts=max(0, attempts), locked_until=max(0.0, locked_until))


@dataclass
class MFAFactor:
    id: str
    status: FactorStatus = FactorStatus.UNVERIFIED
    factor_type: str = "totp"
    friendly_name: Optional[str] = None
    # Only populated in the enrollment response
    secret: Optional[str] = None
    uri: Optional[str] = None
    qr_code: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def verified(self) -> bool:
        return self.status == FactorStatus.VERIFIED


@dataclass
class MFAChallenge:
    id: str
    factor_id: str
    expires_at: datetime


@dataclass
class AssuranceLevels:
    current: AssuranceLevel
    next: AssuranceLevel

    @property
    def step_up_required(self) -> bool:
        return self.current == AssuranceLevel.AAL1 and self.next == AssuranceLevel.AAL2


@dataclass
class StorageSignal:
    """A change to one device-storage key, as observed by another tab."""

    key: str
    old_value: Optional[str]
    new_value: Optional[str]
    origin: Optional[str] = None


@dataclass
class UIPreferences:
    sidebar_open: bool = True
    dark_mode: bool = False
