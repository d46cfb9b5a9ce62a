"""Route authorization.

The page table below is the single source for both enforcement (the step-up
gate) and navigation links. It is a UX guard only: the data service must
apply the same rules server-side.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, List, Optional, Union

from crmauth.storage.models import Role, UserProfile

ALL_ROLES: FrozenSet[Role] = frozenset(Role)

PAGE_ROLES: Dict[str, FrozenSet[Role]] = {
    "/": ALL_ROLES,
    "/contacts": ALL_ROLES,
    "/deals": frozenset({Role.ADMIN, Role.MANAGER, Role.SALES}),
    "/calendar": ALL_ROLES,
    "/communications": ALL_ROLES,
    "/campaigns": frozenset({Role.ADMIN, Role.MANAGER, Role.SALES}),
    "/payments": frozenset({Role.ADMIN, Role.MANAGER}),
    "/reports": frozenset({Role.ADMIN, Role.MANAGER}),
    "/staff": frozenset({Role.ADMIN}),
    "/settings": ALL_ROLES,
}

PUBLIC_PATHS: FrozenSet[str] = frozenset({"/login", "/reset-password", "/mfa-verify"})

HOME_PATH = "/"
LOGIN_PATH = "/login"
MFA_VERIFY_PATH = "/mfa-verify"


def _coerce_role(role: Union[Role, str, None]) -> Optional[Role]:
    if isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        return None


def normalize_path(path: str) -> str:
    path = (path or "").split("?", 1)[0].split("#", 1)[0]
    if len(path) > 1:
        path = path.rstrip("/")
    return path or HOME_PATH


def is_public(path: str) -> bool:
    return normalize_path(path) in PUBLIC_PATHS


def has_access(role: Union[Role, str, None], path: str) -> bool:
    """Whether ``role`` may open ``path``. Unknown roles and paths are denied."""
    resolved = _coerce_role(role)
    if resolved is None:
        return False
    allowed = PAGE_ROLES.get(normalize_path(path))
    return allowed is not None and resolved in allowed


def allowed_paths(role: Union[Role, str, None]) -> List[str]:
    """Paths to show in navigation for ``role``, in table order."""
    return [path for path in PAGE_ROLES if has_access(role, path)]


def has_role(profile: Optional[UserProfile], roles: Iterable[Union[Role, str]]) -> bool:
    if profile is None or not profile.is_active:
        return False
    wanted = {_coerce_role(role) for role in roles}
    return profile.role in wanted


def is_admin(profile: Optional[UserProfile]) -> bool:
    return has_role(profile, [Role.ADMIN])


def is_manager(profile: Optional[UserProfile]) -> bool:
    return has_role(profile, [Role.MANAGER])


def is_admin_or_manager(profile: Optional[UserProfile]) -> bool:
    return has_role(profile, [Role.ADMIN, Role.MANAGER])
