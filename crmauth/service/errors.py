from __future__ import annotations

from typing import Optional


class AuthError(Exception):
    """Base class for errors surfaced to the UI layer.

    Each subclass carries a stable ``error_code`` and default user-facing copy.
    The Auth Orchestrator converts every collaborator failure into one of these
    and hands it to the caller inside an ``AuthResult``:
    - invalid_credentials
    - locked_out
    - account_deactivated
    - network_error
    - inactivity_expired
    - mfa_error
    - validation_error
    - profile_update_failed
    """

    error_code: str = "auth_error"
    default_message: str = "Something went wrong. Please try again."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"code": self.error_code, "message": self.message, "detail": self.detail}


class CredentialError(AuthError):
    """Wrong email or password; never reveals which one."""
    error_code = "invalid_credentials"
    default_message = "Invalid email or password. Please try again."


class LockoutError(AuthError):
    """Too many failed attempts from this device."""
    error_code = "locked_out"

    def __init__(self, remaining_seconds: int, **kwargs) -> None:
        self.remaining_seconds = max(1, int(remaining_seconds))
        minutes, seconds = divmod(self.remaining_seconds, 60)
        wait = f"{minutes}m {seconds}s" if minutes else f"{seconds}s"
        super().__init__(
            f"Too many failed login attempts. Try again in {wait}.",
            detail={"remaining_seconds": self.remaining_seconds},
            **kwargs,
        )


class AccountDeactivatedError(AuthError):
    error_code = "account_deactivated"
    default_message = (
        "Your account has been deactivated. Contact your administrator."
    )


class NetworkError(AuthError):
    error_code = "network_error"
    default_message = (
        "Unable to reach the authentication service. Check your connection and try again."
    )


class InactivityExpiredError(AuthError):
    error_code = "inactivity_expired"
    default_message = "Session expired due to inactivity. Please log in again."


class MFAError(AuthError):
    error_code = "mfa_error"
    default_message = "Verification failed. Please try again."


class ValidationError(AuthError):
    error_code = "validation_error"


class ProfileUpdateError(AuthError):
    error_code = "profile_update_failed"
    default_message = "Could not update your profile. Please try again."


class IdentityProviderError(Exception):
    """Raised by identity/profile collaborators.

    ``transient`` marks transport failures (timeouts, connection errors, 5xx)
    as opposed to definite rejections from the provider.
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.transient = transient


class InvalidCredentials(IdentityProviderError):
    def __init__(self, message: str = "Invalid login credentials") -> None:
        super().__init__(message, code="invalid_credentials", status_code=400)


__all__ = [
    "AuthError",
    "CredentialError",
    "LockoutError",
    "AccountDeactivatedError",
    "NetworkError",
    "InactivityExpiredError",
    "MFAError",
    "ValidationError",
    "ProfileUpdateError",
    "IdentityProviderError",
    "InvalidCredentials",
]
