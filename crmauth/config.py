from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from crmauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the CRM auth/session core."""

    # Hosted identity backend (GoTrue auth API + PostgREST profiles table)
    identity_url: str = env_field("http://localhost:54321", "CRM_IDENTITY_URL")
    identity_anon_key: str | None = env_field(None, "CRM_IDENTITY_ANON_KEY")
    identity_project_ref: str = env_field("local", "CRM_IDENTITY_PROJECT_REF")
    identity_timeout_seconds: float = env_field(15.0, "CRM_IDENTITY_TIMEOUT")
    use_memory_identity: bool = env_field(
        False,
        "CRM_USE_MEMORY_IDENTITY",
        description="Use the in-process identity provider instead of the hosted backend",
    )
    app_base_url: str = env_field("http://localhost:5173", "CRM_APP_URL")

    # Inactivity
    inactivity_timeout_seconds: int = env_field(30 * 60, "CRM_INACTIVITY_TIMEOUT")
    inactivity_warning_seconds: int = env_field(5 * 60, "CRM_INACTIVITY_WARNING")

    # Login lockout (per device)
    lockout_max_attempts: int = env_field(5, "CRM_LOCKOUT_MAX_ATTEMPTS")
    lockout_base_seconds: int = env_field(5 * 60, "CRM_LOCKOUT_BASE_SECONDS")
    lockout_cap_seconds: int = env_field(5 * 60 * 60, "CRM_LOCKOUT_CAP_SECONDS")

    # Device storage
    lockout_storage_key: str = env_field("crm-login-lockout", "CRM_LOCKOUT_KEY")
    preferences_storage_key: str = env_field(
        "adwood-crm-storage", "CRM_PREFERENCES_KEY"
    )
    device_storage_path: str | None = env_field(
        None,
        "CRM_DEVICE_STORAGE_PATH",
        description="JSON file backing device storage; in-memory when unset",
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Share device storage and storage signals through Redis",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @property
    def auth_token_storage_key(self) -> str:
        return f"sb-{self.identity_project_ref}-auth-token"

    @property
    def password_reset_redirect(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/reset-password"

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "inactivity_timeout_seconds",
        "lockout_max_attempts",
        "lockout_base_seconds",
        "lockout_cap_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("identity_url", "app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _check_windows(self) -> "Settings":
        if not 0 <= self.inactivity_warning_seconds < self.inactivity_timeout_seconds:
            raise ValueError(
                "inactivity warning must fire before the inactivity timeout"
            )
        if self.lockout_cap_seconds < self.lockout_base_seconds:
            raise ValueError("lockout cap must not be below the base window")
        if not self.use_memory_identity and not self.identity_anon_key:
            logger.warning(
                "identity_anon_key_missing", identity_url=self.identity_url
            )
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
