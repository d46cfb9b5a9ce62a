import pytest
from pydantic import ValidationError

from crmauth.config import Settings, get_settings, reset_settings_cache
from crmauth.logging import _redact_pii, get_flow_id, sanitize_error_message, set_flow_id


def test_defaults():
    settings = Settings()
    assert settings.inactivity_timeout_seconds == 1800
    assert settings.inactivity_warning_seconds == 300
    assert settings.lockout_max_attempts == 5
    assert settings.lockout_base_seconds == 300
    assert settings.lockout_cap_seconds == 18000
    assert settings.lockout_storage_key == "crm-login-lockout"
    assert settings.preferences_storage_key == "adwood-crm-storage"


def test_derived_keys_and_urls():
    settings = Settings(identity_project_ref="abc123", app_base_url="https://crm.example.com/")
    assert settings.auth_token_storage_key == "sb-abc123-auth-token"
    assert settings.password_reset_redirect == "https://crm.example.com/reset-password"


def test_from_env_prefers_environment_over_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text(
        "CRM_INACTIVITY_TIMEOUT=900\nCRM_LOCKOUT_MAX_ATTEMPTS=3\n"
    )
    monkeypatch.setenv("CRM_LOCKOUT_MAX_ATTEMPTS", "7")
    settings = Settings.from_env()
    assert settings.inactivity_timeout_seconds == 900
    assert settings.lockout_max_attempts == 7


def test_settings_cache(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    reset_settings_cache()
    assert get_settings() is not first


@pytest.mark.parametrize(
    "overrides",
    [
        {"inactivity_timeout_seconds": 0},
        {"inactivity_timeout_seconds": 300, "inactivity_warning_seconds": 300},
        {"lockout_base_seconds": 600, "lockout_cap_seconds": 300},
        {"lockout_max_attempts": -1},
    ],
)
def test_invalid_settings_rejected(overrides):
    with pytest.raises(ValidationError):
        Settings(**overrides)


def test_sanitize_strips_sensitive_fragments():
    message = "connect failed: password=hunter2 at /var/lib/app/db Bearer abc.def.ghi"
    cleaned = sanitize_error_message(message)
    assert "hunter2" not in cleaned
    assert "/var/lib" not in cleaned
    assert "abc.def.ghi" not in cleaned


def test_sanitize_keeps_ordinary_messages():
    assert sanitize_error_message("Email not confirmed") == "Email not confirmed"
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 1000)) == 300


def test_redact_pii_masks_contact_and_credentials():
    event = _redact_pii(
        None,
        "info",
        {"event": "login", "email": "alice@example.com", "access_token": "abcdefgh", "error_code": "locked_out"},
    )
    assert event["email"] == "al***om"
    assert event["access_token"] == "ab***gh"
    assert event["error_code"] == "locked_out"


def test_flow_id_roundtrip():
    fid = set_flow_id("flow-123")
    assert fid == "flow-123"
    assert get_flow_id() == "flow-123"
    assert len(set_flow_id()) == 12
