from poolauth.config import Settings
from poolauth.logging import _redact_pii, mask_email, mask_url_password, sanitize_error_message
from poolauth.service.runtime import reset_runtime_for_tests


def test_mask_email_keeps_domain():
    assert mask_email("alice@example.com") == "a***@example.com"
    assert mask_email("alice") == "a***"


def test_redaction_drops_credentials_and_masks_addresses():
    event = _redact_pii(
        None,
        "warning",
        {
            "event": "authenticate_failed",
            "email": "alice@example.com",
            "password": "pw123!ABC",
            "email_verified": False,
            "detail": {"login_hint": "bob@example.com", "backup_code": "abcd-efgh", "pool_id": "p1"},
        },
    )
    assert event["event"] == "authenticate_failed"
    assert event["email"] == "a***@example.com"
    assert event["password"] == "[redacted]"
    assert event["email_verified"] is False
    assert event["detail"] == {
        "login_hint": "b***@example.com",
        "backup_code": "[redacted]",
        "pool_id": "p1",
    }


def test_sanitize_error_message_strips_connection_details():
    message = sanitize_error_message(
        'connection to server at "db" failed: postgresql://app:hunter2@db:5432/ident password=hunter2'
    )
    assert "hunter2" not in message
    assert "[redacted]" in message

    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 2000)) == 500


def test_mask_url_password():
    assert mask_url_password("redis://:pw@cache:6379/0") == "redis://:***@cache:6379/0"
    assert (
        mask_url_password("postgresql://app:pw@db:5432/ident")
        == "postgresql://app:***@db:5432/ident"
    )
    assert mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
    assert mask_url_password(None) is None


def test_log_output_settings_read_from_env(monkeypatch):
    monkeypatch.setenv("LOG_JSON", "false")
    monkeypatch.setenv("LOG_DEV_MODE", "yes")
    settings = Settings.from_env()
    assert settings.log_json is False
    assert settings.log_dev_mode is True


def test_runtime_applies_log_settings(monkeypatch):
    calls = []
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("LOG_JSON", "false")
    monkeypatch.delenv("LOG_DEV_MODE", raising=False)
    monkeypatch.setattr(
        "poolauth.service.runtime.configure_logging", lambda **kwargs: calls.append(kwargs)
    )

    reset_runtime_for_tests()

    assert calls == [{"log_level": "DEBUG", "json_output": False, "development_mode": False}]
