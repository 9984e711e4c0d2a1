"""Test suite for configuration and logging setup."""

from uuid import uuid4

import pytest
import structlog
from pydantic import ValidationError
from structlog.testing import capture_logs

from quickroom_coordination.config import Settings
from quickroom_coordination.logging_config import configure_logging, log_security_event

ENV_NAMES = (
    "QUICKROOM_ENVIRONMENT",
    "QUICKROOM_LOG_LEVEL",
    "QUICKROOM_TYPING_TIMEOUT",
    "QUICKROOM_MESSAGES_LINK",
    "QUICKROOM_APPOINTMENTS_LINK",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_settings_defaults(clean_env):
    settings = Settings()

    assert settings.environment == "development"
    assert settings.typing_timeout == 3.0
    assert settings.messages_link == "/messages"
    assert not settings.is_production


def test_settings_from_environment(clean_env):
    clean_env.setenv("QUICKROOM_ENVIRONMENT", "production")
    clean_env.setenv("QUICKROOM_LOG_LEVEL", "warning")
    clean_env.setenv("QUICKROOM_TYPING_TIMEOUT", "1.5")
    clean_env.setenv("QUICKROOM_APPOINTMENTS_LINK", "/viewings")

    settings = Settings()

    assert settings.is_production
    assert settings.log_level == "WARNING"
    assert settings.typing_timeout == 1.5
    assert settings.appointments_link == "/viewings"


def test_settings_read_dotenv_file(clean_env, tmp_path):
    (tmp_path / ".env").write_text("QUICKROOM_TYPING_TIMEOUT=0.5\n")

    assert Settings().typing_timeout == 0.5


def test_invalid_typing_timeout_is_a_validation_error(clean_env):
    clean_env.setenv("QUICKROOM_TYPING_TIMEOUT", "soon")

    with pytest.raises(ValidationError):
        Settings()


def test_configure_logging_accepts_both_environments():
    try:
        configure_logging(Settings(environment="production", log_level="DEBUG"))
        configure_logging(Settings(environment="development", log_level="not-a-level"))
    finally:
        structlog.reset_defaults()


def test_security_event_serializes_ids():
    user, appointment = uuid4(), uuid4()

    with capture_logs() as logs:
        log_security_event("appointment_access_denied", user, appointment_id=appointment)

    entry = logs[0]
    assert entry["event"] == "security_audit"
    assert entry["log_level"] == "warning"
    assert entry["audit_event"] == "appointment_access_denied"
    assert entry["user_id"] == str(user)
    assert entry["appointment_id"] == str(appointment)
    assert "timestamp" in entry
