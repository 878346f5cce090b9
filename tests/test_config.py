"""
Configuration tests.
"""

import pytest

from replywatch.config import Settings, get_settings


def test_get_settings_returns_settings() -> None:
    """get_settings returns a cached Settings instance."""
    settings = get_settings()
    assert isinstance(settings, Settings)
    assert get_settings() is settings


def test_settings_defaults() -> None:
    settings = Settings()
    assert settings.app_name == "ReplyWatch"
    assert settings.job_max_attempts == 5
    assert settings.retry_base_delay_seconds == 60
    assert settings.retry_max_delay_seconds == 3600
    assert settings.quorum_min_healthy_layers is None
    assert settings.quorum_fraction == 0.5
    assert settings.reconciliation_grace_minutes == 30
    assert settings.reconciliation_window_hours == 168
    assert settings.mailbox_max_jobs_per_minute == 6


def test_database_url_from_env_uses_psycopg3(monkeypatch: pytest.MonkeyPatch) -> None:
    """Plain postgresql:// URLs are upgraded to the psycopg3 driver."""
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db:5432/replywatch")
    assert Settings().database_url == "postgresql+psycopg://u:p@db:5432/replywatch"


def test_tuning_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("JOB_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("QUORUM_MIN_HEALTHY_LAYERS", "2")
    monkeypatch.setenv("LAYER_TIMEOUT_SECONDS", "7.5")
    monkeypatch.setenv("MAILBOX_MAX_JOBS_PER_MINUTE", "0")
    settings = Settings()
    assert settings.job_max_attempts == 3
    assert settings.quorum_min_healthy_layers == 2
    assert settings.layer_timeout_seconds == 7.5
    assert settings.mailbox_max_jobs_per_minute == 0


@pytest.mark.parametrize("raw, expected", [("1", True), ("yes", True), ("TRUE", True), ("off", False)])
def test_alert_email_flag(monkeypatch: pytest.MonkeyPatch, raw: str, expected: bool) -> None:
    monkeypatch.setenv("ALERT_EMAIL_ENABLED", raw)
    assert Settings().alert_email_enabled is expected


def test_blank_min_healthy_falls_back_to_fraction(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUORUM_MIN_HEALTHY_LAYERS", "  ")
    assert Settings().quorum_min_healthy_layers is None
