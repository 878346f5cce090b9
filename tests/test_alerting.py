"""Tests for the SMTP alert channel and alert cooldown."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from sqlalchemy import select

from replywatch.models.alert_delivery import AlertDelivery
from replywatch.services.alerting import deferred_alerts, send_alert_email, send_deferred
from replywatch.services.anomalies import raise_anomaly


def _make_settings(**overrides) -> SimpleNamespace:
    """Create mock settings with SMTP defaults."""
    from tests.test_constants import TEST_SMTP_PASSWORD

    defaults = dict(
        alert_email_enabled=True,
        alert_smtp_host="smtp.example.com",
        alert_smtp_port=587,
        alert_smtp_user="alerts@example.com",
        alert_smtp_password=TEST_SMTP_PASSWORD,
        alert_smtp_from="replywatch@example.com",
        alert_email_to="oncall@example.com, ops@example.com",
    )
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


def _mock_server(mock_smtp_cls: MagicMock) -> MagicMock:
    mock_server = MagicMock()
    mock_smtp_cls.return_value.__enter__ = MagicMock(return_value=mock_server)
    mock_smtp_cls.return_value.__exit__ = MagicMock(return_value=False)
    return mock_server


# ── send_alert_email ─────────────────────────────────────────


@patch("replywatch.services.alerting.smtplib.SMTP")
def test_send_alert_success(mock_smtp_cls: MagicMock) -> None:
    from tests.test_constants import TEST_SMTP_PASSWORD

    mock_server = _mock_server(mock_smtp_cls)

    result = send_alert_email("[ReplyWatch] HIGH token_expired", "body", settings=_make_settings())

    assert result is True
    mock_smtp_cls.assert_called_once_with("smtp.example.com", 587)
    mock_server.starttls.assert_called_once()
    mock_server.login.assert_called_once_with("alerts@example.com", TEST_SMTP_PASSWORD)
    recipients = mock_server.sendmail.call_args[0][1]
    assert recipients == ["oncall@example.com", "ops@example.com"]


@patch("replywatch.services.alerting.smtplib.SMTP")
def test_send_alert_disabled(mock_smtp_cls: MagicMock) -> None:
    result = send_alert_email("s", "b", settings=_make_settings(alert_email_enabled=False))
    assert result is False
    mock_smtp_cls.assert_not_called()


def test_send_alert_no_recipient() -> None:
    assert send_alert_email("s", "b", settings=_make_settings(alert_email_to=" , ")) is False


def test_send_alert_smtp_not_configured() -> None:
    assert send_alert_email("s", "b", settings=_make_settings(alert_smtp_host="")) is False


@patch("replywatch.services.alerting.smtplib.SMTP")
def test_send_alert_connection_error(mock_smtp_cls: MagicMock) -> None:
    mock_smtp_cls.side_effect = OSError("Connection refused")
    assert send_alert_email("s", "b", settings=_make_settings()) is False


@patch("replywatch.services.alerting.smtplib.SMTP")
def test_send_alert_auth_failure(mock_smtp_cls: MagicMock) -> None:
    import smtplib as _smtplib

    mock_server = _mock_server(mock_smtp_cls)
    mock_server.login.side_effect = _smtplib.SMTPAuthenticationError(535, b"Bad credentials")
    assert send_alert_email("s", "b", settings=_make_settings()) is False


# ── anomaly alerts ───────────────────────────────────────────


def _alerts(db) -> list[AlertDelivery]:
    return list(db.scalars(select(AlertDelivery).order_by(AlertDelivery.id)).all())


def test_low_and_medium_anomalies_do_not_alert(db) -> None:
    raise_anomaly(db, "layer_timeout", "low", tenant_id=1)
    raise_anomaly(db, "quorum_failure", "medium", tenant_id=1)
    assert _alerts(db) == []


def test_high_anomaly_alert_is_recorded_even_when_email_disabled(db) -> None:
    anomaly = raise_anomaly(db, "reconciliation_failure", "high", tenant_id=1, details={"run_id": 4})
    [alert] = _alerts(db)
    assert alert.anomaly_id == anomaly.id
    assert alert.severity == "warning"
    assert alert.delivered is False
    assert alert.subject == "[ReplyWatch] HIGH reconciliation_failure"


def test_critical_anomaly_alerts_as_critical(db) -> None:
    raise_anomaly(db, "token_expired", "critical", tenant_id=1)
    assert _alerts(db)[0].severity == "critical"


def test_cooldown_is_per_tenant_and_alert_type(db) -> None:
    raise_anomaly(db, "token_expired", "high", tenant_id=1)
    raise_anomaly(db, "token_expired", "high", tenant_id=1)
    raise_anomaly(db, "token_expired", "high", tenant_id=2)
    raise_anomaly(db, "reconciliation_failure", "high", tenant_id=1)

    alerts = _alerts(db)
    assert [(a.tenant_id, a.alert_type) for a in alerts] == [
        (1, "token_expired"),
        (2, "token_expired"),
        (1, "reconciliation_failure"),
    ]


def test_delivered_flag_reflects_smtp_result(db, monkeypatch) -> None:
    monkeypatch.setenv("ALERT_EMAIL_ENABLED", "true")
    monkeypatch.setenv("ALERT_SMTP_HOST", "smtp.example.com")
    monkeypatch.setenv("ALERT_EMAIL_TO", "oncall@example.com")
    from replywatch.config import get_settings

    get_settings.cache_clear()
    with patch("replywatch.services.alerting.smtplib.SMTP") as mock_smtp_cls:
        mock_server = _mock_server(mock_smtp_cls)
        raise_anomaly(db, "token_expired", "high", tenant_id=1, details={"mailbox_address": "me@x.io"})

    assert _alerts(db)[0].delivered is True
    body = mock_server.sendmail.call_args[0][2]
    assert "mailbox_address: me@x.io" in body
    # No user configured: no login
    mock_server.login.assert_not_called()


# ── deferred delivery ────────────────────────────────────────


async def test_deferred_alerts_are_recorded_then_sent(db) -> None:
    with patch("replywatch.services.alerting.send_alert_email", return_value=True) as mock_send:
        with deferred_alerts() as outbox:
            raise_anomaly(db, "token_expired", "high", tenant_id=1)
            mock_send.assert_not_called()
        assert _alerts(db)[0].delivered is False
        assert len(outbox) == 1

        sent = await send_deferred(db, outbox)

    assert sent == 1
    assert outbox == []
    mock_send.assert_called_once()
    assert mock_send.call_args[0][0].startswith("[ReplyWatch]")
    assert _alerts(db)[0].delivered is True


async def test_deferred_alert_from_rolled_back_work_is_dropped(db) -> None:
    with patch("replywatch.services.alerting.send_alert_email", return_value=True) as mock_send:
        with deferred_alerts() as outbox:
            raise_anomaly(db, "token_expired", "high", tenant_id=1, commit=False)
        db.rollback()

        sent = await send_deferred(db, outbox)

    assert sent == 0
    mock_send.assert_not_called()
    assert _alerts(db) == []
