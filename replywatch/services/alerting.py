"""SMTP alert channel for high-severity anomalies and manual-review dead letters.

Inside ``deferred_alerts()`` deliveries are only recorded; the caller sends
them afterwards with ``send_deferred``, which runs the blocking SMTP exchange
in a worker thread. The async worker path uses this so smtplib never runs on
the event loop. Outside it (scripts, request handlers) alerts send inline.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import timedelta
from email.mime.text import MIMEText

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from replywatch.config import get_settings
from replywatch.db.types import utcnow
from replywatch.models.alert_delivery import AlertDelivery
from replywatch.models.anomaly import SEVERITY_CRITICAL, Anomaly
from replywatch.models.dead_letter import DeadLetterEntry

logger = logging.getLogger(__name__)

ALERT_SEVERITY_WARNING = "warning"
ALERT_SEVERITY_CRITICAL = "critical"


@dataclass(frozen=True)
class PendingAlert:
    delivery_id: int
    subject: str
    body: str


_outbox: ContextVar[list[PendingAlert] | None] = ContextVar("alert_outbox", default=None)


@contextmanager
def deferred_alerts() -> Iterator[list[PendingAlert]]:
    """Collect alerts raised in this context instead of sending them."""
    outbox: list[PendingAlert] = []
    token = _outbox.set(outbox)
    try:
        yield outbox
    finally:
        _outbox.reset(token)


async def send_deferred(db: Session, outbox: list[PendingAlert]) -> int:
    """Send collected alerts off the event loop and mark the delivered ones. Returns sent count."""
    sent = 0
    for alert in outbox:
        if db.get(AlertDelivery, alert.delivery_id) is None:
            # Recorded in a transaction that was rolled back
            continue
        delivered = await asyncio.to_thread(send_alert_email, alert.subject, alert.body)
        if delivered:
            db.execute(
                update(AlertDelivery)
                .where(AlertDelivery.id == alert.delivery_id)
                .values(delivered=True)
            )
            sent += 1
    db.commit()
    outbox.clear()
    return sent


def _in_cooldown(db: Session, tenant_id: int | None, alert_type: str, settings) -> bool:
    cutoff = utcnow() - timedelta(minutes=settings.alert_cooldown_minutes)
    stmt = select(AlertDelivery.id).where(
        AlertDelivery.alert_type == alert_type,
        AlertDelivery.sent_at >= cutoff,
    )
    if tenant_id is None:
        stmt = stmt.where(AlertDelivery.tenant_id.is_(None))
    else:
        stmt = stmt.where(AlertDelivery.tenant_id == tenant_id)
    return db.scalar(stmt.limit(1)) is not None


def send_alert_email(subject: str, body: str, settings=None) -> bool:
    """Send one plain-text alert. Returns True on success, False on any failure."""
    if settings is None:
        settings = get_settings()

    if not settings.alert_email_enabled:
        logger.info("alert_send_skipped: alert email disabled subject=%s", subject)
        return False
    recipients = [r.strip() for r in settings.alert_email_to.split(",") if r.strip()]
    if not recipients:
        logger.warning("alert_send_skipped: no recipient configured")
        return False
    if not settings.alert_smtp_host:
        logger.warning("alert_send_skipped: SMTP host not configured")
        return False

    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = settings.alert_smtp_from
    msg["To"] = ", ".join(recipients)

    try:
        with smtplib.SMTP(settings.alert_smtp_host, settings.alert_smtp_port) as server:
            server.starttls()
            if settings.alert_smtp_user:
                server.login(settings.alert_smtp_user, settings.alert_smtp_password)
            server.sendmail(msg["From"], recipients, msg.as_string())
        logger.info("alert_sent: subject=%s recipients=%d", subject, len(recipients))
        return True
    except smtplib.SMTPAuthenticationError:
        logger.error("alert_auth_failed: could not authenticate with SMTP server")
        return False
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("alert_send_failed: %s", exc)
        return False


def _deliver(
    db: Session,
    *,
    tenant_id: int | None,
    alert_type: str,
    severity: str,
    subject: str,
    body: str,
    anomaly_id: int | None = None,
    dead_letter_id: int | None = None,
) -> AlertDelivery | None:
    settings = get_settings()
    if _in_cooldown(db, tenant_id, alert_type, settings):
        logger.info(
            "Alert suppressed by cooldown: tenant_id=%s alert_type=%s", tenant_id, alert_type
        )
        return None

    outbox = _outbox.get()
    delivered = False if outbox is not None else send_alert_email(subject, body, settings)
    record = AlertDelivery(
        tenant_id=tenant_id,
        alert_type=alert_type,
        severity=severity,
        subject=subject[:255],
        anomaly_id=anomaly_id,
        dead_letter_id=dead_letter_id,
        delivered=delivered,
    )
    db.add(record)
    db.flush()
    if outbox is not None:
        outbox.append(PendingAlert(record.id, subject, body))
    return record


def alert_for_anomaly(db: Session, anomaly: Anomaly) -> AlertDelivery | None:
    """Push a high/critical anomaly to the alert channel. Never raises on delivery failure."""
    severity = (
        ALERT_SEVERITY_CRITICAL if anomaly.severity == SEVERITY_CRITICAL else ALERT_SEVERITY_WARNING
    )
    subject = f"[ReplyWatch] {anomaly.severity.upper()} {anomaly.anomaly_type}"
    lines = [
        f"Anomaly: {anomaly.anomaly_type}",
        f"Severity: {anomaly.severity}",
        f"Tenant: {anomaly.tenant_id}",
        f"Provider: {anomaly.provider or '-'}",
        f"Outbound message: {anomaly.outbound_message_id or '-'}",
        f"Job: {anomaly.job_id or '-'}",
        "",
    ]
    for key, value in sorted((anomaly.details or {}).items()):
        lines.append(f"  {key}: {value}")
    return _deliver(
        db,
        tenant_id=anomaly.tenant_id,
        alert_type=anomaly.anomaly_type,
        severity=severity,
        subject=subject,
        body="\n".join(lines),
        anomaly_id=anomaly.id,
    )


def alert_for_dead_letter(db: Session, entry: DeadLetterEntry) -> AlertDelivery | None:
    """Alert on a dead letter that needs a human (e.g. revoked mailbox authorization)."""
    context = entry.job_context or {}
    subject = f"[ReplyWatch] Dead letter needs review: job {entry.job_id}"
    body = "\n".join(
        [
            f"Job: {entry.job_id}",
            f"Outbound message: {entry.outbound_message_id or '-'}",
            f"Provider: {context.get('provider', '-')}",
            f"Mailbox: {context.get('mailbox_address', '-')}",
            f"Attempts: {entry.total_attempts}",
            f"Last error: {context.get('last_error') or '-'}",
        ]
    )
    return _deliver(
        db,
        tenant_id=entry.tenant_id,
        alert_type="dead_letter_manual_review",
        severity=ALERT_SEVERITY_CRITICAL,
        subject=subject,
        body=body,
        dead_letter_id=entry.id,
    )
