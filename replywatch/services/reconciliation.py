"""Reconciliation sweep: catch outbound messages that slipped past detection.

Finds messages sent inside the reconciliation window (older than the grace
period) that have no recorded reply and no active job, and creates one
reconciliation job for each. Messages verified as unreplied long enough ago
are re-armed so late replies are still caught inside the window.

The sweep also watches the sync itself: an active mailbox checkpoint that has
not been read for SYNC_STALE_HOURS raises a sync_stale anomaly, and history
candidates past their retention are purged on untenanted runs.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta

from sqlalchemy import and_, exists, func, select
from sqlalchemy.orm import Session

from replywatch.config import get_settings
from replywatch.db.types import utcnow
from replywatch.models.anomaly import (
    ANOMALY_MISSED_REPLY,
    ANOMALY_RECONCILIATION_FAILURE,
    ANOMALY_SYNC_STALE,
    SEVERITY_HIGH,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    Anomaly,
)
from replywatch.models.dead_letter import DeadLetterEntry
from replywatch.models.detection_job import (
    ACTIVE_STATUSES,
    JOB_TYPE_RECONCILIATION,
    STATUS_VERIFIED,
    DetectionJob,
)
from replywatch.models.mailbox_checkpoint import SYNC_STATUS_ACTIVE, MailboxCheckpoint
from replywatch.models.outbound_message import OutboundMessage
from replywatch.models.reconciliation_run import RUN_TYPES, ReconciliationRun
from replywatch.models.reply import Reply
from replywatch.schemas.jobs import ReconciliationPayload
from replywatch.services.anomalies import raise_anomaly
from replywatch.services.candidate_store import HistoryCandidateStore
from replywatch.services.job_queue import create_job

logger = logging.getLogger(__name__)

# Reconciliation jobs run ahead of routine scheduled checks
_RUN_TYPE_PRIORITY = {"manual": 2, "nightly": 3, "hourly": 4}


def _has_reply():
    return exists().where(Reply.outbound_message_id == OutboundMessage.id)


def _has_active_job():
    return exists().where(
        DetectionJob.outbound_message_id == OutboundMessage.id,
        DetectionJob.status.in_(ACTIVE_STATUSES),
    )


def _verified_since(cutoff: datetime):
    """A verified job completed at or after cutoff (recent enough to trust)."""
    return exists().where(
        DetectionJob.outbound_message_id == OutboundMessage.id,
        DetectionJob.status == STATUS_VERIFIED,
        DetectionJob.completed_at >= cutoff,
    )


def find_orphaned_messages(
    db: Session,
    now: datetime,
    tenant_id: int | None = None,
    limit: int | None = None,
) -> list[OutboundMessage]:
    """Messages inside the window with no reply, no active job and no recent verification."""
    settings = get_settings()
    window_start = now - timedelta(hours=settings.reconciliation_window_hours)
    window_end = now - timedelta(minutes=settings.reconciliation_grace_minutes)
    recheck_cutoff = now - timedelta(hours=settings.reconciliation_recheck_hours)

    stmt = (
        select(OutboundMessage)
        .where(
            OutboundMessage.sent_at >= window_start,
            OutboundMessage.sent_at <= window_end,
            OutboundMessage.deleted_at.is_(None),
            OutboundMessage.reply_received.is_(False),
            ~_has_reply(),
            ~_has_active_job(),
            ~_verified_since(recheck_cutoff),
        )
        .order_by(OutboundMessage.sent_at)
        .limit(limit or settings.reconciliation_batch_limit)
    )
    if tenant_id is not None:
        stmt = stmt.where(OutboundMessage.tenant_id == tenant_id)
    return list(db.scalars(stmt).all())


def find_flagged_without_reply(
    db: Session, now: datetime, tenant_id: int | None = None, limit: int = 100
) -> list[OutboundMessage]:
    """Messages marked replied by the outer system that carry no Reply row.

    A reviewer confirming the reply on a dead letter sets the same flag; those
    messages are not anomalies.
    """
    settings = get_settings()
    window_start = now - timedelta(hours=settings.reconciliation_window_hours)
    stmt = (
        select(OutboundMessage)
        .where(
            OutboundMessage.sent_at >= window_start,
            OutboundMessage.deleted_at.is_(None),
            OutboundMessage.reply_received.is_(True),
            ~_has_reply(),
            ~exists().where(
                Anomaly.outbound_message_id == OutboundMessage.id,
                Anomaly.anomaly_type == ANOMALY_MISSED_REPLY,
            ),
            ~exists().where(
                DeadLetterEntry.outbound_message_id == OutboundMessage.id,
                DeadLetterEntry.review_action == "mark_has_reply",
            ),
        )
        .limit(limit)
    )
    if tenant_id is not None:
        stmt = stmt.where(OutboundMessage.tenant_id == tenant_id)
    return list(db.scalars(stmt).all())


def _count_recorded_replies(db: Session, now: datetime, tenant_id: int | None) -> int:
    window_start = now - timedelta(hours=get_settings().reconciliation_window_hours)
    stmt = select(func.count(OutboundMessage.id)).where(
        OutboundMessage.sent_at >= window_start,
        OutboundMessage.deleted_at.is_(None),
        _has_reply(),
    )
    if tenant_id is not None:
        stmt = stmt.where(OutboundMessage.tenant_id == tenant_id)
    return db.scalar(stmt) or 0


def find_stale_checkpoints(
    db: Session, now: datetime, tenant_id: int | None = None
) -> list[MailboxCheckpoint]:
    """Active checkpoints not read for SYNC_STALE_HOURS and without an open sync_stale anomaly."""
    stale_hours = get_settings().sync_stale_hours
    if stale_hours <= 0:
        return []
    cutoff = now - timedelta(hours=stale_hours)
    stmt = select(MailboxCheckpoint).where(
        MailboxCheckpoint.sync_status == SYNC_STATUS_ACTIVE,
        MailboxCheckpoint.last_checked_at < cutoff,
    )
    if tenant_id is not None:
        stmt = stmt.where(MailboxCheckpoint.tenant_id == tenant_id)
    checkpoints = db.scalars(stmt.order_by(MailboxCheckpoint.last_checked_at)).all()
    if not checkpoints:
        return []

    open_anomalies = db.scalars(
        select(Anomaly).where(
            Anomaly.anomaly_type == ANOMALY_SYNC_STALE,
            Anomaly.status.in_(("open", "investigating")),
        )
    ).all()
    already_open = {(a.provider, (a.details or {}).get("mailbox_address")) for a in open_anomalies}
    return [c for c in checkpoints if (c.provider, c.mailbox_address) not in already_open]


def _checkpoint_positions(db: Session, mailboxes: set[tuple[str, str]]) -> dict[str, str | None]:
    positions: dict[str, str | None] = {}
    for provider, mailbox in sorted(mailboxes):
        position = db.scalar(
            select(MailboxCheckpoint.last_position).where(
                and_(
                    MailboxCheckpoint.provider == provider,
                    MailboxCheckpoint.mailbox_address == mailbox,
                )
            )
        )
        positions[f"{provider}:{mailbox}"] = position
    return positions


def run_reconciliation_sweep(
    db: Session,
    run_type: str = "manual",
    tenant_id: int | None = None,
    now: datetime | None = None,
) -> ReconciliationRun:
    """Run one sweep and return its ReconciliationRun. Failures are recorded, not raised."""
    if run_type not in RUN_TYPES:
        raise ValueError(f"Invalid run_type: {run_type}")
    now = now or utcnow()
    t0 = time.perf_counter()
    run = ReconciliationRun(tenant_id=tenant_id, run_type=run_type, started_at=now, errors=[])
    db.add(run)
    db.commit()

    errors: list[str] = []
    try:
        candidates = find_orphaned_messages(db, now, tenant_id)
        mailboxes = {(m.provider, m.mailbox_address.lower()) for m in candidates}
        run.checkpoint_before = _checkpoint_positions(db, mailboxes)
        run.messages_checked = len(candidates)

        jobs_created = 0
        already_recorded = _count_recorded_replies(db, now, tenant_id)
        for message in candidates:
            try:
                _job, created = create_job(
                    db,
                    message.id,
                    JOB_TYPE_RECONCILIATION,
                    scheduled_for=now,
                    priority=_RUN_TYPE_PRIORITY[run_type],
                    payload=ReconciliationPayload(sweep_run_id=run.id, run_type=run_type),
                )
            except Exception as exc:
                logger.exception(
                    "Reconciliation job creation failed: outbound_message_id=%s", message.id
                )
                db.rollback()
                errors.append(f"outbound_message_id={message.id}: {type(exc).__name__}: {exc}")
                continue
            if created:
                jobs_created += 1

        anomalies = 0
        for message in find_flagged_without_reply(db, now, tenant_id):
            raise_anomaly(
                db,
                ANOMALY_MISSED_REPLY,
                SEVERITY_LOW,
                tenant_id=message.tenant_id,
                provider=message.provider,
                outbound_message_id=message.id,
                details={
                    "reason": "reply_received set without a recorded reply",
                    "sweep_run_id": run.id,
                },
                commit=False,
            )
            anomalies += 1

        for checkpoint in find_stale_checkpoints(db, now, tenant_id):
            raise_anomaly(
                db,
                ANOMALY_SYNC_STALE,
                SEVERITY_MEDIUM,
                tenant_id=checkpoint.tenant_id,
                provider=checkpoint.provider,
                details={
                    "mailbox_address": checkpoint.mailbox_address,
                    "last_checked_at": checkpoint.last_checked_at.isoformat(),
                    "stale_hours": get_settings().sync_stale_hours,
                    "sweep_run_id": run.id,
                },
                commit=False,
            )
            anomalies += 1

        if tenant_id is None:
            retention = timedelta(hours=get_settings().history_candidate_retention_hours)
            purged = HistoryCandidateStore(db).purge_before(now - retention)
            if purged:
                logger.info("History candidates purged: count=%d", purged)

        run.jobs_created = jobs_created
        run.replies_already_recorded = already_recorded
        run.anomalies_logged = anomalies
        run.checkpoint_after = _checkpoint_positions(db, mailboxes)
        run.errors = errors
        run.outcome = "partial" if errors else "success"
    except Exception as exc:
        logger.exception("Reconciliation sweep failed: run_id=%s run_type=%s", run.id, run_type)
        db.rollback()
        errors.append(f"{type(exc).__name__}: {exc}")
        run.errors = errors
        run.outcome = "failed"
        raise_anomaly(
            db,
            ANOMALY_RECONCILIATION_FAILURE,
            SEVERITY_HIGH,
            tenant_id=tenant_id,
            details={"run_id": run.id, "run_type": run_type, "error": str(exc)},
            commit=False,
        )
        run.anomalies_logged = (run.anomalies_logged or 0) + 1

    run.completed_at = utcnow()
    run.duration_ms = int((time.perf_counter() - t0) * 1000)
    db.commit()
    logger.info(
        "Reconciliation sweep complete: run_id=%s run_type=%s checked=%d jobs_created=%d "
        "anomalies=%d outcome=%s",
        run.id,
        run.run_type,
        run.messages_checked,
        run.jobs_created,
        run.anomalies_logged,
        run.outcome,
    )
    return run
