"""Dead-letter entries and the review workflow."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replywatch.db.types import utcnow
from replywatch.errors import NotFoundError, ReviewStateError
from replywatch.models.contact import Contact
from replywatch.models.dead_letter import (
    DLQ_CLOSED_STATUSES,
    DLQ_STATUS_MANUALLY_CHECKED,
    DLQ_STATUS_RESOLVED,
    DLQ_STATUS_RETRY_SCHEDULED,
    DLQ_STATUS_SKIPPED,
    REVIEW_ACTIONS,
    DeadLetterEntry,
)
from replywatch.models.detection_job import STATUS_EXECUTING, DetectionJob
from replywatch.models.detection_run import DetectionRun
from replywatch.models.outbound_message import OutboundMessage

logger = logging.getLogger(__name__)


def _failure_history(runs: list[DetectionRun]) -> list[dict]:
    history = []
    attempt = 0
    for run in runs:
        if run.from_status != STATUS_EXECUTING:
            continue
        attempt += 1
        quorum = run.quorum_result or {}
        history.append(
            {
                "attempt_number": attempt,
                "run_number": run.run_number,
                "timestamp": (run.completed_at or run.started_at).isoformat(),
                "outcome": run.outcome,
                "error": run.error_message,
                "layers_healthy": len(quorum.get("healthy_layers", [])),
                "quorum_met": quorum.get("quorum_met", False),
            }
        )
    return history


def _job_context(db: Session, job: DetectionJob, runs: list[DetectionRun]) -> dict:
    outbound = (
        db.get(OutboundMessage, job.outbound_message_id) if job.outbound_message_id else None
    )
    contact = db.get(Contact, job.contact_id) if job.contact_id else None
    attempts = [run for run in runs if run.from_status == STATUS_EXECUTING]
    last = attempts[-1] if attempts else None
    return {
        "job_type": job.job_type,
        "provider": job.provider,
        "mailbox_address": job.mailbox_address,
        "contact_email": contact.email if contact else None,
        "contact_name": contact.name if contact else None,
        "subject": outbound.subject if outbound else None,
        "sent_at": outbound.sent_at.isoformat() if outbound else None,
        "provider_thread_id": outbound.provider_thread_id if outbound else None,
        "provider_message_id": outbound.provider_message_id if outbound else None,
        "last_error": job.last_error,
        "last_run": (
            {
                "run_number": last.run_number,
                "outcome": last.outcome,
                "layer_results": last.layer_results,
                "quorum_result": last.quorum_result,
            }
            if last is not None
            else None
        ),
    }


def create_dead_letter(
    db: Session,
    job: DetectionJob,
    requires_manual_review: bool = False,
    commit: bool = True,
) -> DeadLetterEntry:
    """Dead-letter a job. Idempotent per job: a second call returns the first entry."""
    existing = db.scalar(select(DeadLetterEntry).where(DeadLetterEntry.job_id == job.id))
    if existing is not None:
        return existing

    runs = list(
        db.scalars(
            select(DetectionRun)
            .where(DetectionRun.job_id == job.id)
            .order_by(DetectionRun.run_number)
        ).all()
    )
    entry = DeadLetterEntry(
        job_id=job.id,
        tenant_id=job.tenant_id,
        outbound_message_id=job.outbound_message_id,
        contact_id=job.contact_id,
        moved_at=utcnow(),
        total_attempts=job.attempts,
        last_attempt_at=runs[-1].completed_at if runs else job.completed_at,
        failure_history=_failure_history(runs),
        job_context=_job_context(db, job, runs),
        requires_manual_review=requires_manual_review,
    )
    try:
        with db.begin_nested():
            db.add(entry)
    except IntegrityError:
        existing = db.scalar(select(DeadLetterEntry).where(DeadLetterEntry.job_id == job.id))
        if existing is None:
            raise
        return existing
    if commit:
        db.commit()
    return entry


def get_dead_letter(db: Session, entry_id: int) -> DeadLetterEntry:
    entry = db.get(DeadLetterEntry, entry_id)
    if entry is None:
        raise NotFoundError(f"Dead letter {entry_id} not found")
    return entry


def list_dead_letters(
    db: Session, status: str | None = None, limit: int = 100
) -> list[DeadLetterEntry]:
    stmt = (
        select(DeadLetterEntry)
        .order_by(DeadLetterEntry.moved_at.desc(), DeadLetterEntry.id.desc())
        .limit(limit)
    )
    if status:
        stmt = stmt.where(DeadLetterEntry.status == status)
    return list(db.scalars(stmt).all())


def apply_review_action(
    db: Session,
    entry_id: int,
    action: str,
    reviewed_by: str,
    notes: str | None = None,
) -> DeadLetterEntry:
    """Apply a reviewer's decision to a dead-letter entry.

    retry re-arms the message with a manual_recheck job; mark_has_reply flags
    the outbound message as replied. Closed entries (resolved, skipped) cannot
    be reviewed again.
    """
    from replywatch.services.job_queue import rearm_dead_job

    if action not in REVIEW_ACTIONS:
        raise ValueError(f"Unknown review action: {action}")
    entry = get_dead_letter(db, entry_id)
    if entry.status in DLQ_CLOSED_STATUSES:
        raise ReviewStateError(f"Dead letter {entry_id} is already {entry.status}")

    if action == "retry":
        if entry.status == DLQ_STATUS_RETRY_SCHEDULED:
            raise ReviewStateError(f"Dead letter {entry_id} already has retry job {entry.retry_job_id}")
        dead_job = db.get(DetectionJob, entry.job_id)
        job, _created = rearm_dead_job(
            db,
            dead_job,
            requested_by=reviewed_by,
            dead_letter_id=entry.id,
            reason=notes,
        )
        entry.retry_job_id = job.id
        entry.status = DLQ_STATUS_RETRY_SCHEDULED
    elif action == "manual_check":
        entry.status = DLQ_STATUS_MANUALLY_CHECKED
    elif action == "skip":
        entry.status = DLQ_STATUS_SKIPPED
    elif action == "mark_no_reply":
        entry.status = DLQ_STATUS_RESOLVED
    elif action == "mark_has_reply":
        if entry.outbound_message_id is None:
            raise ReviewStateError(f"Dead letter {entry_id} watches a mailbox, not a message")
        outbound = db.get(OutboundMessage, entry.outbound_message_id)
        if outbound is not None:
            outbound.reply_received = True
        entry.status = DLQ_STATUS_RESOLVED

    entry.review_action = action
    entry.reviewed_by = reviewed_by
    entry.reviewed_at = utcnow()
    entry.review_notes = notes
    db.commit()
    logger.info(
        "Dead letter reviewed: dead_letter_id=%s action=%s status=%s reviewed_by=%s",
        entry.id,
        action,
        entry.status,
        reviewed_by,
    )
    return entry
