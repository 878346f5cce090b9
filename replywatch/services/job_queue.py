"""Detection job queue: creation, promotion, leasing and state transitions.

State machine::

    pending -> queued -> executing -> verified
                              |-> failed -> pending (retry with backoff)
                                         |-> dead (attempts exhausted or fatal)
                                         |-> cancelled (cancel requested mid-run)
    pending | queued -> cancelled

Every transition appends a DetectionRun. ``failed`` is passed through inside
the transaction that records the attempt, so it is visible in the run history
but never as a job's committed status.

At most one non-terminal job exists per outbound message, and at most one
history sync per mailbox (partial unique indexes). Leases are taken with
conditional updates on the current status, so two dispatchers racing for the
same job cannot both win.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replywatch.config import get_settings
from replywatch.db.types import utcnow
from replywatch.errors import JobStateError, NotFoundError
from replywatch.models.detection_job import (
    ACTIVE_STATUSES,
    JOB_TYPE_HISTORY_SYNC,
    JOB_TYPE_MANUAL_RECHECK,
    JOB_TYPE_ON_SEND,
    STATUS_CANCELLED,
    STATUS_DEAD,
    STATUS_EXECUTING,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_QUEUED,
    STATUS_VERIFIED,
    DetectionJob,
)
from replywatch.models.detection_run import (
    OUTCOME_FAILED,
    OUTCOME_PARTIAL,
    OUTCOME_RETRYING,
    OUTCOME_SUCCESS,
    DetectionRun,
)
from replywatch.models.outbound_message import OutboundMessage
from replywatch.schemas.detection import LayerResult, QuorumResult
from replywatch.schemas.jobs import (
    HistorySyncPayload,
    JobPayload,
    ManualRecheckPayload,
    OnSendPayload,
    dump_job_payload,
    parse_job_payload,
)
from replywatch.services.backoff import next_retry_at

logger = logging.getLogger(__name__)

VERDICT_VERIFIED = "verified"
VERDICT_NO_QUORUM = "no_quorum"
VERDICT_ERROR = "error"
VERDICT_FATAL = "fatal"


@dataclass
class AttemptVerdict:
    """What the executor concluded about one execution attempt."""

    kind: str  # verified | no_quorum | error | fatal
    started_at: datetime
    layer_results: list[LayerResult] = field(default_factory=list)
    quorum: QuorumResult | None = None
    reply_found: bool = False
    reply_message_id: str | None = None
    reply_persisted: bool | None = None
    error: str | None = None
    requires_manual_review: bool = False
    mailbox_address: str | None = None


def get_active_job(db: Session, outbound_message_id: int) -> DetectionJob | None:
    """The non-terminal job for an outbound message, if any."""
    return db.scalar(
        select(DetectionJob).where(
            DetectionJob.outbound_message_id == outbound_message_id,
            DetectionJob.status.in_(ACTIVE_STATUSES),
        )
    )


def get_job(db: Session, job_id: int) -> DetectionJob:
    job = db.get(DetectionJob, job_id)
    if job is None:
        raise NotFoundError(f"Detection job {job_id} not found")
    return job


def create_job(
    db: Session,
    outbound_message_id: int,
    job_type: str,
    *,
    contact_id: int | None = None,
    scheduled_for: datetime | None = None,
    priority: int | None = None,
    max_attempts: int | None = None,
    payload: JobPayload | None = None,
    superseded_job_id: int | None = None,
) -> tuple[DetectionJob, bool]:
    """Create a detection job unless one is already active for the message.

    Returns (job, created). When another non-terminal job exists, that job is
    returned with created=False; this holds under concurrent callers because
    the insert is guarded by the partial unique index.
    """
    if job_type == JOB_TYPE_HISTORY_SYNC:
        raise ValueError("history_sync jobs watch a mailbox; use create_history_sync_job")
    outbound = db.get(OutboundMessage, outbound_message_id)
    if outbound is None:
        raise NotFoundError(f"Outbound message {outbound_message_id} not found")
    if payload is not None:
        # Round-trip validates that the variant matches job_type
        parse_job_payload(dump_job_payload(payload), job_type)

    existing = get_active_job(db, outbound_message_id)
    if existing is not None:
        return existing, False

    settings = get_settings()
    job = DetectionJob(
        tenant_id=outbound.tenant_id,
        outbound_message_id=outbound.id,
        contact_id=contact_id or outbound.contact_id,
        job_type=job_type,
        status=STATUS_PENDING,
        priority=settings.job_default_priority if priority is None else priority,
        provider=outbound.provider,
        mailbox_address=outbound.mailbox_address.strip().lower(),
        scheduled_for=scheduled_for or utcnow(),
        max_attempts=max_attempts or settings.job_max_attempts,
        payload=dump_job_payload(payload),
        superseded_job_id=superseded_job_id,
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_active_job(db, outbound_message_id)
        if existing is None:
            raise
        logger.info(
            "Job creation deduplicated: outbound_message_id=%s existing_job_id=%s",
            outbound_message_id,
            existing.id,
        )
        return existing, False

    logger.info(
        "Job created: job_id=%s outbound_message_id=%s job_type=%s scheduled_for=%s",
        job.id,
        outbound_message_id,
        job_type,
        job.scheduled_for.isoformat(),
    )
    return job, True


def get_active_history_sync(db: Session, provider: str, mailbox_address: str) -> DetectionJob | None:
    return db.scalar(
        select(DetectionJob).where(
            DetectionJob.job_type == JOB_TYPE_HISTORY_SYNC,
            DetectionJob.provider == provider,
            DetectionJob.mailbox_address == mailbox_address.strip().lower(),
            DetectionJob.status.in_(ACTIVE_STATUSES),
        )
    )


def create_history_sync_job(
    db: Session,
    tenant_id: int,
    provider: str,
    mailbox_address: str,
    *,
    scheduled_for: datetime | None = None,
    priority: int | None = None,
    superseded_job_id: int | None = None,
) -> tuple[DetectionJob, bool]:
    """Mailbox-level change-stream sweep. Deduplicated per (provider, mailbox) like create_job."""
    mailbox = mailbox_address.strip().lower()
    existing = get_active_history_sync(db, provider, mailbox)
    if existing is not None:
        return existing, False

    settings = get_settings()
    job = DetectionJob(
        tenant_id=tenant_id,
        job_type=JOB_TYPE_HISTORY_SYNC,
        status=STATUS_PENDING,
        priority=settings.job_default_priority if priority is None else priority,
        provider=provider,
        mailbox_address=mailbox,
        scheduled_for=scheduled_for or utcnow(),
        max_attempts=settings.job_max_attempts,
        payload=dump_job_payload(HistorySyncPayload(mailbox_address=mailbox)),
        superseded_job_id=superseded_job_id,
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_active_history_sync(db, provider, mailbox)
        if existing is None:
            raise
        return existing, False

    logger.info(
        "History sync job created: job_id=%s provider=%s mailbox=%s", job.id, provider, mailbox
    )
    return job, True


def create_on_send_job(
    db: Session,
    outbound_message_id: int,
    *,
    initial_delay_seconds: int | None = None,
    priority: int | None = None,
    now: datetime | None = None,
) -> tuple[DetectionJob, bool]:
    delay = (
        get_settings().on_send_initial_delay_seconds
        if initial_delay_seconds is None
        else initial_delay_seconds
    )
    now = now or utcnow()
    return create_job(
        db,
        outbound_message_id,
        JOB_TYPE_ON_SEND,
        scheduled_for=now + timedelta(seconds=delay),
        priority=priority,
        payload=OnSendPayload(initial_delay_seconds=delay),
    )


def promote_due_jobs(db: Session, now: datetime | None = None) -> int:
    """Move pending jobs whose schedule and retry time have passed to queued."""
    now = now or utcnow()
    result = db.execute(
        update(DetectionJob)
        .where(
            DetectionJob.status == STATUS_PENDING,
            DetectionJob.scheduled_for <= now,
            or_(DetectionJob.next_retry_at.is_(None), DetectionJob.next_retry_at <= now),
        )
        .values(status=STATUS_QUEUED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info("Promoted due jobs: count=%d", result.rowcount)
    return result.rowcount or 0


def claim_next_job(
    db: Session,
    now: datetime | None = None,
    blocked_mailboxes: set[tuple[str, str]] | None = None,
    candidate_limit: int = 50,
) -> DetectionJob | None:
    """Lease the best queued job (lowest priority value, then oldest schedule).

    Jobs whose (provider, mailbox) is in blocked_mailboxes are passed over.
    Each lease is a conditional update on status='queued'; a job taken by
    another dispatcher is skipped. Returns None when nothing could be leased.
    """
    now = now or utcnow()
    blocked = blocked_mailboxes or set()
    rows = db.execute(
        select(DetectionJob.id, DetectionJob.provider, DetectionJob.mailbox_address)
        .where(DetectionJob.status == STATUS_QUEUED)
        .order_by(DetectionJob.priority, DetectionJob.scheduled_for, DetectionJob.id)
        .limit(candidate_limit)
    ).all()

    for job_id, provider, mailbox in rows:
        if (provider, mailbox.lower()) in blocked:
            continue
        result = db.execute(
            update(DetectionJob)
            .where(DetectionJob.id == job_id, DetectionJob.status == STATUS_QUEUED)
            .values(
                status=STATUS_EXECUTING,
                started_at=now,
                attempts=DetectionJob.attempts + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount:
            job = db.get(DetectionJob, job_id)
            db.refresh(job)
            logger.info("Job leased: job_id=%s attempt=%d", job.id, job.attempts)
            return job
        logger.debug("Job lease lost: job_id=%s", job_id)
    return None


def next_run_number(db: Session, job_id: int) -> int:
    current = db.scalar(
        select(func.max(DetectionRun.run_number)).where(DetectionRun.job_id == job_id)
    )
    return (current or 0) + 1


def _append_run(
    db: Session,
    job: DetectionJob,
    *,
    from_status: str,
    to_status: str,
    outcome: str,
    started_at: datetime,
    completed_at: datetime,
    verdict: AttemptVerdict | None = None,
    error_message: str | None = None,
) -> DetectionRun:
    run = DetectionRun(
        job_id=job.id,
        run_number=next_run_number(db, job.id),
        started_at=started_at,
        completed_at=completed_at,
        duration_ms=max(int((completed_at - started_at).total_seconds() * 1000), 0),
        from_status=from_status,
        to_status=to_status,
        outcome=outcome,
        error_message=error_message,
    )
    if verdict is not None:
        run.mailbox_address = verdict.mailbox_address
        run.layer_results = [r.model_dump(mode="json") for r in verdict.layer_results]
        if verdict.quorum is not None:
            run.quorum_result = verdict.quorum.model_dump(mode="json")
        run.reply_found = verdict.reply_found
        run.reply_message_id = verdict.reply_message_id
        run.reply_persisted = verdict.reply_persisted
    db.add(run)
    db.flush()
    return run


def record_attempt_outcome(
    db: Session,
    job: DetectionJob,
    verdict: AttemptVerdict,
    now: datetime | None = None,
) -> DetectionRun:
    """Apply one attempt's verdict to an executing job and append its Runs.

    verified -> verified. Anything else -> failed, then in the same
    transaction: no_quorum / error -> pending with backoff, or dead once
    attempts == max_attempts, or cancelled if a cancel was requested; fatal
    -> dead immediately. Dead jobs get a DeadLetterEntry in the same
    transaction. Returns the attempt's Run (from executing).
    """
    from replywatch.services import alerting
    from replywatch.services.dead_letter import create_dead_letter

    if job.status != STATUS_EXECUTING:
        raise JobStateError(f"Job {job.id} is {job.status}, not executing")

    now = now or utcnow()
    from_status = job.status
    quorum = verdict.quorum
    healthy = sum(1 for r in verdict.layer_results if r.healthy)
    job.layers_executed = len(verdict.layer_results)
    job.layers_healthy = healthy
    job.quorum_met = quorum.quorum_met if quorum else False

    if verdict.kind == VERDICT_VERIFIED:
        job.status = STATUS_VERIFIED
        job.reply_found = verdict.reply_found
        job.completed_at = now
        job.next_retry_at = None
        job.last_error = None
        outcome = OUTCOME_SUCCESS
    else:
        job.error_count = (job.error_count or 0) + 1
        job.last_error = verdict.error or (
            "quorum not met" if verdict.kind == VERDICT_NO_QUORUM else None
        )
        job.status = STATUS_FAILED
        exhausted = job.attempts >= job.max_attempts
        if verdict.kind == VERDICT_FATAL or exhausted:
            outcome = OUTCOME_FAILED
        else:
            outcome = OUTCOME_PARTIAL if verdict.kind == VERDICT_NO_QUORUM else OUTCOME_RETRYING

    run = _append_run(
        db,
        job,
        from_status=from_status,
        to_status=job.status,
        outcome=outcome,
        started_at=verdict.started_at,
        completed_at=now,
        verdict=verdict,
        error_message=verdict.error,
    )

    if job.status == STATUS_FAILED:
        if outcome == OUTCOME_FAILED:
            job.status = STATUS_DEAD
        elif job.cancel_requested:
            job.status = STATUS_CANCELLED
        else:
            job.status = STATUS_PENDING
        if job.status == STATUS_PENDING:
            job.next_retry_at = next_retry_at(now, job.attempts)
        else:
            job.completed_at = now
            job.next_retry_at = None
        _append_run(
            db,
            job,
            from_status=STATUS_FAILED,
            to_status=job.status,
            outcome=outcome,
            started_at=now,
            completed_at=now,
            error_message=verdict.error,
        )

    entry = None
    if job.status == STATUS_DEAD:
        entry = create_dead_letter(
            db, job, requires_manual_review=verdict.requires_manual_review, commit=False
        )
        if entry.requires_manual_review:
            alerting.alert_for_dead_letter(db, entry)
    db.commit()

    logger.info(
        "Job attempt recorded: job_id=%s attempt=%d/%d outcome=%s status=%s reply_found=%s",
        job.id,
        job.attempts,
        job.max_attempts,
        outcome,
        job.status,
        job.reply_found,
    )
    if entry is not None:
        logger.warning(
            "Job dead-lettered: job_id=%s dead_letter_id=%s attempts=%d manual_review=%s",
            job.id,
            entry.id,
            entry.total_attempts,
            entry.requires_manual_review,
        )
    return run


def cancel_job(db: Session, job_id: int, reason: str = "cancelled") -> DetectionJob:
    """Cancel a job. Executing jobs finish their run and are not re-queued."""
    job = get_job(db, job_id)
    now = utcnow()
    if job.status in (STATUS_PENDING, STATUS_QUEUED):
        from_status = job.status
        result = db.execute(
            update(DetectionJob)
            .where(DetectionJob.id == job.id, DetectionJob.status == from_status)
            .values(
                status=STATUS_CANCELLED,
                completed_at=now,
                next_retry_at=None,
                last_error=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            db.rollback()
            # Status moved under us (e.g. leased); retry against the new state
            return cancel_job(db, job_id, reason)
        db.refresh(job)
        _append_run(
            db,
            job,
            from_status=from_status,
            to_status=STATUS_CANCELLED,
            outcome=OUTCOME_FAILED,
            started_at=now,
            completed_at=now,
            error_message=reason,
        )
        db.commit()
        logger.info("Job cancelled: job_id=%s from_status=%s", job.id, from_status)
    elif job.status == STATUS_EXECUTING:
        job.cancel_requested = True
        db.commit()
        logger.info("Job cancel requested while executing: job_id=%s", job.id)
    else:
        logger.info("Job cancel ignored: job_id=%s status=%s", job.id, job.status)
    return job


def rearm_dead_job(
    db: Session,
    dead_job: DetectionJob,
    *,
    requested_by: str,
    dead_letter_id: int | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> tuple[DetectionJob, bool]:
    """New manual_recheck job for the dead job's message. The dead job stays dead.

    A dead history sync is re-armed as a fresh history sync for its mailbox.
    """
    if dead_job.status != STATUS_DEAD:
        raise JobStateError(f"Job {dead_job.id} is {dead_job.status}, not dead")
    if dead_job.job_type == JOB_TYPE_HISTORY_SYNC:
        return create_history_sync_job(
            db,
            dead_job.tenant_id,
            dead_job.provider,
            dead_job.mailbox_address,
            scheduled_for=now or utcnow(),
            priority=1,
            superseded_job_id=dead_job.id,
        )
    return create_job(
        db,
        dead_job.outbound_message_id,
        JOB_TYPE_MANUAL_RECHECK,
        contact_id=dead_job.contact_id,
        scheduled_for=now or utcnow(),
        priority=1,
        payload=ManualRecheckPayload(
            requested_by=requested_by, dead_letter_id=dead_letter_id, reason=reason
        ),
        superseded_job_id=dead_job.id,
    )


def release_stale_leases(db: Session, now: datetime | None = None) -> int:
    """Return executing jobs whose worker vanished to pending; the attempt stays counted."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=get_settings().job_lease_timeout_seconds)
    stale = db.scalars(
        select(DetectionJob).where(
            DetectionJob.status == STATUS_EXECUTING, DetectionJob.started_at < cutoff
        )
    ).all()
    released = 0
    for job in stale:
        record_attempt_outcome(
            db,
            job,
            AttemptVerdict(
                kind=VERDICT_ERROR,
                started_at=job.started_at or cutoff,
                error="lease expired: worker did not finish the run",
            ),
            now=now,
        )
        released += 1
    if released:
        logger.warning("Released stale job leases: count=%d", released)
    return released


def job_counts_by_status(db: Session) -> dict[str, int]:
    rows = db.execute(
        select(DetectionJob.status, func.count(DetectionJob.id)).group_by(DetectionJob.status)
    ).all()
    return {status: count for status, count in rows}
