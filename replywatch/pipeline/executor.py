"""Job executor: one detection attempt for a leased job.

Builds the detection context, runs the provider's applicable layers
concurrently, applies the quorum rule, persists the reply idempotently and
hands the verdict to the job queue. A reply row is written only after a
verified verdict. Mailbox-level history_sync jobs run the change-stream
sweep instead of the layer set. Provider failures never escape a layer;
store failures abort the attempt and are recorded as a retryable error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from replywatch.config import get_settings
from replywatch.db.types import utcnow
from replywatch.detection.base import (
    ERROR_KIND_AUTHORIZATION,
    ERROR_KIND_HISTORY_GAP,
    ERROR_KIND_TIMEOUT,
    DetectionContext,
    OutboundRef,
)
from replywatch.detection.quorum import QuorumPolicy, evaluate_quorum
from replywatch.detection.registry import applicable_layers
from replywatch.detection.runner import run_layers
from replywatch.models.anomaly import (
    ANOMALY_DUPLICATE_DETECTION,
    ANOMALY_HISTORY_GAP,
    ANOMALY_LAYER_TIMEOUT,
    ANOMALY_QUORUM_FAILURE,
    ANOMALY_STALE_DETECTION,
    ANOMALY_VERIFICATION_FAILED,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
)
from replywatch.models.contact import Contact, ContactAlias
from replywatch.models.detection_job import (
    JOB_TYPE_HISTORY_SYNC,
    JOB_TYPE_SCHEDULED,
    STATUS_EXECUTING,
    DetectionJob,
)
from replywatch.models.detection_run import DetectionRun
from replywatch.models.outbound_message import OutboundMessage
from replywatch.providers.base import MailboxProvider
from replywatch.schemas.detection import DetectedReply, LayerResult, QuorumResult
from replywatch.schemas.jobs import ScheduledPayload, parse_job_payload
from replywatch.services.anomalies import raise_anomaly, recent_quorum_failure_streak
from replywatch.services.candidate_store import HistoryCandidateStore
from replywatch.services.checkpoint_store import CheckpointStore
from replywatch.services.history_sync import sync_mailbox
from replywatch.services.job_queue import (
    VERDICT_ERROR,
    VERDICT_FATAL,
    VERDICT_NO_QUORUM,
    VERDICT_VERIFIED,
    AttemptVerdict,
    record_attempt_outcome,
)
from replywatch.services.reply_store import persist_reply

logger = logging.getLogger(__name__)


@dataclass
class ExecutionOutcome:
    job_id: int
    status: str
    run_outcome: str
    quorum: QuorumResult | None
    reply_found: bool
    reply_id: int | None = None
    error: str | None = None


def build_context(
    db: Session,
    job: DetectionJob,
    provider: MailboxProvider,
    store: CheckpointStore | None,
    candidates: HistoryCandidateStore | None = None,
) -> DetectionContext:
    outbound = db.get(OutboundMessage, job.outbound_message_id)
    contact = db.get(Contact, job.contact_id)
    aliases = db.scalars(
        select(ContactAlias.email).where(ContactAlias.contact_id == job.contact_id)
    ).all()

    return DetectionContext(
        job_id=job.id,
        outbound=OutboundRef(
            id=outbound.id,
            tenant_id=outbound.tenant_id,
            provider=outbound.provider,
            mailbox_address=outbound.mailbox_address,
            subject=outbound.subject,
            sent_at=outbound.sent_at,
            provider_message_id=outbound.provider_message_id,
            provider_thread_id=outbound.provider_thread_id,
            rfc822_message_id=outbound.rfc822_message_id,
        ),
        contact_address=contact.email,
        known_aliases=tuple(aliases),
        provider=provider,
        checkpoint_store=store,
        candidate_store=candidates if candidates is not None else HistoryCandidateStore(db),
    )


def _pick_reply(results: list[LayerResult]) -> tuple[DetectedReply, str] | None:
    """Earliest reply seen by a healthy layer, with the first layer that found it."""
    by_id: dict[str, tuple[DetectedReply, str]] = {}
    for result in results:
        if not (result.healthy and result.found):
            continue
        for reply in result.evidence:
            by_id.setdefault(reply.provider_message_id, (reply, result.layer))
    if not by_id:
        return None
    far_future = datetime.max.replace(tzinfo=UTC)
    return min(by_id.values(), key=lambda item: item[0].received_at or far_future)


def _raise_run_anomalies(
    db: Session,
    job: DetectionJob,
    results: list[LayerResult],
) -> None:
    for result in results:
        if result.error_kind == ERROR_KIND_TIMEOUT:
            raise_anomaly(
                db,
                ANOMALY_LAYER_TIMEOUT,
                SEVERITY_LOW,
                tenant_id=job.tenant_id,
                provider=job.provider,
                outbound_message_id=job.outbound_message_id,
                job_id=job.id,
                details={"layer": result.layer, "error": result.error},
                commit=False,
            )
        elif result.error_kind == ERROR_KIND_HISTORY_GAP:
            raise_anomaly(
                db,
                ANOMALY_HISTORY_GAP,
                SEVERITY_MEDIUM,
                tenant_id=job.tenant_id,
                provider=job.provider,
                job_id=job.id,
                details={"layer": result.layer, "error": result.error},
                commit=False,
            )


async def execute_job(
    db: Session,
    job: DetectionJob,
    provider: MailboxProvider,
    *,
    policy: QuorumPolicy | None = None,
    store: CheckpointStore | None = None,
    layer_timeout: float | None = None,
) -> ExecutionOutcome:
    """Run one detection attempt for a job already leased into executing."""
    if job.status != STATUS_EXECUTING:
        raise ValueError(f"Job {job.id} is {job.status}; lease it before executing")

    settings = get_settings()
    policy = policy or QuorumPolicy.from_settings(settings)
    store = store if store is not None else CheckpointStore(db)
    started_at = utcnow()
    job_id = job.id
    results: list[LayerResult] = []
    quorum: QuorumResult | None = None

    try:
        if job.job_type == JOB_TYPE_HISTORY_SYNC:
            return await _execute_history_sync(db, job, provider, store, started_at)

        ctx = build_context(db, job, provider, store)
        layers = applicable_layers(ctx)
        # Release the read transaction before awaiting the provider
        db.commit()
        results = await run_layers(layers, ctx, timeout=layer_timeout)
        quorum = evaluate_quorum(results, policy)

        auth_failures = [r for r in results if r.error_kind == ERROR_KIND_AUTHORIZATION]
        if auth_failures:
            return _fail_fast_on_authorization(db, job, results, quorum, auth_failures, started_at, store)

        _raise_run_anomalies(db, job, results)

        if not quorum.quorum_met:
            verdict = AttemptVerdict(
                kind=VERDICT_NO_QUORUM,
                started_at=started_at,
                layer_results=results,
                quorum=quorum,
                error=(
                    f"quorum not met: {len(quorum.healthy_layers)}/{quorum.applicable} healthy, "
                    f"need {quorum.threshold}"
                ),
                mailbox_address=ctx.outbound.mailbox_address,
            )
            run = record_attempt_outcome(db, job, verdict)
            _check_quorum_streak(db, job)
            return ExecutionOutcome(job_id, job.status, run.outcome, quorum, False, error=verdict.error)

        reply_id = None
        verdict = AttemptVerdict(
            kind=VERDICT_VERIFIED,
            started_at=started_at,
            layer_results=results,
            quorum=quorum,
            reply_found=quorum.reply_found,
            mailbox_address=ctx.outbound.mailbox_address,
        )
        if quorum.reply_found:
            reply_id = _persist_detected_reply(db, job, results, verdict)
        else:
            _check_candidate_verification(db, job)
        run = record_attempt_outcome(db, job, verdict)
        return ExecutionOutcome(job_id, job.status, run.outcome, quorum, quorum.reply_found, reply_id)

    except SQLAlchemyError as exc:
        logger.exception("Detection attempt aborted by store error: job_id=%s", job_id)
        db.rollback()
        job = db.get(DetectionJob, job_id)
        if job is None or job.status != STATUS_EXECUTING:
            # Outcome was already committed; the failure came after it
            return ExecutionOutcome(
                job_id, job.status if job else "unknown", "", quorum, False, error=str(exc)
            )
        verdict = AttemptVerdict(
            kind=VERDICT_ERROR,
            started_at=started_at,
            layer_results=results,
            quorum=quorum,
            error=f"{type(exc).__name__}: {exc}"[:2000],
            mailbox_address=job.mailbox_address,
        )
        run = record_attempt_outcome(db, job, verdict)
        return ExecutionOutcome(job_id, job.status, run.outcome, quorum, False, error=verdict.error)


def _persist_detected_reply(
    db: Session,
    job: DetectionJob,
    results: list[LayerResult],
    verdict: AttemptVerdict,
) -> int | None:
    picked = _pick_reply(results)
    if picked is None:
        return None
    detected, layer = picked
    outbound = db.get(OutboundMessage, job.outbound_message_id)
    reply, created = persist_reply(db, outbound, detected, layer)
    verdict.reply_message_id = detected.provider_message_id
    verdict.reply_persisted = created

    if reply.outbound_message_id != outbound.id:
        raise_anomaly(
            db,
            ANOMALY_DUPLICATE_DETECTION,
            SEVERITY_MEDIUM,
            tenant_id=job.tenant_id,
            provider=job.provider,
            outbound_message_id=outbound.id,
            job_id=job.id,
            details={
                "provider_message_id": detected.provider_message_id,
                "recorded_for_outbound_message_id": reply.outbound_message_id,
            },
            commit=False,
        )
        return reply.id

    outbound.reply_received = True
    stale_after = timedelta(hours=get_settings().stale_detection_hours)
    if detected.received_at is not None and utcnow() - detected.received_at > stale_after:
        raise_anomaly(
            db,
            ANOMALY_STALE_DETECTION,
            SEVERITY_LOW,
            tenant_id=job.tenant_id,
            provider=job.provider,
            outbound_message_id=outbound.id,
            job_id=job.id,
            details={
                "received_at": detected.received_at.isoformat(),
                "detected_by": layer,
                "lag_hours": round((utcnow() - detected.received_at).total_seconds() / 3600, 1),
            },
            commit=False,
        )
    return reply.id


def _check_candidate_verification(db: Session, job: DetectionJob) -> None:
    """A check queued for a change-stream candidate verified without finding a reply."""
    if job.job_type != JOB_TYPE_SCHEDULED:
        return
    payload = parse_job_payload(job.payload, job.job_type)
    if not isinstance(payload, ScheduledPayload) or payload.candidate_message_id is None:
        return
    raise_anomaly(
        db,
        ANOMALY_VERIFICATION_FAILED,
        SEVERITY_LOW,
        tenant_id=job.tenant_id,
        provider=job.provider,
        outbound_message_id=job.outbound_message_id,
        job_id=job.id,
        details={
            "candidate_message_id": payload.candidate_message_id,
            "check_number": payload.check_number,
        },
        commit=False,
    )


async def _execute_history_sync(
    db: Session,
    job: DetectionJob,
    provider: MailboxProvider,
    store: CheckpointStore,
    started_at: datetime,
) -> ExecutionOutcome:
    candidates = HistoryCandidateStore(db)
    db.commit()
    synced = await sync_mailbox(db, job, provider, store=store, candidates=candidates)
    results = [synced.layer_result]
    # The sweep is the only applicable layer; one healthy run settles it
    quorum = evaluate_quorum(results, QuorumPolicy(min_healthy=1))

    if synced.layer_result.error_kind == ERROR_KIND_AUTHORIZATION:
        return _fail_fast_on_authorization(db, job, results, quorum, results, started_at, store)
    _raise_run_anomalies(db, job, results)

    if not synced.layer_result.healthy:
        verdict = AttemptVerdict(
            kind=VERDICT_ERROR,
            started_at=started_at,
            layer_results=results,
            quorum=quorum,
            error=synced.layer_result.error,
            mailbox_address=job.mailbox_address,
        )
        run = record_attempt_outcome(db, job, verdict)
        return ExecutionOutcome(job.id, job.status, run.outcome, quorum, False, error=verdict.error)

    verdict = AttemptVerdict(
        kind=VERDICT_VERIFIED,
        started_at=started_at,
        layer_results=results,
        quorum=quorum,
        mailbox_address=job.mailbox_address,
    )
    run = record_attempt_outcome(db, job, verdict)
    logger.info(
        "History sync finished: job_id=%s mailbox=%s pages=%d checks_queued=%d",
        job.id,
        job.mailbox_address,
        synced.pages,
        synced.checks_queued,
    )
    return ExecutionOutcome(job.id, job.status, run.outcome, quorum, False)


def _check_quorum_streak(db: Session, job: DetectionJob) -> None:
    streak = recent_quorum_failure_streak(db, job)
    if streak < get_settings().quorum_failure_anomaly_streak:
        return
    last = db.scalar(
        select(DetectionRun)
        .where(DetectionRun.job_id == job.id, DetectionRun.from_status == STATUS_EXECUTING)
        .order_by(DetectionRun.run_number.desc())
        .limit(1)
    )
    raise_anomaly(
        db,
        ANOMALY_QUORUM_FAILURE,
        SEVERITY_MEDIUM,
        tenant_id=job.tenant_id,
        provider=job.provider,
        outbound_message_id=job.outbound_message_id,
        job_id=job.id,
        details={
            "consecutive_failures": streak,
            "failed_layers": (last.quorum_result or {}).get("failed_layers", []) if last else [],
        },
    )


def _fail_fast_on_authorization(
    db: Session,
    job: DetectionJob,
    results: list[LayerResult],
    quorum: QuorumResult,
    auth_failures: list[LayerResult],
    started_at: datetime,
    store: CheckpointStore | None,
) -> ExecutionOutcome:
    """Revoked or expired mailbox access: pause the mailbox and dead-letter for review."""
    error = auth_failures[0].error or "authorization failed"
    logger.warning(
        "Mailbox authorization failed: job_id=%s provider=%s mailbox=%s",
        job.id,
        job.provider,
        job.mailbox_address,
    )
    if store is not None:
        store.record_error(
            job.provider,
            job.mailbox_address,
            error,
            auth_error=True,
            tenant_id=job.tenant_id,
            job_id=job.id,
        )
    verdict = AttemptVerdict(
        kind=VERDICT_FATAL,
        started_at=started_at,
        layer_results=results,
        quorum=quorum,
        error=error,
        requires_manual_review=True,
        mailbox_address=job.mailbox_address,
    )
    run = record_attempt_outcome(db, job, verdict)
    return ExecutionOutcome(job.id, job.status, run.outcome, quorum, False, error=error)
