"""Dispatch: promote due jobs, lease within per-mailbox budgets, execute.

``run_dispatch_cycle`` drains one batch in the caller's session (used by the
internal trigger endpoint). ``run_worker_pool`` keeps WORKER_CONCURRENCY
asyncio workers polling for work, each with its own session. Both run jobs
inside ``deferred_alerts`` and send the collected alerts from a worker
thread once the job has settled.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from replywatch.config import get_settings
from replywatch.db.types import utcnow
from replywatch.models.detection_job import STATUS_EXECUTING, DetectionJob
from replywatch.models.detection_run import DetectionRun
from replywatch.pipeline.executor import ExecutionOutcome, execute_job
from replywatch.providers.registry import ProviderRegistry
from replywatch.services import alerting
from replywatch.services.checkpoint_store import CheckpointStore
from replywatch.services.job_queue import (
    VERDICT_FATAL,
    AttemptVerdict,
    claim_next_job,
    promote_due_jobs,
    record_attempt_outcome,
    release_stale_leases,
)

logger = logging.getLogger(__name__)


@dataclass
class DispatchSummary:
    promoted: int = 0
    released: int = 0
    executed: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)
    skipped_mailboxes: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "promoted": self.promoted,
            "released": self.released,
            "executed": self.executed,
            "outcomes": self.outcomes,
            "skipped_mailboxes": self.skipped_mailboxes,
        }


def mailbox_usage(db: Session, now: datetime) -> Counter:
    """Runs started in the last minute plus runs in flight, per (provider, mailbox)."""
    usage: Counter = Counter()
    cutoff = now - timedelta(minutes=1)
    recent = db.execute(
        select(DetectionJob.provider, DetectionRun.mailbox_address, func.count(DetectionRun.id))
        .join(DetectionJob, DetectionJob.id == DetectionRun.job_id)
        .where(DetectionRun.started_at >= cutoff, DetectionRun.mailbox_address.is_not(None))
        .group_by(DetectionJob.provider, DetectionRun.mailbox_address)
    ).all()
    for provider, mailbox, count in recent:
        usage[(provider, mailbox.lower())] += count
    in_flight = db.execute(
        select(DetectionJob.provider, DetectionJob.mailbox_address, func.count(DetectionJob.id))
        .where(DetectionJob.status == STATUS_EXECUTING)
        .group_by(DetectionJob.provider, DetectionJob.mailbox_address)
    ).all()
    for provider, mailbox, count in in_flight:
        usage[(provider, mailbox.lower())] += count
    return usage


def blocked_mailboxes(db: Session, now: datetime, usage: Counter | None = None) -> set[tuple[str, str]]:
    """Mailboxes that must not get another run now: unschedulable or out of budget."""
    blocked = CheckpointStore(db).unschedulable_mailboxes()
    limit = get_settings().mailbox_max_jobs_per_minute
    if limit > 0:
        usage = usage if usage is not None else mailbox_usage(db, now)
        for key, count in usage.items():
            if count >= limit:
                blocked.add(key)
    return blocked


async def _execute_leased(
    db: Session, job: DetectionJob, registry: ProviderRegistry
) -> ExecutionOutcome:
    try:
        provider = registry.get(job.provider, job.mailbox_address)
    except LookupError as exc:
        logger.error("No provider for job: job_id=%s provider=%s", job.id, job.provider)
        run = record_attempt_outcome(
            db,
            job,
            AttemptVerdict(
                kind=VERDICT_FATAL,
                started_at=utcnow(),
                error=str(exc),
                requires_manual_review=True,
                mailbox_address=job.mailbox_address,
            ),
        )
        return ExecutionOutcome(job.id, job.status, run.outcome, None, False, error=str(exc))
    return await execute_job(db, job, provider)


async def _execute_and_alert(
    db: Session, job: DetectionJob, registry: ProviderRegistry
) -> ExecutionOutcome:
    with alerting.deferred_alerts() as outbox:
        outcome = await _execute_leased(db, job, registry)
    if outbox:
        await alerting.send_deferred(db, outbox)
    return outcome


async def run_dispatch_cycle(
    db: Session,
    registry: ProviderRegistry,
    now: datetime | None = None,
    batch_size: int | None = None,
) -> DispatchSummary:
    """Promote, then lease and execute up to batch_size jobs one after another."""
    settings = get_settings()
    now = now or utcnow()
    batch_size = batch_size or settings.dispatch_batch_size
    summary = DispatchSummary()
    summary.released = release_stale_leases(db, now)
    summary.promoted = promote_due_jobs(db, now)

    usage = mailbox_usage(db, now)
    blocked = blocked_mailboxes(db, now, usage)
    summary.skipped_mailboxes = sorted(f"{p}:{m}" for p, m in blocked)
    limit = settings.mailbox_max_jobs_per_minute

    while summary.executed < batch_size:
        job = claim_next_job(db, now, blocked)
        if job is None:
            break
        key = (job.provider, job.mailbox_address.lower())
        usage[key] += 1
        if limit > 0 and usage[key] >= limit:
            blocked.add(key)

        outcome = await _execute_and_alert(db, job, registry)
        summary.executed += 1
        summary.outcomes[outcome.status] = summary.outcomes.get(outcome.status, 0) + 1

    logger.info(
        "Dispatch cycle complete: promoted=%d executed=%d released=%d blocked_mailboxes=%d",
        summary.promoted,
        summary.executed,
        summary.released,
        len(summary.skipped_mailboxes),
    )
    return summary


async def _worker(
    worker_id: int,
    registry: ProviderRegistry,
    session_factory: Callable[[], Session],
    stop: asyncio.Event,
    poll_interval: float,
) -> int:
    executed = 0
    while not stop.is_set():
        db = session_factory()
        job = None
        try:
            now = utcnow()
            promote_due_jobs(db, now)
            job = claim_next_job(db, now, blocked_mailboxes(db, now))
            if job is not None:
                outcome = await _execute_and_alert(db, job, registry)
                executed += 1
                logger.info(
                    "Worker finished job: worker=%d job_id=%s status=%s",
                    worker_id,
                    outcome.job_id,
                    outcome.status,
                )
        except Exception:
            logger.exception("Worker iteration failed: worker=%d", worker_id)
            db.rollback()
        finally:
            db.close()
        if job is None:
            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_interval)
            except TimeoutError:
                pass
        else:
            # Let sibling workers interleave between jobs
            await asyncio.sleep(0)
    return executed


async def run_worker_pool(
    registry: ProviderRegistry,
    session_factory: Callable[[], Session],
    stop: asyncio.Event,
    concurrency: int | None = None,
    poll_interval: float | None = None,
) -> int:
    """Run workers until stop is set. Returns the number of jobs executed."""
    settings = get_settings()
    concurrency = concurrency or settings.worker_concurrency
    poll_interval = settings.worker_poll_interval_seconds if poll_interval is None else poll_interval
    logger.info("Worker pool starting: concurrency=%d", concurrency)

    db = session_factory()
    try:
        release_stale_leases(db)
    finally:
        db.close()

    counts = await asyncio.gather(
        *(
            _worker(i, registry, session_factory, stop, poll_interval)
            for i in range(concurrency)
        )
    )
    total = sum(counts)
    logger.info("Worker pool stopped: jobs_executed=%d", total)
    return total
