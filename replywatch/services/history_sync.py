"""Mailbox history sync: the change-stream sweep run as its own job.

``schedule_history_sync_jobs`` queues one history_sync job per mailbox that
has watched messages and a change stream. The job drains a few pages of the
stream through the same checkpoint protocol as the history layer, then fans
the recorded candidates out: every watched message whose contact (or a known
alias) sent a candidate gets a ``scheduled`` check, which runs the full layer
set and quorum before anything is recorded as a reply.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from replywatch.config import get_settings
from replywatch.db.types import utcnow
from replywatch.detection.base import (
    ERROR_KIND_AUTHORIZATION,
    ERROR_KIND_HISTORY_GAP,
    LayerTimer,
    unhealthy_result,
)
from replywatch.detection.layers.history_scan import HistoryScanLayer, read_history_page
from replywatch.detection.registry import layer_names_for
from replywatch.models.contact import Contact, ContactAlias
from replywatch.models.detection_job import JOB_TYPE_SCHEDULED, DetectionJob
from replywatch.models.outbound_message import OutboundMessage
from replywatch.providers.base import MailboxProvider, ProviderError
from replywatch.schemas.detection import LayerResult
from replywatch.schemas.jobs import ScheduledPayload
from replywatch.services.candidate_store import HistoryCandidateStore
from replywatch.services.checkpoint_store import CheckpointStore
from replywatch.services.job_queue import create_history_sync_job, create_job

logger = logging.getLogger(__name__)

# Candidate-driven checks run ahead of the default priority
SCHEDULED_CHECK_PRIORITY = 3


@dataclass
class HistorySyncResult:
    layer_result: LayerResult
    pages: int = 0
    checks_queued: int = 0


def _watched_messages(now: datetime):
    settings = get_settings()
    window_start = now - timedelta(hours=settings.reconciliation_window_hours)
    return select(OutboundMessage).where(
        OutboundMessage.sent_at >= window_start,
        OutboundMessage.deleted_at.is_(None),
        OutboundMessage.reply_received.is_(False),
    )


def schedule_history_sync_jobs(
    db: Session, now: datetime | None = None, tenant_id: int | None = None
) -> list[DetectionJob]:
    """Queue a history sync for each schedulable mailbox with watched messages.

    Mailboxes whose provider has no change stream, and mailboxes paused or in
    an error state, are skipped. Returns only newly created jobs.
    """
    now = now or utcnow()
    watched = _watched_messages(now).subquery()
    stmt = select(
        watched.c.tenant_id, watched.c.provider, func.lower(watched.c.mailbox_address)
    ).distinct()
    if tenant_id is not None:
        stmt = stmt.where(watched.c.tenant_id == tenant_id)
    mailboxes = db.execute(stmt).all()

    store = CheckpointStore(db)
    created_jobs = []
    for mailbox_tenant, provider, mailbox in mailboxes:
        if HistoryScanLayer.name not in layer_names_for(provider):
            continue
        if not store.is_schedulable(provider, mailbox):
            logger.info("History sync skipped: provider=%s mailbox=%s unschedulable", provider, mailbox)
            continue
        job, created = create_history_sync_job(db, mailbox_tenant, provider, mailbox, scheduled_for=now)
        if created:
            created_jobs.append(job)
    logger.info(
        "History sync scheduling complete: mailboxes=%d created=%d", len(mailboxes), len(created_jobs)
    )
    return created_jobs


async def sync_mailbox(
    db: Session,
    job: DetectionJob,
    provider: MailboxProvider,
    *,
    store: CheckpointStore,
    candidates: HistoryCandidateStore,
    page_size: int | None = None,
    max_pages: int | None = None,
) -> HistorySyncResult:
    """Drain up to max_pages of the mailbox change stream, then fan out the candidates.

    Provider failures come back as an unhealthy LayerResult. History gaps reset
    the position and every non-authorization failure is counted on the
    checkpoint; authorization failures are left to the caller.
    """
    settings = get_settings()
    page_size = page_size or settings.history_page_size
    max_pages = max_pages or settings.history_sync_max_pages
    timer = LayerTimer()
    queries: list[str] = []
    scanned = 0
    pages = 0
    notes: list[str] = []

    try:
        while pages < max_pages:
            read = await read_history_page(
                provider,
                store,
                candidates,
                tenant_id=job.tenant_id,
                provider_name=job.provider,
                mailbox=job.mailbox_address,
                page_size=page_size,
                queries=queries,
            )
            pages += 1
            scanned += read.messages_scanned
            if read.initialized:
                notes.append(f"checkpoint initialized at {read.cursor}")
                break
            if read.race_lost:
                notes.append("checkpoint moved by another writer; left unchanged")
                break
            if not read.has_more:
                break
        else:
            notes.append("more changes pending")
    except ProviderError as exc:
        result = unhealthy_result(HistoryScanLayer.name, exc, timer, queries, scanned)
        if result.error_kind != ERROR_KIND_AUTHORIZATION:
            if result.error_kind == ERROR_KIND_HISTORY_GAP:
                logger.warning(
                    "History gap: provider=%s mailbox=%s error=%s",
                    job.provider,
                    job.mailbox_address,
                    exc,
                )
                store.reset_position(job.provider, job.mailbox_address)
            store.record_error(
                job.provider,
                job.mailbox_address,
                result.error or str(exc),
                tenant_id=job.tenant_id,
                job_id=job.id,
            )
        return HistorySyncResult(result, pages=pages)

    queued = fan_out_candidates(db, job.provider, job.mailbox_address, candidates)
    if queued:
        notes.append(f"{queued} checks queued")
    result = LayerResult(
        layer=HistoryScanLayer.name,
        healthy=True,
        found=False,
        messages_scanned=scanned,
        queries_issued=queries,
        duration_ms=timer.elapsed_ms,
        notes="; ".join(notes) or None,
    )
    return HistorySyncResult(result, pages=pages, checks_queued=queued)


def _senders_by_address(
    db: Session, provider: str, mailbox: str, now: datetime
) -> dict[str, list[OutboundMessage]]:
    """Watched messages in the mailbox keyed by every address their contact may reply from."""
    outbound_rows = db.scalars(
        _watched_messages(now).where(
            OutboundMessage.provider == provider,
            func.lower(OutboundMessage.mailbox_address) == mailbox,
        )
    ).all()
    if not outbound_rows:
        return {}
    contact_ids = {row.contact_id for row in outbound_rows}
    addresses: dict[int, set[str]] = defaultdict(set)
    for contact_id, email in db.execute(
        select(Contact.id, Contact.email).where(Contact.id.in_(contact_ids))
    ).all():
        addresses[contact_id].add(email.strip().lower())
    for contact_id, email in db.execute(
        select(ContactAlias.contact_id, ContactAlias.email).where(
            ContactAlias.contact_id.in_(contact_ids)
        )
    ).all():
        addresses[contact_id].add(email.strip().lower())

    by_address: dict[str, list[OutboundMessage]] = defaultdict(list)
    for row in outbound_rows:
        for address in addresses[row.contact_id]:
            by_address[address].append(row)
    return by_address


def _check_number(db: Session, outbound_message_id: int) -> int:
    previous = db.scalar(
        select(func.count(DetectionJob.id)).where(
            DetectionJob.outbound_message_id == outbound_message_id,
            DetectionJob.job_type == JOB_TYPE_SCHEDULED,
        )
    )
    return (previous or 0) + 1


def fan_out_candidates(
    db: Session,
    provider: str,
    mailbox_address: str,
    candidates: HistoryCandidateStore,
    now: datetime | None = None,
) -> int:
    """Queue a scheduled check for each watched message a stored candidate may answer.

    The match here is by sender only; the check itself applies the full reply
    rules. A message that already has an active job keeps that job. Returns
    the number of jobs created.
    """
    now = now or utcnow()
    mailbox = mailbox_address.strip().lower()
    pending = candidates.pending_fan_out(provider, mailbox)
    if not pending:
        return 0
    by_address = _senders_by_address(db, provider, mailbox, now)

    queued = 0
    for candidate in pending:
        for outbound in by_address.get(candidate.from_address or "", []):
            if candidate.received_at is not None and candidate.received_at <= outbound.sent_at:
                continue
            _job, created = create_job(
                db,
                outbound.id,
                JOB_TYPE_SCHEDULED,
                scheduled_for=now,
                priority=SCHEDULED_CHECK_PRIORITY,
                payload=ScheduledPayload(
                    check_number=_check_number(db, outbound.id),
                    candidate_message_id=candidate.provider_message_id,
                ),
            )
            if created:
                queued += 1
    candidates.mark_fanned_out([c.id for c in pending], now)
    if queued:
        logger.info(
            "History candidates fanned out: provider=%s mailbox=%s candidates=%d checks=%d",
            provider,
            mailbox,
            len(pending),
            queued,
        )
    return queued
