"""History scan: incremental read of the mailbox change stream from its checkpoint.

Protocol per page (``read_history_page``, shared with the history sync job):

1. Read the checkpoint. None yet: initialize it at the provider's current
   cursor; nothing is scanned.
2. Pull one bounded page of changes after the stored position.
3. Record every message of the page in the candidate store, matched or not.
   The checkpoint is per mailbox while a job watches one contact, so the
   page may hold replies for other watched messages.
4. Only then advance the checkpoint with a compare-and-set on the position
   read in step 1. Losing that race still counts as healthy: the range was
   recorded and the other writer owns the checkpoint.

A crash between 2 and 4 leaves the old position in place and the range is
re-read next time; candidate recording is idempotent, so nothing is lost or
doubled. The layer's evidence comes from the stored candidates, which also
covers pages read by other jobs for the same mailbox.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from replywatch.config import get_settings
from replywatch.detection.base import (
    ERROR_KIND_AUTHORIZATION,
    ERROR_KIND_HISTORY_GAP,
    DetectionContext,
    DetectionLayer,
    LayerTimer,
    unhealthy_result,
)
from replywatch.detection.matching import match_reply
from replywatch.providers.base import MailboxProvider, ProviderError
from replywatch.schemas.detection import DetectedReply, LayerResult

if TYPE_CHECKING:
    from replywatch.services.candidate_store import HistoryCandidateStore
    from replywatch.services.checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryPageRead:
    """What one pass of the checkpoint protocol did."""

    cursor: str
    messages_scanned: int = 0
    initialized: bool = False
    advanced: bool = False
    race_lost: bool = False
    has_more: bool = False


async def read_history_page(
    provider: MailboxProvider,
    store: CheckpointStore,
    candidates: HistoryCandidateStore,
    *,
    tenant_id: int,
    provider_name: str,
    mailbox: str,
    page_size: int,
    queries: list[str],
) -> HistoryPageRead:
    """Run steps 1-4 once. Provider errors propagate; queries is appended as calls are made."""
    checkpoint = store.get(provider_name, mailbox)
    if checkpoint is None or checkpoint.last_position is None:
        queries.append("history:head")
        cursor = await provider.get_current_cursor()
        store.initialize(tenant_id, provider_name, mailbox, cursor)
        return HistoryPageRead(cursor=cursor, initialized=True)

    position = checkpoint.last_position
    queries.append(f"history:{position} max:{page_size}")
    page = await provider.list_changes(position, page_size)

    candidates.record(tenant_id, provider_name, mailbox, page.messages)

    advanced = race_lost = False
    if page.new_cursor != position:
        advanced = store.advance(provider_name, mailbox, position, page.new_cursor)
        race_lost = not advanced
    else:
        store.touch(provider_name, mailbox, position)
    return HistoryPageRead(
        cursor=page.new_cursor,
        messages_scanned=len(page.messages),
        advanced=advanced,
        race_lost=race_lost,
        has_more=page.has_more,
    )


class HistoryScanLayer(DetectionLayer):
    name = "history_scan"

    def __init__(self, page_size: int | None = None) -> None:
        self.page_size = page_size or get_settings().history_page_size

    def applies_to(self, ctx: DetectionContext) -> bool:
        return ctx.checkpoint_store is not None and ctx.candidate_store is not None

    async def execute(self, ctx: DetectionContext) -> LayerResult:
        timer = LayerTimer()
        queries: list[str] = []
        try:
            read = await read_history_page(
                ctx.provider,
                ctx.checkpoint_store,
                ctx.candidate_store,
                tenant_id=ctx.outbound.tenant_id,
                provider_name=ctx.outbound.provider,
                mailbox=ctx.outbound.mailbox_address,
                page_size=self.page_size,
                queries=queries,
            )
        except ProviderError as exc:
            return self._failed(ctx, exc, timer, queries)

        evidence = self._stored_replies(ctx)

        notes = []
        if read.initialized:
            notes.append(f"checkpoint initialized at {read.cursor}")
        if read.race_lost:
            notes.append("checkpoint moved by another writer; left unchanged")
        if read.has_more:
            notes.append("more changes pending")

        return LayerResult(
            layer=self.name,
            healthy=True,
            found=bool(evidence),
            evidence=evidence,
            messages_scanned=read.messages_scanned,
            queries_issued=queries,
            duration_ms=timer.elapsed_ms,
            notes="; ".join(notes) or None,
        )

    def _stored_replies(self, ctx: DetectionContext) -> list[DetectedReply]:
        stored = ctx.candidate_store.for_senders(
            ctx.outbound.provider,
            ctx.outbound.mailbox_address,
            ctx.contact_addresses,
            after=ctx.outbound.sent_at,
        )
        evidence: list[DetectedReply] = []
        seen: set[str] = set()
        for message in stored:
            reply = match_reply(message, ctx)
            if reply is not None and reply.provider_message_id not in seen:
                seen.add(reply.provider_message_id)
                evidence.append(reply)
        return evidence

    def _failed(
        self, ctx: DetectionContext, exc: ProviderError, timer: LayerTimer, queries: list[str]
    ) -> LayerResult:
        result = unhealthy_result(self.name, exc, timer, queries)
        store = ctx.checkpoint_store
        provider_name = ctx.outbound.provider
        mailbox = ctx.outbound.mailbox_address
        if result.error_kind == ERROR_KIND_AUTHORIZATION:
            # Token expiry is handled once per job by the executor
            return result
        if result.error_kind == ERROR_KIND_HISTORY_GAP:
            logger.warning(
                "History gap: provider=%s mailbox=%s error=%s", provider_name, mailbox, exc
            )
            store.reset_position(provider_name, mailbox)
        store.record_error(
            provider_name,
            mailbox,
            result.error or str(exc),
            tenant_id=ctx.outbound.tenant_id,
            job_id=ctx.job_id,
        )
        return result
