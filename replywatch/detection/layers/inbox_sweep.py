"""Inbox sweep: header search for mail from the contact since the send, ignoring threading."""

from __future__ import annotations

from replywatch.config import get_settings
from replywatch.detection.base import DetectionContext, DetectionLayer, LayerTimer, unhealthy_result
from replywatch.detection.matching import match_reply
from replywatch.providers.base import MessageQuery, ProviderError
from replywatch.schemas.detection import DetectedReply, LayerResult


class InboxSweepLayer(DetectionLayer):
    name = "inbox_sweep"

    def __init__(self, max_pages: int | None = None, page_size: int = 50) -> None:
        self.max_pages = max_pages or get_settings().inbox_sweep_max_pages
        self.page_size = page_size

    async def execute(self, ctx: DetectionContext) -> LayerResult:
        timer = LayerTimer()
        query = MessageQuery(
            from_addresses=ctx.contact_addresses,
            to_address=ctx.outbound.mailbox_address,
            after=ctx.outbound.sent_at,
            in_inbox=True,
            max_results=self.page_size,
        )
        queries: list[str] = []
        evidence: dict[str, DetectedReply] = {}
        scanned = 0
        page_token: str | None = None
        truncated = False

        for page_number in range(self.max_pages):
            queries.append(query.describe() + (f" page:{page_token}" if page_token else ""))
            try:
                page = await ctx.provider.search_messages(query, page_token=page_token)
            except ProviderError as exc:
                return unhealthy_result(self.name, exc, timer, queries, scanned)
            scanned += len(page.messages)
            for message in page.messages:
                reply = match_reply(message, ctx)
                if reply is not None:
                    evidence.setdefault(reply.provider_message_id, reply)
            page_token = page.next_page_token
            if not page_token:
                break
            if page_number == self.max_pages - 1:
                truncated = True

        return LayerResult(
            layer=self.name,
            healthy=True,
            found=bool(evidence),
            evidence=list(evidence.values()),
            messages_scanned=scanned,
            queries_issued=queries,
            duration_ms=timer.elapsed_ms,
            notes=f"stopped after {self.max_pages} pages" if truncated else None,
        )
