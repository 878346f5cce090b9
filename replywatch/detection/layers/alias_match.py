"""Alias match: search mail from historical and generated alternate contact addresses."""

from __future__ import annotations

from replywatch.config import get_settings
from replywatch.detection.addresses import generate_alias_variants
from replywatch.detection.base import DetectionContext, DetectionLayer, LayerTimer, unhealthy_result
from replywatch.detection.matching import match_reply
from replywatch.providers.base import MessageQuery, ProviderError
from replywatch.schemas.detection import DetectedReply, LayerResult


def candidate_aliases(ctx: DetectionContext) -> list[str]:
    """Known aliases plus generated variants of every known address, minus the primary."""
    primary = ctx.contact_address.strip().lower()
    aliases: list[str] = []
    for addr in ctx.contact_addresses:
        for candidate in (addr, *generate_alias_variants(addr)):
            if candidate != primary and candidate not in aliases:
                aliases.append(candidate)
    return aliases


class AliasMatchLayer(DetectionLayer):
    name = "alias_match"

    def __init__(self, batch_size: int | None = None, page_size: int = 50) -> None:
        self.batch_size = batch_size or get_settings().alias_batch_size
        self.page_size = page_size

    async def execute(self, ctx: DetectionContext) -> LayerResult:
        timer = LayerTimer()
        aliases = candidate_aliases(ctx)
        queries: list[str] = []
        evidence: dict[str, DetectedReply] = {}
        scanned = 0

        for start in range(0, len(aliases), self.batch_size):
            batch = tuple(aliases[start : start + self.batch_size])
            query = MessageQuery(
                from_addresses=batch,
                to_address=ctx.outbound.mailbox_address,
                after=ctx.outbound.sent_at,
                in_inbox=True,
                max_results=self.page_size,
            )
            queries.append(query.describe())
            try:
                page = await ctx.provider.search_messages(query)
            except ProviderError as exc:
                return unhealthy_result(self.name, exc, timer, queries, scanned)
            scanned += len(page.messages)
            for message in page.messages:
                reply = match_reply(message, ctx, sender_addresses=batch)
                if reply is not None:
                    evidence.setdefault(reply.provider_message_id, reply)

        return LayerResult(
            layer=self.name,
            healthy=True,
            found=bool(evidence),
            evidence=list(evidence.values()),
            messages_scanned=scanned,
            queries_issued=queries,
            duration_ms=timer.elapsed_ms,
            notes=f"{len(aliases)} alias addresses searched",
        )
