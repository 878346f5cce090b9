"""Message-ID lineage: messages whose In-Reply-To/References chain names the sent message."""

from __future__ import annotations

from replywatch.detection.base import DetectionContext, DetectionLayer, LayerTimer, unhealthy_result
from replywatch.detection.matching import match_reply
from replywatch.providers.base import ProviderError
from replywatch.schemas.detection import LayerResult


class MessageIdLineageLayer(DetectionLayer):
    """Survives clients that break provider threading but keep RFC 822 headers."""

    name = "message_id_lineage"

    def applies_to(self, ctx: DetectionContext) -> bool:
        return bool(ctx.outbound.rfc822_message_id)

    async def execute(self, ctx: DetectionContext) -> LayerResult:
        timer = LayerTimer()
        message_id = ctx.outbound.rfc822_message_id
        queries = [f"rfc822msgid:{message_id}"]
        try:
            messages = await ctx.provider.find_by_reference(message_id)
        except ProviderError as exc:
            return unhealthy_result(self.name, exc, timer, queries)

        evidence = []
        seen: set[str] = set()
        for message in messages:
            reply = match_reply(message, ctx)
            if reply is not None and reply.provider_message_id not in seen:
                seen.add(reply.provider_message_id)
                evidence.append(reply)
        return LayerResult(
            layer=self.name,
            healthy=True,
            found=bool(evidence),
            evidence=evidence,
            messages_scanned=len(messages),
            queries_issued=queries,
            duration_ms=timer.elapsed_ms,
        )
