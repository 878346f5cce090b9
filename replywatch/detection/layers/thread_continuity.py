"""Thread continuity: replies inside the provider's conversation of the sent message."""

from __future__ import annotations

from replywatch.detection.base import DetectionContext, DetectionLayer, LayerTimer, unhealthy_result
from replywatch.detection.matching import match_reply
from replywatch.providers.base import ProviderError
from replywatch.schemas.detection import LayerResult


class ThreadContinuityLayer(DetectionLayer):
    name = "thread_continuity"

    def applies_to(self, ctx: DetectionContext) -> bool:
        return bool(ctx.outbound.provider_thread_id)

    async def execute(self, ctx: DetectionContext) -> LayerResult:
        timer = LayerTimer()
        thread_id = ctx.outbound.provider_thread_id
        queries = [f"thread:{thread_id}"]
        try:
            messages = await ctx.provider.get_thread(thread_id)
        except ProviderError as exc:
            return unhealthy_result(self.name, exc, timer, queries)

        evidence = [r for r in (match_reply(m, ctx) for m in messages) if r is not None]
        return LayerResult(
            layer=self.name,
            healthy=True,
            found=bool(evidence),
            evidence=evidence,
            messages_scanned=len(messages),
            queries_issued=queries,
            duration_ms=timer.elapsed_ms,
        )
