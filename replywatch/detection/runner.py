"""Concurrent layer execution with a per-layer timeout."""

from __future__ import annotations

import asyncio
import logging

from replywatch.config import get_settings
from replywatch.detection.base import (
    ERROR_KIND_INTERNAL,
    ERROR_KIND_TIMEOUT,
    DetectionContext,
    DetectionLayer,
)
from replywatch.schemas.detection import LayerResult

logger = logging.getLogger(__name__)


async def _run_one(layer: DetectionLayer, ctx: DetectionContext, timeout: float) -> LayerResult:
    try:
        return await asyncio.wait_for(layer.execute(ctx), timeout=timeout)
    except TimeoutError:
        logger.warning(
            "Layer timed out: layer=%s job_id=%s timeout=%ss", layer.name, ctx.job_id, timeout
        )
        return LayerResult(
            layer=layer.name,
            healthy=False,
            found=False,
            duration_ms=int(timeout * 1000),
            error=f"timeout after {timeout:g}s",
            error_kind=ERROR_KIND_TIMEOUT,
        )
    except Exception as exc:
        logger.exception("Layer crashed: layer=%s job_id=%s", layer.name, ctx.job_id)
        return LayerResult(
            layer=layer.name,
            healthy=False,
            found=False,
            error=f"{type(exc).__name__}: {exc}",
            error_kind=ERROR_KIND_INTERNAL,
        )


async def run_layers(
    layers: list[DetectionLayer],
    ctx: DetectionContext,
    timeout: float | None = None,
) -> list[LayerResult]:
    """Run layers concurrently; results keep the order of layers. Never raises for a layer."""
    if timeout is None:
        timeout = get_settings().layer_timeout_seconds
    return list(await asyncio.gather(*(_run_one(layer, ctx, timeout) for layer in layers)))
