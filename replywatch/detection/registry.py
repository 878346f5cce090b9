"""Fixed per-provider layer registry."""

from __future__ import annotations

from replywatch.detection.base import DetectionContext, DetectionLayer
from replywatch.detection.layers import (
    AliasMatchLayer,
    HistoryScanLayer,
    InboxSweepLayer,
    MessageIdLineageLayer,
    ThreadContinuityLayer,
)

LAYER_CLASSES: dict[str, type[DetectionLayer]] = {
    cls.name: cls
    for cls in (
        ThreadContinuityLayer,
        MessageIdLineageLayer,
        InboxSweepLayer,
        HistoryScanLayer,
        AliasMatchLayer,
    )
}

ALL_LAYERS = tuple(LAYER_CLASSES)

PROVIDER_LAYERS: dict[str, tuple[str, ...]] = {
    "gmail": ALL_LAYERS,
    "outlook": ALL_LAYERS,
    # Yahoo exposes no stable thread id and no change stream
    "yahoo": ("message_id_lineage", "inbox_sweep", "alias_match"),
}
DEFAULT_LAYERS: tuple[str, ...] = ("inbox_sweep", "alias_match")


def layer_names_for(provider: str) -> tuple[str, ...]:
    return PROVIDER_LAYERS.get(provider.lower(), DEFAULT_LAYERS)


def layers_for(provider: str) -> list[DetectionLayer]:
    """Fresh layer instances registered for provider, in registry order."""
    return [LAYER_CLASSES[name]() for name in layer_names_for(provider)]


def applicable_layers(ctx: DetectionContext) -> list[DetectionLayer]:
    """Registered layers that have what they need for this outbound message."""
    return [layer for layer in layers_for(ctx.outbound.provider) if layer.applies_to(ctx)]
