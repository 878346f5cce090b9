"""Detection layer and quorum result schemas.

These are stored verbatim (model_dump(mode="json")) in DetectionRun.layer_results
and DetectionRun.quorum_result.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class DetectedReply(BaseModel):
    """A message a layer believes is a reply to the outbound message."""

    provider_message_id: str
    provider_thread_id: str | None = None
    from_address: str
    subject: str | None = None
    snippet: str | None = None
    received_at: datetime | None = None
    detected_alias: str | None = None


class LayerResult(BaseModel):
    """Outcome of one detection layer for one run.

    healthy=False means the layer could not query the provider (auth, timeout,
    quota, unexpected error); found is then not trusted by the quorum rule.
    """

    layer: str
    healthy: bool
    found: bool = False
    evidence: list[DetectedReply] = Field(default_factory=list)
    messages_scanned: int = 0
    queries_issued: list[str] = Field(default_factory=list)
    duration_ms: int = 0
    error: str | None = None
    # Classification of error: transient | rate_limited | authorization | history_gap | timeout | internal
    error_kind: str | None = None
    notes: str | None = None


class QuorumResult(BaseModel):
    quorum_met: bool
    reply_found: bool
    healthy_layers: list[str] = Field(default_factory=list)
    found_layers: list[str] = Field(default_factory=list)
    failed_layers: list[str] = Field(default_factory=list)
    # Layers that reported a reply while unhealthy; never trusted
    untrusted_found_layers: list[str] = Field(default_factory=list)
    threshold: int
    applicable: int
