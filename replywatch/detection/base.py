"""Detection layer interface and shared execution context.

Every layer implements ``async execute(ctx) -> LayerResult``. Provider
failures are expected and are returned as ``healthy=False`` results; a layer
never signals a normal failure mode by raising.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from replywatch.providers.base import (
    AuthorizationError,
    CursorExpiredError,
    MailboxProvider,
    ProviderError,
    RateLimitedError,
)
from replywatch.schemas.detection import LayerResult

if TYPE_CHECKING:
    from replywatch.services.candidate_store import HistoryCandidateStore
    from replywatch.services.checkpoint_store import CheckpointStore

ERROR_KIND_TRANSIENT = "transient"
ERROR_KIND_RATE_LIMITED = "rate_limited"
ERROR_KIND_AUTHORIZATION = "authorization"
ERROR_KIND_HISTORY_GAP = "history_gap"
ERROR_KIND_TIMEOUT = "timeout"
ERROR_KIND_INTERNAL = "internal"


@dataclass(frozen=True)
class OutboundRef:
    """Snapshot of the outbound message a job watches."""

    id: int
    tenant_id: int
    provider: str
    mailbox_address: str
    subject: str
    sent_at: datetime
    provider_message_id: str | None = None
    provider_thread_id: str | None = None
    rfc822_message_id: str | None = None


@dataclass(frozen=True)
class DetectionContext:
    """Everything a layer may read. Layers must not mutate shared state through it,
    except the history layer, which records candidates and commits its checkpoint."""

    job_id: int
    outbound: OutboundRef
    contact_address: str
    known_aliases: tuple[str, ...]
    provider: MailboxProvider
    checkpoint_store: CheckpointStore | None = None
    candidate_store: HistoryCandidateStore | None = None

    @property
    def contact_addresses(self) -> tuple[str, ...]:
        """Primary address first, then aliases, de-duplicated, lower-cased."""
        seen: list[str] = []
        for addr in (self.contact_address, *self.known_aliases):
            a = addr.strip().lower()
            if a and a not in seen:
                seen.append(a)
        return tuple(seen)


class DetectionLayer(ABC):
    """A single, independent reply-detection strategy."""

    name: str = ""

    @abstractmethod
    async def execute(self, ctx: DetectionContext) -> LayerResult:
        """Look for a reply. Must be read-only against the provider."""
        ...

    def applies_to(self, ctx: DetectionContext) -> bool:
        """Whether the outbound message has the identifiers this layer needs."""
        return True


class LayerTimer:
    """Elapsed-time helper for duration_ms."""

    def __init__(self) -> None:
        self._start = time.perf_counter()

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._start) * 1000)


def classify_provider_error(exc: ProviderError) -> str:
    if isinstance(exc, AuthorizationError):
        return ERROR_KIND_AUTHORIZATION
    if isinstance(exc, CursorExpiredError):
        return ERROR_KIND_HISTORY_GAP
    if isinstance(exc, RateLimitedError):
        return ERROR_KIND_RATE_LIMITED
    return ERROR_KIND_TRANSIENT


def unhealthy_result(
    layer: str,
    exc: BaseException,
    timer: LayerTimer,
    queries: list[str],
    messages_scanned: int = 0,
) -> LayerResult:
    """LayerResult for a layer that could not complete its queries."""
    if isinstance(exc, ProviderError):
        kind = classify_provider_error(exc)
    else:
        kind = ERROR_KIND_INTERNAL
    return LayerResult(
        layer=layer,
        healthy=False,
        found=False,
        messages_scanned=messages_scanned,
        queries_issued=queries,
        duration_ms=timer.elapsed_ms,
        error=f"{type(exc).__name__}: {exc}",
        error_kind=kind,
    )
