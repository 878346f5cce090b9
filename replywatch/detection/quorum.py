"""Quorum rule over layer results.

Quorum is met when at least ``threshold`` applicable layers ran healthily.
A reply counts only when quorum is met and at least one healthy layer found
it; a "found" from an unhealthy layer is never trusted.
"""

from __future__ import annotations

from dataclasses import dataclass

from replywatch.config import get_settings
from replywatch.schemas.detection import LayerResult, QuorumResult


@dataclass(frozen=True)
class QuorumPolicy:
    """min_healthy wins when set; otherwise floor(n * fraction) + 1 (strict majority at 0.5)."""

    min_healthy: int | None = None
    fraction: float = 0.5

    @classmethod
    def from_settings(cls, settings=None) -> QuorumPolicy:
        settings = settings or get_settings()
        return cls(
            min_healthy=settings.quorum_min_healthy_layers,
            fraction=settings.quorum_fraction,
        )

    def threshold(self, applicable: int) -> int:
        if applicable <= 0:
            return 1
        if self.min_healthy is not None:
            return max(1, min(self.min_healthy, applicable))
        return min(int(applicable * self.fraction) + 1, applicable)


def evaluate_quorum(results: list[LayerResult], policy: QuorumPolicy | None = None) -> QuorumResult:
    policy = policy or QuorumPolicy()
    applicable = len(results)
    threshold = policy.threshold(applicable)

    healthy = [r.layer for r in results if r.healthy]
    failed = [r.layer for r in results if not r.healthy]
    found = [r.layer for r in results if r.healthy and r.found]
    untrusted = [r.layer for r in results if not r.healthy and r.found]

    quorum_met = applicable > 0 and len(healthy) >= threshold
    return QuorumResult(
        quorum_met=quorum_met,
        reply_found=quorum_met and bool(found),
        healthy_layers=healthy,
        found_layers=found,
        failed_layers=failed,
        untrusted_found_layers=untrusted,
        threshold=threshold,
        applicable=applicable,
    )
