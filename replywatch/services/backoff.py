"""Retry delay: min(base * 2^(attempt-1), cap) plus bounded jitter."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

from replywatch.config import get_settings


def base_delay_seconds(attempt: int, base: float, cap: float) -> float:
    """Un-jittered delay after the given (1-based) failed attempt."""
    exponent = max(attempt, 1) - 1
    # Avoid float overflow on large attempt numbers
    if exponent >= 63:
        return float(cap)
    return float(min(base * (2**exponent), cap))


def retry_delay_seconds(
    attempt: int,
    base: float | None = None,
    cap: float | None = None,
    jitter_ratio: float | None = None,
    rng: random.Random | None = None,
) -> float:
    """Delay before retrying after attempt failed.

    Jitter is uniform in [0, jitter_ratio * delay], clipped so the result never
    exceeds the un-jittered delay of the next attempt or the cap. The sequence
    of delays is therefore non-decreasing and a capped delay carries no jitter.
    """
    settings = get_settings()
    base = settings.retry_base_delay_seconds if base is None else base
    cap = settings.retry_max_delay_seconds if cap is None else cap
    jitter_ratio = settings.retry_jitter_ratio if jitter_ratio is None else jitter_ratio

    delay = base_delay_seconds(attempt, base, cap)
    next_delay = base_delay_seconds(attempt + 1, base, cap)
    # Attempt n never waits longer than attempt n+1 at its shortest, nor past cap
    jitter_span = min(delay * max(jitter_ratio, 0.0), next_delay - delay)
    jitter = (rng or random).uniform(0, jitter_span) if jitter_span > 0 else 0.0
    return delay + jitter


def next_retry_at(now: datetime, attempt: int, **kwargs) -> datetime:
    return now + timedelta(seconds=retry_delay_seconds(attempt, **kwargs))
