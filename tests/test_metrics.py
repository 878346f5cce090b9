"""Tests for metrics rollups."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select

from replywatch.db.types import utcnow
from replywatch.models.anomaly import Anomaly
from replywatch.models.metrics_snapshot import MetricsSnapshot
from replywatch.schemas.detection import LayerResult, QuorumResult
from replywatch.services.job_queue import (
    VERDICT_ERROR,
    VERDICT_VERIFIED,
    AttemptVerdict,
    create_job,
    record_attempt_outcome,
)
from replywatch.services.metrics import percentile, period_bounds, run_metrics_rollup
from tests.factories import lease_next, make_contact, make_outbound

WEDNESDAY = datetime(2024, 5, 15, 10, 37, 12, tzinfo=UTC)


@pytest.mark.parametrize(
    "period_type, start, end",
    [
        ("hourly", datetime(2024, 5, 15, 9, tzinfo=UTC), datetime(2024, 5, 15, 10, tzinfo=UTC)),
        ("daily", datetime(2024, 5, 14, tzinfo=UTC), datetime(2024, 5, 15, tzinfo=UTC)),
        ("weekly", datetime(2024, 5, 6, tzinfo=UTC), datetime(2024, 5, 13, tzinfo=UTC)),
    ],
)
def test_period_bounds_cover_last_closed_period(period_type, start, end) -> None:
    assert period_bounds(period_type, WEDNESDAY) == (start, end)


def test_period_bounds_invalid() -> None:
    with pytest.raises(ValueError):
        period_bounds("monthly", WEDNESDAY)


@pytest.mark.parametrize(
    "values, pct, expected",
    [
        ([], 50, None),
        ([7], 95, 7),
        ([40, 10, 30, 20], 50, 20),
        (list(range(1, 101)), 50, 50),
        (list(range(1, 101)), 95, 95),
    ],
)
def test_percentile_nearest_rank(values, pct, expected) -> None:
    assert percentile(values, pct) == expected


@pytest.fixture
def last_hour(db):
    """One verified and one retried attempt completed inside the last closed hour."""
    now = utcnow()
    start, _end = period_bounds("hourly", now)
    at = start + timedelta(minutes=10)
    contact = make_contact(db)
    verified_outbound = make_outbound(db, contact)
    retried_outbound = make_outbound(
        db, contact, provider_message_id="m-out-2", thread_id="t-2", rfc822_message_id=None
    )
    create_job(db, verified_outbound.id, "on_send", scheduled_for=start)
    create_job(db, retried_outbound.id, "on_send", scheduled_for=start)

    results = [
        LayerResult(layer="thread_continuity", healthy=True, duration_ms=40),
        LayerResult(layer="inbox_sweep", healthy=False, error="503", duration_ms=10),
    ]
    verified = lease_next(db, at)
    record_attempt_outcome(
        db,
        verified,
        AttemptVerdict(
            kind=VERDICT_VERIFIED,
            started_at=at - timedelta(seconds=2),
            layer_results=results,
            quorum=QuorumResult(
                quorum_met=True,
                reply_found=False,
                healthy_layers=["thread_continuity"],
                failed_layers=["inbox_sweep"],
                threshold=1,
                applicable=2,
            ),
        ),
        now=at,
    )
    retried = lease_next(db, at)
    record_attempt_outcome(
        db,
        retried,
        AttemptVerdict(kind=VERDICT_ERROR, started_at=at - timedelta(seconds=4), error="503"),
        now=at,
    )
    return now


def test_rollup_writes_global_and_tenant_snapshots(db, last_hour) -> None:
    snapshots = run_metrics_rollup(db, "hourly", now=last_hour)

    assert [s.tenant_id for s in snapshots] == [None, 1]
    snapshot = snapshots[0]
    assert snapshot.total_jobs_processed == 2
    assert snapshot.successful_jobs == 1
    assert snapshot.retried_jobs == 1
    assert snapshot.failed_jobs == 0
    assert snapshot.quorum_failure_count == 1
    assert snapshot.avg_layers_healthy == 0.5
    assert snapshot.avg_processing_time_ms == 3000
    assert snapshot.p50_processing_time_ms == 2000
    assert snapshot.p95_processing_time_ms == 4000
    assert snapshot.layer_health_stats == {
        "inbox_sweep": {
            "runs_total": 1,
            "runs_healthy": 0,
            "found_count": 0,
            "error_count": 1,
            "avg_duration_ms": 10,
        },
        "thread_continuity": {
            "runs_total": 1,
            "runs_healthy": 1,
            "found_count": 0,
            "error_count": 0,
            "avg_duration_ms": 40,
        },
    }


def test_rollup_is_write_once(db, last_hour) -> None:
    first = run_metrics_rollup(db, "hourly", now=last_hour)
    second = run_metrics_rollup(db, "hourly", now=last_hour)

    assert [s.id for s in second] == [s.id for s in first]
    assert db.scalar(select(func.count(MetricsSnapshot.id))) == 2


def test_empty_period_still_writes_global_snapshot(db) -> None:
    [snapshot] = run_metrics_rollup(db, "daily")
    assert snapshot.tenant_id is None
    assert snapshot.total_jobs_processed == 0
    assert snapshot.avg_processing_time_ms is None
    assert snapshot.layer_health_stats == {}


def test_rollup_failure_is_recorded_not_raised(db, monkeypatch) -> None:
    def broken(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr("replywatch.services.metrics.write_snapshot", broken)

    assert run_metrics_rollup(db, "hourly") == []
    anomaly = db.scalar(select(Anomaly))
    assert (anomaly.anomaly_type, anomaly.severity) == ("metrics_failure", "medium")
    assert anomaly.tenant_id is None


def test_rollup_rejects_unknown_period(db) -> None:
    with pytest.raises(ValueError):
        run_metrics_rollup(db, "monthly")
