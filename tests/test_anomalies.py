"""Tests for anomaly listing, resolution and quorum-failure streaks."""

from __future__ import annotations

from datetime import timedelta

import pytest

from replywatch.db.types import utcnow
from replywatch.errors import NotFoundError, ReviewStateError
from replywatch.services.anomalies import (
    list_anomalies,
    raise_anomaly,
    recent_quorum_failure_streak,
    resolve_anomaly,
)
from replywatch.services.job_queue import (
    VERDICT_ERROR,
    VERDICT_NO_QUORUM,
    AttemptVerdict,
    create_job,
    record_attempt_outcome,
)
from tests.factories import lease_next, make_contact, make_outbound


def test_list_filters_by_status_and_severity(db) -> None:
    low = raise_anomaly(db, "layer_timeout", "low", tenant_id=1)
    medium = raise_anomaly(db, "history_gap", "medium", tenant_id=1)
    resolve_anomaly(db, low.id)

    assert [a.id for a in list_anomalies(db)] == [medium.id, low.id]
    assert [a.id for a in list_anomalies(db, status="open")] == [medium.id]
    assert [a.id for a in list_anomalies(db, severity="low")] == [low.id]


def test_resolve_sets_resolution_and_timestamp(db) -> None:
    anomaly = raise_anomaly(db, "missed_reply", "low", tenant_id=1)
    resolved = resolve_anomaly(db, anomaly.id, resolution="reply was in spam")
    assert resolved.status == "resolved"
    assert resolved.resolution == "reply was in spam"
    assert resolved.resolved_at is not None


def test_investigating_can_still_be_resolved(db) -> None:
    anomaly = raise_anomaly(db, "missed_reply", "low", tenant_id=1)
    assert resolve_anomaly(db, anomaly.id, "investigating").resolved_at is None
    assert resolve_anomaly(db, anomaly.id, "wont_fix").status == "wont_fix"


def test_closed_anomaly_cannot_be_resolved_again(db) -> None:
    anomaly = raise_anomaly(db, "missed_reply", "low", tenant_id=1)
    resolve_anomaly(db, anomaly.id)
    with pytest.raises(ReviewStateError):
        resolve_anomaly(db, anomaly.id)


@pytest.mark.parametrize("status", ["open", "closed"])
def test_invalid_resolution_status(db, status: str) -> None:
    anomaly = raise_anomaly(db, "missed_reply", "low", tenant_id=1)
    with pytest.raises(ValueError):
        resolve_anomaly(db, anomaly.id, status)


def test_resolve_unknown_anomaly(db) -> None:
    with pytest.raises(NotFoundError):
        resolve_anomaly(db, 404)


def test_quorum_failure_streak_counts_latest_runs(db) -> None:
    outbound = make_outbound(db, make_contact(db))
    job, _ = create_job(db, outbound.id, "on_send", scheduled_for=utcnow())
    kinds = [VERDICT_NO_QUORUM, VERDICT_ERROR, VERDICT_NO_QUORUM, VERDICT_NO_QUORUM]
    for hours, kind in enumerate(kinds, start=1):
        leased = lease_next(db, utcnow() + timedelta(hours=hours * 2))
        record_attempt_outcome(db, leased, AttemptVerdict(kind=kind, started_at=utcnow(), error="x"))

    assert recent_quorum_failure_streak(db, job) == 2
