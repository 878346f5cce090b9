"""Periodic detection metrics rollups.

Each closed period (hour, day, ISO week) is aggregated once per tenant plus
once globally (tenant_id NULL). Snapshots are write-once: a rerun for an
already written period returns the stored row unchanged.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replywatch.db.types import utcnow
from replywatch.models.anomaly import ANOMALY_METRICS_FAILURE, SEVERITY_MEDIUM, Anomaly
from replywatch.models.dead_letter import DeadLetterEntry
from replywatch.models.detection_job import (
    JOB_TYPE_RECONCILIATION,
    STATUS_EXECUTING,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_VERIFIED,
    DetectionJob,
)
from replywatch.models.detection_run import OUTCOME_FAILED, OUTCOME_SUCCESS, DetectionRun
from replywatch.models.metrics_snapshot import PERIOD_TYPES, MetricsSnapshot
from replywatch.models.reply import Reply
from replywatch.services.anomalies import raise_anomaly

logger = logging.getLogger(__name__)


def period_bounds(period_type: str, now: datetime) -> tuple[datetime, datetime]:
    """Start and end of the most recent fully closed period before now."""
    if period_type == "hourly":
        end = now.replace(minute=0, second=0, microsecond=0)
        return end - timedelta(hours=1), end
    if period_type == "daily":
        end = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return end - timedelta(days=1), end
    if period_type == "weekly":
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        end = today - timedelta(days=today.weekday())
        return end - timedelta(days=7), end
    raise ValueError(f"Invalid period_type: {period_type}")


def percentile(values: list[int], pct: float) -> int | None:
    """Nearest-rank percentile of values (0 < pct <= 100)."""
    if not values:
        return None
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


def _layer_health_stats(runs: list[DetectionRun]) -> dict[str, dict]:
    totals: dict[str, dict] = defaultdict(
        lambda: {"runs_total": 0, "runs_healthy": 0, "found_count": 0, "error_count": 0, "_ms": 0}
    )
    for run in runs:
        for result in run.layer_results or []:
            stats = totals[result.get("layer", "unknown")]
            stats["runs_total"] += 1
            if result.get("healthy"):
                stats["runs_healthy"] += 1
            else:
                stats["error_count"] += 1
            if result.get("healthy") and result.get("found"):
                stats["found_count"] += 1
            stats["_ms"] += int(result.get("duration_ms") or 0)
    out = {}
    for layer, stats in sorted(totals.items()):
        total_ms = stats.pop("_ms")
        stats["avg_duration_ms"] = round(total_ms / stats["runs_total"]) if stats["runs_total"] else 0
        out[layer] = stats
    return out


def _retried_jobs(db: Session, start: datetime, end: datetime, tenant_id: int | None) -> int:
    """Jobs sent back to pending after a failed attempt in [start, end)."""
    stmt = (
        select(func.count(func.distinct(DetectionRun.job_id)))
        .join(DetectionJob, DetectionJob.id == DetectionRun.job_id)
        .where(
            DetectionRun.completed_at >= start,
            DetectionRun.completed_at < end,
            DetectionRun.from_status == STATUS_FAILED,
            DetectionRun.to_status == STATUS_PENDING,
        )
    )
    if tenant_id is not None:
        stmt = stmt.where(DetectionJob.tenant_id == tenant_id)
    return db.scalar(stmt) or 0


def compute_snapshot(
    db: Session,
    period_type: str,
    start: datetime,
    end: datetime,
    tenant_id: int | None = None,
) -> MetricsSnapshot:
    """Aggregate runs, replies, dead letters and anomalies in [start, end). Not persisted."""
    stmt = (
        select(DetectionRun, DetectionJob.job_type)
        .join(DetectionJob, DetectionJob.id == DetectionRun.job_id)
        .where(
            DetectionRun.completed_at >= start,
            DetectionRun.completed_at < end,
            DetectionRun.from_status == STATUS_EXECUTING,
        )
    )
    if tenant_id is not None:
        stmt = stmt.where(DetectionJob.tenant_id == tenant_id)
    rows = db.execute(stmt).all()
    runs = [run for run, _ in rows]

    durations = [run.duration_ms for run in runs if run.duration_ms is not None]
    healthy_counts = [len((run.quorum_result or {}).get("healthy_layers", [])) for run in runs]

    def _count(model, ts_column, *extra):
        q = select(func.count(model.id)).where(ts_column >= start, ts_column < end, *extra)
        if tenant_id is not None:
            q = q.where(model.tenant_id == tenant_id)
        return db.scalar(q) or 0

    return MetricsSnapshot(
        tenant_id=tenant_id,
        period_type=period_type,
        period_start=start,
        period_end=end,
        total_jobs_processed=len({run.job_id for run in runs}),
        successful_jobs=len(
            {run.job_id for run in runs if run.outcome == OUTCOME_SUCCESS and run.to_status == STATUS_VERIFIED}
        ),
        failed_jobs=sum(1 for run in runs if run.outcome == OUTCOME_FAILED),
        retried_jobs=_retried_jobs(db, start, end, tenant_id),
        dead_lettered_jobs=_count(DeadLetterEntry, DeadLetterEntry.moved_at),
        replies_found=_count(Reply, Reply.created_at),
        missed_replies_caught=sum(
            1
            for run, job_type in rows
            if job_type == JOB_TYPE_RECONCILIATION and run.reply_found and run.to_status == STATUS_VERIFIED
        ),
        quorum_failure_count=sum(
            1 for run in runs if not (run.quorum_result or {}).get("quorum_met", False)
        ),
        avg_layers_healthy=(
            round(sum(healthy_counts) / len(healthy_counts), 2) if healthy_counts else None
        ),
        layer_health_stats=_layer_health_stats(runs),
        avg_processing_time_ms=round(sum(durations) / len(durations)) if durations else None,
        p50_processing_time_ms=percentile(durations, 50),
        p95_processing_time_ms=percentile(durations, 95),
        anomaly_count=_count(Anomaly, Anomaly.created_at),
    )


def _existing(db: Session, period_type: str, start: datetime, tenant_id: int | None):
    stmt = select(MetricsSnapshot).where(
        MetricsSnapshot.period_type == period_type, MetricsSnapshot.period_start == start
    )
    if tenant_id is None:
        stmt = stmt.where(MetricsSnapshot.tenant_id.is_(None))
    else:
        stmt = stmt.where(MetricsSnapshot.tenant_id == tenant_id)
    return db.scalar(stmt)


def write_snapshot(
    db: Session,
    period_type: str,
    start: datetime,
    end: datetime,
    tenant_id: int | None = None,
) -> tuple[MetricsSnapshot, bool]:
    """Persist the period's snapshot unless it exists. Returns (snapshot, created)."""
    existing = _existing(db, period_type, start, tenant_id)
    if existing is not None:
        return existing, False
    snapshot = compute_snapshot(db, period_type, start, end, tenant_id)
    db.add(snapshot)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _existing(db, period_type, start, tenant_id)
        if existing is None:
            raise
        return existing, False
    return snapshot, True


def run_metrics_rollup(
    db: Session, period_type: str = "hourly", now: datetime | None = None
) -> list[MetricsSnapshot]:
    """Write the global and per-tenant snapshots of the last closed period.

    A failure is recorded as a metrics_failure anomaly and an empty list is
    returned; it never propagates to the caller.
    """
    if period_type not in PERIOD_TYPES:
        raise ValueError(f"Invalid period_type: {period_type}")
    start, end = period_bounds(period_type, now or utcnow())
    try:
        tenants = db.scalars(
            select(DetectionJob.tenant_id)
            .join(DetectionRun, DetectionRun.job_id == DetectionJob.id)
            .where(DetectionRun.completed_at >= start, DetectionRun.completed_at < end)
            .distinct()
        ).all()
        snapshots = []
        created_count = 0
        for tenant_id in [None, *sorted(tenants)]:
            snapshot, created = write_snapshot(db, period_type, start, end, tenant_id)
            snapshots.append(snapshot)
            created_count += int(created)
    except Exception as exc:
        logger.exception("Metrics rollup failed: period_type=%s start=%s", period_type, start)
        db.rollback()
        raise_anomaly(
            db,
            ANOMALY_METRICS_FAILURE,
            SEVERITY_MEDIUM,
            tenant_id=None,
            details={"period_type": period_type, "period_start": start.isoformat(), "error": str(exc)},
        )
        return []

    logger.info(
        "Metrics rollup complete: period_type=%s start=%s snapshots=%d created=%d",
        period_type,
        start.isoformat(),
        len(snapshots),
        created_count,
    )
    return snapshots
