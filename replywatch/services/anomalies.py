"""Anomaly recording, quorum-failure streaks and resolution."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from replywatch.db.types import utcnow
from replywatch.errors import NotFoundError, ReviewStateError
from replywatch.models.anomaly import ALERTING_SEVERITIES, ANOMALY_STATUSES, Anomaly
from replywatch.models.detection_job import STATUS_EXECUTING, DetectionJob
from replywatch.models.detection_run import OUTCOME_PARTIAL, DetectionRun
from replywatch.services import alerting

logger = logging.getLogger(__name__)


def raise_anomaly(
    db: Session,
    anomaly_type: str,
    severity: str,
    *,
    tenant_id: int | None,
    provider: str | None = None,
    outbound_message_id: int | None = None,
    job_id: int | None = None,
    details: dict[str, Any] | None = None,
    requires_manual_review: bool = False,
    commit: bool = True,
) -> Anomaly:
    """Persist an anomaly; high/critical ones are handed to alerting."""
    anomaly = Anomaly(
        tenant_id=tenant_id,
        provider=provider,
        outbound_message_id=outbound_message_id,
        job_id=job_id,
        anomaly_type=anomaly_type,
        severity=severity,
        details=details or {},
        requires_manual_review=requires_manual_review,
    )
    db.add(anomaly)
    db.flush()
    logger.warning(
        "Anomaly raised: type=%s severity=%s tenant_id=%s job_id=%s outbound_message_id=%s",
        anomaly_type,
        severity,
        tenant_id,
        job_id,
        outbound_message_id,
    )
    if severity in ALERTING_SEVERITIES:
        alerting.alert_for_anomaly(db, anomaly)
    if commit:
        db.commit()
    return anomaly


def recent_quorum_failure_streak(db: Session, job: DetectionJob) -> int:
    """Number of consecutive most-recent attempts of job that ended without quorum."""
    outcomes = db.scalars(
        select(DetectionRun.outcome)
        .where(DetectionRun.job_id == job.id, DetectionRun.from_status == STATUS_EXECUTING)
        .order_by(DetectionRun.run_number.desc())
    ).all()
    streak = 0
    for outcome in outcomes:
        if outcome != OUTCOME_PARTIAL:
            break
        streak += 1
    return streak


def list_anomalies(
    db: Session,
    status: str | None = None,
    severity: str | None = None,
    limit: int = 100,
) -> list[Anomaly]:
    stmt = select(Anomaly).order_by(Anomaly.created_at.desc(), Anomaly.id.desc()).limit(limit)
    if status:
        stmt = stmt.where(Anomaly.status == status)
    if severity:
        stmt = stmt.where(Anomaly.severity == severity)
    return list(db.scalars(stmt).all())


def resolve_anomaly(
    db: Session, anomaly_id: int, status: str = "resolved", resolution: str | None = None
) -> Anomaly:
    if status not in ANOMALY_STATUSES or status == "open":
        raise ValueError(f"Invalid anomaly status: {status}")
    anomaly = db.get(Anomaly, anomaly_id)
    if anomaly is None:
        raise NotFoundError(f"Anomaly {anomaly_id} not found")
    if anomaly.status in ("resolved", "wont_fix"):
        raise ReviewStateError(f"Anomaly {anomaly_id} already {anomaly.status}")
    anomaly.status = status
    anomaly.resolution = resolution
    if status in ("resolved", "wont_fix"):
        anomaly.resolved_at = utcnow()
    db.commit()
    logger.info("Anomaly updated: anomaly_id=%s status=%s", anomaly_id, status)
    return anomaly
