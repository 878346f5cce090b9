"""Anomaly model: structured signal that something is wrong without a hard failure."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from replywatch.db.session import Base
from replywatch.db.types import JSONType, UTCDateTime, utcnow

ANOMALY_QUORUM_FAILURE = "quorum_failure"
ANOMALY_MISSED_REPLY = "missed_reply"
ANOMALY_STALE_DETECTION = "stale_detection"
ANOMALY_LAYER_TIMEOUT = "layer_timeout"
ANOMALY_VERIFICATION_FAILED = "verification_failed"
ANOMALY_HISTORY_GAP = "history_gap"
ANOMALY_DUPLICATE_DETECTION = "duplicate_detection"
ANOMALY_TOKEN_EXPIRED = "token_expired"
ANOMALY_SYNC_ERRORS = "sync_errors"
ANOMALY_SYNC_STALE = "sync_stale"
ANOMALY_RECONCILIATION_FAILURE = "reconciliation_failure"
ANOMALY_METRICS_FAILURE = "metrics_failure"

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"
ALERTING_SEVERITIES = (SEVERITY_HIGH, SEVERITY_CRITICAL)

ANOMALY_STATUSES = ("open", "investigating", "resolved", "wont_fix")


class Anomaly(Base):
    """Detection anomaly. outbound_message_id/job_id are null for mailbox-level anomalies."""

    __tablename__ = "detection_anomalies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    outbound_message_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    job_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    provider: Mapped[str | None] = mapped_column(String(20), nullable=True)
    anomaly_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), default=SEVERITY_MEDIUM, nullable=False, index=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    requires_manual_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="open", nullable=False, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
