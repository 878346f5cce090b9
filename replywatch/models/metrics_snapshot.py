"""MetricsSnapshot model: per-period detection rollups."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from replywatch.db.session import Base
from replywatch.db.types import JSONType, UTCDateTime, utcnow

PERIOD_TYPES = ("hourly", "daily", "weekly")


class MetricsSnapshot(Base):
    """Aggregate for one closed period. Write-once: the unique key rejects a second write."""

    __tablename__ = "detection_metrics"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "period_type", "period_start", name="uq_detection_metrics_period"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = all tenants
    period_type: Mapped[str] = mapped_column(String(20), nullable=False)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    total_jobs_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_jobs: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_jobs: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retried_jobs: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    dead_lettered_jobs: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    replies_found: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    missed_replies_caught: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    quorum_failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_layers_healthy: Mapped[float | None] = mapped_column(Float, nullable=True)
    # {layer: {runs_total, runs_healthy, found_count, error_count, avg_duration_ms}}
    layer_health_stats: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    avg_processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    p50_processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    p95_processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    anomaly_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
