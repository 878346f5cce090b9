"""DetectionRun model: immutable record of one job execution attempt or transition."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from replywatch.db.session import Base
from replywatch.db.types import JSONType, UTCDateTime, utcnow

if TYPE_CHECKING:
    from replywatch.models.detection_job import DetectionJob

OUTCOME_SUCCESS = "success"
OUTCOME_PARTIAL = "partial"
OUTCOME_FAILED = "failed"
OUTCOME_RETRYING = "retrying"


class DetectionRun(Base):
    """Audit trail row. Insert-only: nothing in the service layer updates or deletes runs."""

    __tablename__ = "detection_runs"
    __table_args__ = (
        UniqueConstraint("job_id", "run_number", name="uq_detection_runs_job_run_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("detection_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    run_number: Mapped[int] = mapped_column(Integer, nullable=False)
    # Mailbox the run targeted; used by per-mailbox dispatch throttling
    mailbox_address: Mapped[str | None] = mapped_column(String(320), nullable=True, index=True)

    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    from_status: Mapped[str] = mapped_column(String(20), nullable=False)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)

    layer_results: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    quorum_result: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    reply_found: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    reply_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reply_persisted: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    outcome: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    job: Mapped[DetectionJob] = relationship("DetectionJob", back_populates="runs")
