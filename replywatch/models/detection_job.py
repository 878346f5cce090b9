"""DetectionJob model: the unit of reply-detection work."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from replywatch.db.session import Base
from replywatch.db.types import JSONType, UTCDateTime, utcnow

if TYPE_CHECKING:
    from replywatch.models.detection_run import DetectionRun
    from replywatch.models.outbound_message import OutboundMessage

# Job types
JOB_TYPE_ON_SEND = "on_send"
JOB_TYPE_SCHEDULED = "scheduled"
JOB_TYPE_RECONCILIATION = "reconciliation"
JOB_TYPE_MANUAL_RECHECK = "manual_recheck"
JOB_TYPE_HISTORY_SYNC = "history_sync"
JOB_TYPES = (
    JOB_TYPE_ON_SEND,
    JOB_TYPE_SCHEDULED,
    JOB_TYPE_RECONCILIATION,
    JOB_TYPE_MANUAL_RECHECK,
    JOB_TYPE_HISTORY_SYNC,
)

# Statuses
STATUS_PENDING = "pending"
STATUS_QUEUED = "queued"
STATUS_EXECUTING = "executing"
STATUS_VERIFIED = "verified"
STATUS_FAILED = "failed"
STATUS_DEAD = "dead"
STATUS_CANCELLED = "cancelled"
TERMINAL_STATUSES = (STATUS_VERIFIED, STATUS_DEAD, STATUS_CANCELLED)
ACTIVE_STATUSES = (STATUS_PENDING, STATUS_QUEUED, STATUS_EXECUTING, STATUS_FAILED)

# At most one non-terminal job per outbound message; also serves as the executing lease.
_NON_TERMINAL_WHERE = text("status NOT IN ('verified', 'dead', 'cancelled')")
# At most one non-terminal history sync per mailbox
_ACTIVE_SYNC_WHERE = text(
    "job_type = 'history_sync' AND status NOT IN ('verified', 'dead', 'cancelled')"
)


class DetectionJob(Base):
    """Reply-detection job. Current-state fields are mutable; history lives in DetectionRun."""

    __tablename__ = "detection_jobs"
    __table_args__ = (
        Index(
            "uq_detection_jobs_active_message",
            "outbound_message_id",
            unique=True,
            postgresql_where=_NON_TERMINAL_WHERE,
            sqlite_where=_NON_TERMINAL_WHERE,
        ),
        Index(
            "uq_detection_jobs_active_history_sync",
            "provider",
            "mailbox_address",
            unique=True,
            postgresql_where=_ACTIVE_SYNC_WHERE,
            sqlite_where=_ACTIVE_SYNC_WHERE,
        ),
        Index("ix_detection_jobs_status_scheduled", "status", "scheduled_for"),
        Index("ix_detection_jobs_status_priority", "status", "priority"),
        Index("ix_detection_jobs_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # Null only for mailbox-level history_sync jobs
    outbound_message_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("outbound_messages.id", ondelete="CASCADE"), nullable=True
    )
    contact_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=True
    )

    job_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=STATUS_PENDING, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=5, nullable=False)  # lower runs first
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    # Lower-cased; copied from the outbound message or the history_sync payload
    mailbox_address: Mapped[str] = mapped_column(String(320), nullable=False)

    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    layers_executed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    layers_healthy: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quorum_met: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    reply_found: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Tagged variant per job_type; validated by replywatch.schemas.jobs.parse_job_payload
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Set on jobs re-armed from a dead job by the review workflow
    superseded_job_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("detection_jobs.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    outbound_message: Mapped[OutboundMessage | None] = relationship("OutboundMessage")
    runs: Mapped[list[DetectionRun]] = relationship(
        "DetectionRun",
        back_populates="job",
        order_by="DetectionRun.run_number",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
