"""DeadLetterEntry model: jobs that exhausted retries or were judged unrecoverable."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from replywatch.db.session import Base
from replywatch.db.types import JSONType, UTCDateTime, utcnow

DLQ_STATUS_PENDING_REVIEW = "pending_review"
DLQ_STATUS_MANUALLY_CHECKED = "manually_checked"
DLQ_STATUS_RETRY_SCHEDULED = "retry_scheduled"
DLQ_STATUS_SKIPPED = "skipped"
DLQ_STATUS_RESOLVED = "resolved"
DLQ_CLOSED_STATUSES = (DLQ_STATUS_SKIPPED, DLQ_STATUS_RESOLVED)

REVIEW_ACTIONS = ("retry", "manual_check", "skip", "mark_no_reply", "mark_has_reply")


class DeadLetterEntry(Base):
    """Dead-lettered job with denormalized context for review."""

    __tablename__ = "dead_letter_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("detection_jobs.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    # Null for dead history_sync jobs, which watch a mailbox rather than a message
    outbound_message_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    contact_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    moved_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    total_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # [{attempt_number, timestamp, error, layers_healthy, quorum_met}]
    failure_history: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    job_context: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    requires_manual_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=DLQ_STATUS_PENDING_REVIEW, nullable=False, index=True
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    review_action: Mapped[str | None] = mapped_column(String(30), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_job_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
