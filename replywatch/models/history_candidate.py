"""HistoryCandidate model: every message read from a mailbox change stream."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from replywatch.db.session import Base
from replywatch.db.types import JSONType, UTCDateTime, utcnow


class HistoryCandidate(Base):
    """A change-stream message recorded before its checkpoint range is committed.

    Rows are per mailbox, not per contact: whichever job reads a page records
    all of it, and every watched message in that mailbox is matched against
    the stored rows later.
    """

    __tablename__ = "history_candidates"
    __table_args__ = (
        UniqueConstraint(
            "provider",
            "mailbox_address",
            "provider_message_id",
            name="uq_history_candidates_message",
        ),
        Index("ix_history_candidates_sender", "provider", "mailbox_address", "from_address"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    mailbox_address: Mapped[str] = mapped_column(String(320), nullable=False)
    provider_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # Normalized sender; null when the From header could not be parsed
    from_address: Mapped[str | None] = mapped_column(String(320), nullable=True)
    received_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    message: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    # Set once the history sync has queued checks for the watched messages it may answer
    fanned_out_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
