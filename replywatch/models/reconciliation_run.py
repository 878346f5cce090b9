"""ReconciliationRun model: audit summary of one sweep."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from replywatch.db.session import Base
from replywatch.db.types import JSONType, UTCDateTime, utcnow

RUN_TYPES = ("hourly", "nightly", "manual")


class ReconciliationRun(Base):
    """Summary of a reconciliation sweep (counts and checkpoint positions before/after)."""

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    run_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    messages_checked: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    replies_already_recorded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    jobs_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    anomalies_logged: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # {"<provider>:<mailbox>": "<cursor or null>"}
    checkpoint_before: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    checkpoint_after: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    errors: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)  # success | partial | failed
