"""MailboxCheckpoint model: per-mailbox position in the provider change stream."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from replywatch.db.session import Base
from replywatch.db.types import UTCDateTime, utcnow

SYNC_STATUS_ACTIVE = "active"
SYNC_STATUS_PAUSED = "paused"
SYNC_STATUS_ERROR = "error"
SYNC_STATUS_TOKEN_EXPIRED = "token_expired"
UNSCHEDULABLE_SYNC_STATUSES = (SYNC_STATUS_PAUSED, SYNC_STATUS_ERROR, SYNC_STATUS_TOKEN_EXPIRED)


class MailboxCheckpoint(Base):
    """Last fully processed change-stream cursor for a mailbox.

    last_position only moves forward through CheckpointStore.advance, which is a
    compare-and-set on the previously read position.
    """

    __tablename__ = "mailbox_checkpoints"
    __table_args__ = (
        UniqueConstraint("provider", "mailbox_address", name="uq_mailbox_checkpoints_mailbox"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    mailbox_address: Mapped[str] = mapped_column(String(320), nullable=False)
    last_position: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    sync_status: Mapped[str] = mapped_column(String(20), default=SYNC_STATUS_ACTIVE, nullable=False)
    consecutive_errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
