"""Reply model: a detected reply to an outbound message."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from replywatch.db.session import Base
from replywatch.db.types import UTCDateTime, utcnow

if TYPE_CHECKING:
    from replywatch.models.outbound_message import OutboundMessage


class Reply(Base):
    """Detected reply. provider_message_id is the idempotency key for persistence."""

    __tablename__ = "replies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    outbound_message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("outbound_messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider_message_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    provider_thread_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    from_address: Mapped[str] = mapped_column(String(320), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(998), nullable=True)
    snippet: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    detected_by: Mapped[str] = mapped_column(String(64), nullable=False)
    detected_alias: Mapped[str | None] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    outbound_message: Mapped[OutboundMessage] = relationship(
        "OutboundMessage", back_populates="replies"
    )
