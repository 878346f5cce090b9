"""OutboundMessage model: a sent email watched for replies."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from replywatch.db.session import Base
from replywatch.db.types import UTCDateTime, utcnow

if TYPE_CHECKING:
    from replywatch.models.contact import Contact
    from replywatch.models.reply import Reply


class OutboundMessage(Base):
    """Outbound email as recorded by the sending side of the system."""

    __tablename__ = "outbound_messages"
    __table_args__ = (
        Index("ix_outbound_messages_sent_reply", "sent_at", "reply_received"),
        Index("ix_outbound_messages_mailbox", "provider", "mailbox_address"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    contact_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    # Sending user's mailbox; replies must be addressed to it
    mailbox_address: Mapped[str] = mapped_column(String(320), nullable=False)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_thread_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    rfc822_message_id: Mapped[str | None] = mapped_column(String(998), nullable=True)
    subject: Mapped[str] = mapped_column(String(998), default="", nullable=False)
    sent_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    reply_received: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    contact: Mapped[Contact] = relationship("Contact", back_populates="outbound_messages")
    replies: Mapped[list[Reply]] = relationship("Reply", back_populates="outbound_message")
