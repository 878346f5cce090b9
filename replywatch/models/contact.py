"""Contact and ContactAlias models (recipients of outbound email)."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from replywatch.db.session import Base
from replywatch.db.types import UTCDateTime, utcnow

if TYPE_CHECKING:
    from replywatch.models.outbound_message import OutboundMessage


class Contact(Base):
    """A person outbound email is sent to."""

    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    aliases: Mapped[list[ContactAlias]] = relationship(
        "ContactAlias", back_populates="contact", cascade="all, delete-orphan"
    )
    outbound_messages: Mapped[list[OutboundMessage]] = relationship(
        "OutboundMessage", back_populates="contact"
    )


class ContactAlias(Base):
    """Known historical address for a contact (plus-tags, forwards, domain aliases)."""

    __tablename__ = "contact_aliases"
    __table_args__ = (
        UniqueConstraint("contact_id", "email", name="uq_contact_aliases_contact_email"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contact_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    source: Mapped[str] = mapped_column(String(32), default="manual", nullable=False)  # manual | detected | forward
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    contact: Mapped[Contact] = relationship("Contact", back_populates="aliases")
