"""AlertDelivery model: record of alerts pushed to the alerting channel."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from replywatch.db.session import Base
from replywatch.db.types import UTCDateTime, utcnow


class AlertDelivery(Base):
    """One alert attempt. Used for cooldown suppression of repeated alerts."""

    __tablename__ = "detection_alerts_sent"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)  # warning | critical
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    anomaly_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    dead_letter_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    delivered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
