"""Durable per-mailbox record of change-stream messages.

The history layer and the history sync write every message of a page here
before they move the checkpoint past it. Matching against a contact happens
afterwards, on the stored rows, so a page read on behalf of one contact
still answers every other watched message in the same mailbox.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replywatch.db.types import utcnow
from replywatch.detection.addresses import normalize_address
from replywatch.models.history_candidate import HistoryCandidate
from replywatch.providers.base import ProviderMessage

logger = logging.getLogger(__name__)


def message_to_dict(message: ProviderMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "thread_id": message.thread_id,
        "from_header": message.from_header,
        "to": list(message.to),
        "cc": list(message.cc),
        "subject": message.subject,
        "snippet": message.snippet,
        "received_at": message.received_at.isoformat() if message.received_at else None,
        "rfc822_message_id": message.rfc822_message_id,
        "in_reply_to": message.in_reply_to,
        "references": list(message.references),
        "headers": dict(message.headers),
        "labels": list(message.labels),
    }


def message_from_dict(data: dict[str, Any]) -> ProviderMessage:
    received_at = data.get("received_at")
    return ProviderMessage(
        id=data["id"],
        thread_id=data.get("thread_id"),
        from_header=data.get("from_header") or "",
        to=tuple(data.get("to") or ()),
        cc=tuple(data.get("cc") or ()),
        subject=data.get("subject") or "",
        snippet=data.get("snippet") or "",
        received_at=datetime.fromisoformat(received_at) if received_at else None,
        rfc822_message_id=data.get("rfc822_message_id"),
        in_reply_to=data.get("in_reply_to"),
        references=tuple(data.get("references") or ()),
        headers=dict(data.get("headers") or {}),
        labels=tuple(data.get("labels") or ()),
    )


class HistoryCandidateStore:
    """Candidate reads and writes for one database session."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _exists(self, provider: str, mailbox: str, message_id: str) -> bool:
        return (
            self.db.scalar(
                select(HistoryCandidate.id).where(
                    HistoryCandidate.provider == provider,
                    HistoryCandidate.mailbox_address == mailbox,
                    HistoryCandidate.provider_message_id == message_id,
                )
            )
            is not None
        )

    def record(
        self,
        tenant_id: int,
        provider: str,
        mailbox_address: str,
        messages: Iterable[ProviderMessage],
    ) -> int:
        """Store every message not stored yet and commit. Returns how many were new.

        Re-reading a range after a crash or a lost checkpoint race records nothing twice.
        """
        mailbox = mailbox_address.strip().lower()
        created = 0
        for message in messages:
            if self._exists(provider, mailbox, message.id):
                continue
            row = HistoryCandidate(
                tenant_id=tenant_id,
                provider=provider,
                mailbox_address=mailbox,
                provider_message_id=message.id,
                from_address=normalize_address(message.from_header),
                received_at=message.received_at,
                message=message_to_dict(message),
            )
            try:
                with self.db.begin_nested():
                    self.db.add(row)
            except IntegrityError:
                # Recorded concurrently by another reader of the same range
                continue
            created += 1
        self.db.commit()
        if created:
            logger.info(
                "History candidates recorded: provider=%s mailbox=%s count=%d",
                provider,
                mailbox,
                created,
            )
        return created

    def for_senders(
        self,
        provider: str,
        mailbox_address: str,
        senders: Iterable[str],
        after: datetime | None = None,
    ) -> list[ProviderMessage]:
        """Stored messages from any of senders, oldest first."""
        addresses = sorted({s.strip().lower() for s in senders if s and s.strip()})
        if not addresses:
            return []
        stmt = select(HistoryCandidate).where(
            HistoryCandidate.provider == provider,
            HistoryCandidate.mailbox_address == mailbox_address.strip().lower(),
            HistoryCandidate.from_address.in_(addresses),
        )
        if after is not None:
            stmt = stmt.where(
                or_(HistoryCandidate.received_at.is_(None), HistoryCandidate.received_at > after)
            )
        rows = self.db.scalars(
            stmt.order_by(HistoryCandidate.received_at, HistoryCandidate.id)
        ).all()
        return [message_from_dict(row.message) for row in rows]

    def pending_fan_out(
        self, provider: str, mailbox_address: str, limit: int = 500
    ) -> list[HistoryCandidate]:
        return list(
            self.db.scalars(
                select(HistoryCandidate)
                .where(
                    HistoryCandidate.provider == provider,
                    HistoryCandidate.mailbox_address == mailbox_address.strip().lower(),
                    HistoryCandidate.fanned_out_at.is_(None),
                )
                .order_by(HistoryCandidate.id)
                .limit(limit)
            ).all()
        )

    def mark_fanned_out(self, candidate_ids: list[int], now: datetime | None = None) -> None:
        if not candidate_ids:
            return
        self.db.execute(
            update(HistoryCandidate)
            .where(HistoryCandidate.id.in_(candidate_ids))
            .values(fanned_out_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def purge_before(self, cutoff: datetime) -> int:
        """Drop candidates recorded before cutoff."""
        result = self.db.execute(
            delete(HistoryCandidate)
            .where(HistoryCandidate.recorded_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount or 0
