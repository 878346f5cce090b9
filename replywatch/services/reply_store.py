"""Idempotent reply persistence keyed by provider message id."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replywatch.db.types import utcnow
from replywatch.models.contact import ContactAlias
from replywatch.models.outbound_message import OutboundMessage
from replywatch.models.reply import Reply
from replywatch.schemas.detection import DetectedReply

logger = logging.getLogger(__name__)


def get_reply_by_provider_id(db: Session, provider_message_id: str) -> Reply | None:
    return db.scalar(select(Reply).where(Reply.provider_message_id == provider_message_id))


def persist_reply(
    db: Session,
    outbound: OutboundMessage,
    detected: DetectedReply,
    detected_by: str,
) -> tuple[Reply, bool]:
    """Insert the reply unless one with the same provider message id exists.

    Returns (reply, created). The insert runs in a SAVEPOINT so a concurrent
    insert of the same message only rolls back this statement. Does not commit.
    """
    existing = get_reply_by_provider_id(db, detected.provider_message_id)
    if existing is not None:
        return existing, False

    reply = Reply(
        tenant_id=outbound.tenant_id,
        outbound_message_id=outbound.id,
        provider_message_id=detected.provider_message_id,
        provider_thread_id=detected.provider_thread_id,
        from_address=detected.from_address,
        subject=detected.subject,
        snippet=detected.snippet,
        received_at=detected.received_at or utcnow(),
        detected_by=detected_by,
        detected_alias=detected.detected_alias,
    )
    try:
        with db.begin_nested():
            db.add(reply)
    except IntegrityError:
        existing = get_reply_by_provider_id(db, detected.provider_message_id)
        if existing is None:
            raise
        logger.info(
            "Reply already recorded: provider_message_id=%s reply_id=%s",
            detected.provider_message_id,
            existing.id,
        )
        return existing, False

    if detected.detected_alias:
        _remember_alias(db, outbound.contact_id, detected.detected_alias)
    logger.info(
        "Reply recorded: outbound_message_id=%s provider_message_id=%s detected_by=%s",
        outbound.id,
        detected.provider_message_id,
        detected_by,
    )
    return reply, True


def _remember_alias(db: Session, contact_id: int, address: str) -> None:
    """Keep an address a contact actually replied from as a known alias."""
    exists = db.scalar(
        select(ContactAlias.id).where(
            ContactAlias.contact_id == contact_id, ContactAlias.email == address
        )
    )
    if exists is not None:
        return
    try:
        with db.begin_nested():
            db.add(ContactAlias(contact_id=contact_id, email=address, source="detected"))
    except IntegrityError:
        # Added concurrently
        return
