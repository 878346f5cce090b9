"""Reply candidate filters shared by all layers."""

from __future__ import annotations

import re
from collections.abc import Iterable

from replywatch.detection.addresses import addresses_in, normalize_address
from replywatch.detection.base import DetectionContext
from replywatch.providers.base import ProviderMessage
from replywatch.schemas.detection import DetectedReply

_AUTO_SUBJECT_RE = re.compile(
    r"^(auto(matic)?[ -]?reply|out of (the )?office|ooo\b|away from|autoresponse)",
    re.IGNORECASE,
)
_BOUNCE_SENDERS = ("mailer-daemon@", "postmaster@")
_BULK_PRECEDENCE = ("bulk", "junk", "auto_reply", "list")


def _header(message: ProviderMessage, name: str) -> str | None:
    lowered = name.lower()
    for key, value in message.headers.items():
        if key.lower() == lowered:
            return value
    return None


def is_auto_reply(message: ProviderMessage) -> bool:
    """Out-of-office and other machine-generated responses are not replies."""
    auto_submitted = _header(message, "Auto-Submitted")
    if auto_submitted and auto_submitted.strip().lower() != "no":
        return True
    if _header(message, "X-Autoreply") or _header(message, "X-Autorespond"):
        return True
    precedence = _header(message, "Precedence")
    if precedence and precedence.strip().lower() in _BULK_PRECEDENCE:
        return True
    return bool(_AUTO_SUBJECT_RE.match(message.subject.strip()))


def is_bounce(message: ProviderMessage) -> bool:
    sender = normalize_address(message.from_header) or ""
    return sender.startswith(_BOUNCE_SENDERS)


def match_reply(
    message: ProviderMessage,
    ctx: DetectionContext,
    sender_addresses: Iterable[str] | None = None,
) -> DetectedReply | None:
    """Return a DetectedReply if message is a reply from the contact to the user.

    Sender must exactly equal one of sender_addresses (default: the contact's
    primary address and known aliases); a recipient must exactly equal the
    sending mailbox. The outbound message itself, anything the user authored,
    anything older than the send, auto-replies and bounces are rejected.
    """
    outbound = ctx.outbound
    if outbound.provider_message_id and message.id == outbound.provider_message_id:
        return None

    sender = normalize_address(message.from_header)
    if sender is None:
        return None
    mailbox = outbound.mailbox_address.strip().lower()
    if sender == mailbox:
        return None

    allowed = {a.strip().lower() for a in (sender_addresses or ctx.contact_addresses)}
    if sender not in allowed:
        return None
    if mailbox not in addresses_in(message.to + message.cc):
        return None

    if message.received_at is not None and message.received_at <= outbound.sent_at:
        return None
    if is_auto_reply(message) or is_bounce(message):
        return None

    primary = ctx.contact_address.strip().lower()
    return DetectedReply(
        provider_message_id=message.id,
        provider_thread_id=message.thread_id,
        from_address=sender,
        subject=message.subject,
        snippet=message.snippet[:500] if message.snippet else None,
        received_at=message.received_at,
        detected_alias=sender if sender != primary else None,
    )
