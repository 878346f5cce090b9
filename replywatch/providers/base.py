"""Abstract mailbox provider interface.

Providers wrap a mailbox backend (Gmail, Outlook, IMAP, ...) behind a small
async surface: thread lookup, header-based search, reference lookup and an
incremental change stream keyed by an opaque cursor. Every call may fail;
implementations raise ProviderError subclasses and never return partial data
silently. Detection layers convert these errors into unhealthy results.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime


class ProviderError(Exception):
    """Base class for mailbox provider failures."""


class TransientProviderError(ProviderError):
    """Timeout, 5xx-equivalent or network failure. Safe to retry later."""


class RateLimitedError(TransientProviderError):
    """Provider quota exceeded."""

    def __init__(self, message: str = "rate limited", retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class AuthorizationError(ProviderError):
    """Token expired or revoked. Retrying without re-authorization cannot succeed."""


class CursorExpiredError(ProviderError):
    """Change-stream cursor is no longer valid (history gap)."""


@dataclass(frozen=True)
class ProviderMessage:
    """Provider-agnostic message header view."""

    id: str
    thread_id: str | None
    from_header: str
    to: tuple[str, ...] = ()
    cc: tuple[str, ...] = ()
    subject: str = ""
    snippet: str = ""
    received_at: datetime | None = None
    rfc822_message_id: str | None = None
    in_reply_to: str | None = None
    references: tuple[str, ...] = ()
    headers: dict[str, str] = field(default_factory=dict)
    labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class MessageQuery:
    """Header-based search. Empty fields are not constrained."""

    from_addresses: tuple[str, ...] = ()
    to_address: str | None = None
    after: datetime | None = None
    in_inbox: bool = True
    max_results: int = 50

    def describe(self) -> str:
        """Human-readable query string for audit (queries_issued)."""
        parts: list[str] = []
        if self.from_addresses:
            parts.append("from:(" + " OR ".join(self.from_addresses) + ")")
        if self.to_address:
            parts.append(f"to:{self.to_address}")
        if self.after is not None:
            parts.append(f"after:{int(self.after.timestamp())}")
        if self.in_inbox:
            parts.append("in:inbox")
        return " ".join(parts)


@dataclass(frozen=True)
class MessagePage:
    messages: list[ProviderMessage]
    next_page_token: str | None = None


@dataclass(frozen=True)
class ChangePage:
    """One bounded page of the change stream.

    new_cursor is the position to commit once every message in the page has
    been recorded. has_more means further changes exist past new_cursor.
    """

    messages: list[ProviderMessage]
    new_cursor: str
    has_more: bool = False


class MailboxProvider(ABC):
    """Client for one mailbox on one provider backend."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Identifier for this backend (e.g. 'gmail', 'outlook')."""
        ...

    @property
    @abstractmethod
    def mailbox_address(self) -> str:
        """Address of the mailbox this client reads."""
        ...

    @abstractmethod
    async def get_thread(self, thread_id: str) -> list[ProviderMessage]:
        """Messages in the provider's conversation grouping, oldest first."""
        ...

    @abstractmethod
    async def search_messages(
        self, query: MessageQuery, page_token: str | None = None
    ) -> MessagePage:
        """Header-based search, paginated."""
        ...

    @abstractmethod
    async def find_by_reference(self, rfc822_message_id: str) -> list[ProviderMessage]:
        """Messages whose In-Reply-To or References chain contains the given id."""
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> ProviderMessage | None:
        """Single message by provider id, or None if it no longer exists."""
        ...

    @abstractmethod
    async def get_current_cursor(self) -> str:
        """Current head of the change stream."""
        ...

    @abstractmethod
    async def list_changes(self, cursor: str, max_results: int) -> ChangePage:
        """Messages added after cursor, bounded by max_results."""
        ...
