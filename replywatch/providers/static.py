"""Static in-process mailbox provider.

Serves a fixed, append-only list of messages. The change-stream cursor is the
index of the next unseen message. Used for local runs (USE_STATIC_PROVIDER=1)
and tests; failures and latency can be injected per method.
"""

from __future__ import annotations

import asyncio

from replywatch.detection.addresses import addresses_in, normalize_address
from replywatch.providers.base import (
    ChangePage,
    CursorExpiredError,
    MailboxProvider,
    MessagePage,
    MessageQuery,
    ProviderError,
    ProviderMessage,
)


class StaticMailboxProvider(MailboxProvider):
    """Mailbox backed by an in-memory message list."""

    def __init__(
        self,
        mailbox_address: str,
        messages: list[ProviderMessage] | None = None,
        provider_name: str = "gmail",
        page_size: int = 50,
    ) -> None:
        self._mailbox_address = mailbox_address
        self._provider_name = provider_name
        self._page_size = page_size
        self.messages: list[ProviderMessage] = list(messages or [])
        # method name -> exception raised on every call
        self.failures: dict[str, ProviderError] = {}
        # method name -> seconds to sleep before answering
        self.delays: dict[str, float] = {}
        self.calls: list[str] = []

    @property
    def provider_name(self) -> str:
        return self._provider_name

    @property
    def mailbox_address(self) -> str:
        return self._mailbox_address

    def deliver(self, message: ProviderMessage) -> None:
        """Append a message to the mailbox (it becomes visible to every method)."""
        self.messages.append(message)

    async def _enter(self, method: str) -> None:
        self.calls.append(method)
        delay = self.delays.get(method)
        if delay:
            await asyncio.sleep(delay)
        error = self.failures.get(method)
        if error is not None:
            raise error

    async def get_thread(self, thread_id: str) -> list[ProviderMessage]:
        await self._enter("get_thread")
        return [m for m in self.messages if m.thread_id == thread_id]

    async def search_messages(
        self, query: MessageQuery, page_token: str | None = None
    ) -> MessagePage:
        await self._enter("search_messages")
        wanted_from = {a.lower() for a in query.from_addresses}
        wanted_to = normalize_address(query.to_address) if query.to_address else None

        matches: list[ProviderMessage] = []
        for message in self.messages:
            if query.in_inbox and message.labels and "INBOX" not in message.labels:
                continue
            if wanted_from and normalize_address(message.from_header) not in wanted_from:
                continue
            if wanted_to and wanted_to not in addresses_in(message.to + message.cc):
                continue
            if (
                query.after is not None
                and message.received_at is not None
                and message.received_at <= query.after
            ):
                continue
            matches.append(message)

        limit = min(query.max_results, self._page_size)
        start = int(page_token) if page_token else 0
        page = matches[start : start + limit]
        next_token = str(start + limit) if start + limit < len(matches) else None
        return MessagePage(messages=page, next_page_token=next_token)

    async def find_by_reference(self, rfc822_message_id: str) -> list[ProviderMessage]:
        await self._enter("find_by_reference")
        return [
            m
            for m in self.messages
            if m.in_reply_to == rfc822_message_id or rfc822_message_id in m.references
        ]

    async def get_message(self, message_id: str) -> ProviderMessage | None:
        await self._enter("get_message")
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    async def get_current_cursor(self) -> str:
        await self._enter("get_current_cursor")
        return str(len(self.messages))

    async def list_changes(self, cursor: str, max_results: int) -> ChangePage:
        await self._enter("list_changes")
        try:
            start = int(cursor)
        except ValueError:
            raise CursorExpiredError(f"invalid cursor {cursor!r}") from None
        if start < 0 or start > len(self.messages):
            raise CursorExpiredError(f"cursor {cursor!r} out of range")
        end = min(start + max_results, len(self.messages))
        return ChangePage(
            messages=self.messages[start:end],
            new_cursor=str(end),
            has_more=end < len(self.messages),
        )
