"""Mailbox provider boundary: abstract client, normalized messages, errors."""

from replywatch.providers.base import (
    AuthorizationError,
    ChangePage,
    CursorExpiredError,
    MailboxProvider,
    MessagePage,
    MessageQuery,
    ProviderError,
    ProviderMessage,
    RateLimitedError,
    TransientProviderError,
)

__all__ = [
    "AuthorizationError",
    "ChangePage",
    "CursorExpiredError",
    "MailboxProvider",
    "MessagePage",
    "MessageQuery",
    "ProviderError",
    "ProviderMessage",
    "RateLimitedError",
    "TransientProviderError",
]
