"""Provider registry: resolves (provider, mailbox) to a MailboxProvider client."""

from __future__ import annotations

import logging
from collections.abc import Callable

from replywatch.config import get_settings
from replywatch.providers.base import MailboxProvider
from replywatch.providers.static import StaticMailboxProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[str], MailboxProvider]


class ProviderRegistry:
    """Maps provider names to factories taking a mailbox address."""

    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}

    def register(self, provider: str, factory: ProviderFactory) -> None:
        self._factories[provider] = factory

    def providers(self) -> list[str]:
        return sorted(self._factories)

    def get(self, provider: str, mailbox_address: str) -> MailboxProvider:
        factory = self._factories.get(provider)
        if factory is None:
            raise LookupError(f"No mailbox provider registered for {provider!r}")
        return factory(mailbox_address)


def build_default_registry() -> ProviderRegistry:
    """Registry from settings. Static mailboxes are kept per address for the registry's lifetime."""
    registry = ProviderRegistry()
    if get_settings().use_static_provider:
        mailboxes: dict[tuple[str, str], StaticMailboxProvider] = {}

        def _static_factory(name: str) -> ProviderFactory:
            def factory(mailbox_address: str) -> MailboxProvider:
                key = (name, mailbox_address.lower())
                if key not in mailboxes:
                    mailboxes[key] = StaticMailboxProvider(mailbox_address, provider_name=name)
                return mailboxes[key]

            return factory

        for name in ("gmail", "outlook", "yahoo"):
            registry.register(name, _static_factory(name))
        logger.info("Static mailbox provider enabled for: %s", ", ".join(registry.providers()))
    return registry
