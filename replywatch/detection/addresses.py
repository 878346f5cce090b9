"""Email address parsing, exact matching and alias variant generation.

Matching is exact and case-insensitive on the bare address after removing
any display-name wrapper ("Jane <Jane@Example.com>" == "jane@example.com").
Variant generation only widens the set of addresses a layer searches for; it
never loosens the equality test.
"""

from __future__ import annotations

from collections.abc import Iterable
from email.utils import getaddresses, parseaddr

# Mailbox providers whose domains are interchangeable for the same account
_DOMAIN_FAMILIES: dict[str, tuple[str, ...]] = {
    "gmail.com": ("googlemail.com",),
    "googlemail.com": ("gmail.com",),
    "outlook.com": ("hotmail.com", "live.com"),
    "hotmail.com": ("outlook.com", "live.com"),
    "live.com": ("outlook.com", "hotmail.com"),
    "yahoo.com": ("ymail.com", "rocketmail.com"),
    "ymail.com": ("yahoo.com",),
    "rocketmail.com": ("yahoo.com",),
}
_CONSUMER_DOMAINS = frozenset(_DOMAIN_FAMILIES)
_CORPORATE_MAIL_SUBDOMAINS = ("mail", "email")


def normalize_address(value: str | None) -> str | None:
    """Return the bare lower-cased address from a header value, or None."""
    if not value:
        return None
    _, addr = parseaddr(value)
    addr = addr.strip().lower()
    if "@" not in addr:
        return None
    return addr


def addresses_in(values: Iterable[str]) -> set[str]:
    """All bare addresses in one or more To/Cc header values."""
    found: set[str] = set()
    for _, addr in getaddresses(list(values)):
        addr = addr.strip().lower()
        if "@" in addr:
            found.add(addr)
    return found


def addresses_equal(left: str | None, right: str | None) -> bool:
    a = normalize_address(left)
    b = normalize_address(right)
    return a is not None and a == b


def generate_alias_variants(email: str) -> list[str]:
    """Plausible alternate addresses for the same person, excluding email itself.

    Covers plus-tag stripping, Gmail dot-insensitivity, provider domain
    families and corporate mail.* subdomains. Order is stable.
    """
    addr = normalize_address(email)
    if addr is None:
        return []
    local, _, domain = addr.partition("@")
    base = local.split("+", 1)[0]

    variants: list[str] = []

    def add(candidate: str) -> None:
        if candidate != addr and candidate not in variants:
            variants.append(candidate)

    add(f"{base}@{domain}")

    if domain in ("gmail.com", "googlemail.com"):
        add(f"{base.replace('.', '')}@{domain}")

    for alt in _DOMAIN_FAMILIES.get(domain, ()):
        add(f"{base}@{alt}")
        if domain in ("gmail.com", "googlemail.com"):
            add(f"{base.replace('.', '')}@{alt}")

    if domain not in _CONSUMER_DOMAINS:
        labels = domain.split(".")
        if len(labels) > 2 and labels[0] in _CORPORATE_MAIL_SUBDOMAINS:
            add(f"{base}@{'.'.join(labels[1:])}")
        elif len(labels) == 2:
            for sub in _CORPORATE_MAIL_SUBDOMAINS:
                add(f"{base}@{sub}.{domain}")

    return variants
