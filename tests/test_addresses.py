"""Tests for address normalization and alias variants."""

from __future__ import annotations

from replywatch.detection.addresses import (
    addresses_equal,
    addresses_in,
    generate_alias_variants,
    normalize_address,
)


def test_normalize_strips_display_name_and_case() -> None:
    assert normalize_address("Jane Doe <Jane.Doe@Example.COM>") == "jane.doe@example.com"
    assert normalize_address("  bob@example.com ") == "bob@example.com"


def test_normalize_rejects_non_addresses() -> None:
    assert normalize_address("") is None
    assert normalize_address(None) is None
    assert normalize_address("not an address") is None


def test_addresses_in_reads_every_recipient() -> None:
    found = addresses_in(["A <a@x.io>, b@y.io", "C <C@Z.io>"])
    assert found == {"a@x.io", "b@y.io", "c@z.io"}


def test_addresses_equal_is_exact() -> None:
    assert addresses_equal("Alice <alice@acme.io>", "ALICE@acme.io")
    assert not addresses_equal("alice@acme.io", "alice@acme.io.evil.com")
    assert not addresses_equal(None, "alice@acme.io")


def test_variants_strip_plus_tags() -> None:
    assert "alice@acme.io" in generate_alias_variants("alice+news@acme.io")


def test_gmail_variants_cover_dots_and_googlemail() -> None:
    variants = generate_alias_variants("jane.doe@gmail.com")
    assert "janedoe@gmail.com" in variants
    assert "jane.doe@googlemail.com" in variants
    assert "jane.doe@gmail.com" not in variants


def test_corporate_mail_subdomains() -> None:
    assert "bob@acme.io" in generate_alias_variants("bob@mail.acme.io")
    variants = generate_alias_variants("bob@acme.io")
    assert "bob@mail.acme.io" in variants
    assert "bob@email.acme.io" in variants


def test_invalid_address_has_no_variants() -> None:
    assert generate_alias_variants("nobody") == []
