"""Tests for the provider-read detection layers, the layer registry and the runner."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from replywatch.detection.base import DetectionContext, DetectionLayer, OutboundRef
from replywatch.detection.layers import (
    AliasMatchLayer,
    InboxSweepLayer,
    MessageIdLineageLayer,
    ThreadContinuityLayer,
)
from replywatch.detection.layers.alias_match import candidate_aliases
from replywatch.detection.registry import applicable_layers, layer_names_for
from replywatch.detection.runner import run_layers
from replywatch.providers.base import (
    AuthorizationError,
    ProviderMessage,
    RateLimitedError,
    TransientProviderError,
)
from replywatch.providers.static import StaticMailboxProvider
from replywatch.schemas.detection import LayerResult

SENT_AT = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
MAILBOX = "me@example.com"


def _ctx(provider: StaticMailboxProvider, **outbound_overrides) -> DetectionContext:
    fields = dict(
        id=10,
        tenant_id=1,
        provider="gmail",
        mailbox_address=MAILBOX,
        subject="Quick intro",
        sent_at=SENT_AT,
        provider_message_id="m-out",
        provider_thread_id="t-1",
        rfc822_message_id="<out@example.com>",
    )
    fields.update(outbound_overrides)
    return DetectionContext(
        job_id=1,
        outbound=OutboundRef(**fields),
        contact_address="alice@acme.io",
        known_aliases=(),
        provider=provider,
    )


def _reply(message_id: str, sender: str = "alice@acme.io", minutes: int = 30, **kw) -> ProviderMessage:
    fields = dict(
        id=message_id,
        thread_id="t-1",
        from_header=sender,
        to=(MAILBOX,),
        subject="Re: Quick intro",
        received_at=SENT_AT + timedelta(minutes=minutes),
        in_reply_to="<out@example.com>",
        labels=("INBOX",),
    )
    fields.update(kw)
    return ProviderMessage(**fields)


def _outbound_copy() -> ProviderMessage:
    return ProviderMessage(
        id="m-out",
        thread_id="t-1",
        from_header=MAILBOX,
        to=("alice@acme.io",),
        received_at=SENT_AT,
        rfc822_message_id="<out@example.com>",
        labels=("SENT",),
    )


class TestThreadContinuity:
    async def test_finds_reply_in_thread(self) -> None:
        provider = StaticMailboxProvider(MAILBOX, [_outbound_copy(), _reply("m-1")])
        result = await ThreadContinuityLayer().execute(_ctx(provider))
        assert result.healthy and result.found
        assert [e.provider_message_id for e in result.evidence] == ["m-1"]
        assert result.messages_scanned == 2
        assert result.queries_issued == ["thread:t-1"]

    async def test_provider_failure_is_unhealthy_not_raised(self) -> None:
        provider = StaticMailboxProvider(MAILBOX, [_reply("m-1")])
        provider.failures["get_thread"] = TransientProviderError("503 from backend")
        result = await ThreadContinuityLayer().execute(_ctx(provider))
        assert result.healthy is False
        assert result.found is False
        assert result.error_kind == "transient"
        assert "503" in result.error

    def test_needs_thread_id(self) -> None:
        provider = StaticMailboxProvider(MAILBOX)
        assert not ThreadContinuityLayer().applies_to(_ctx(provider, provider_thread_id=None))


class TestMessageIdLineage:
    async def test_finds_reply_by_reference_outside_thread(self) -> None:
        provider = StaticMailboxProvider(MAILBOX, [_reply("m-2", thread_id="other-thread")])
        result = await MessageIdLineageLayer().execute(_ctx(provider))
        assert result.found
        assert result.queries_issued == ["rfc822msgid:<out@example.com>"]

    async def test_rate_limit_is_classified(self) -> None:
        provider = StaticMailboxProvider(MAILBOX)
        provider.failures["find_by_reference"] = RateLimitedError(retry_after=30)
        result = await MessageIdLineageLayer().execute(_ctx(provider))
        assert result.error_kind == "rate_limited"


class TestInboxSweep:
    async def test_finds_reply_without_threading(self) -> None:
        provider = StaticMailboxProvider(
            MAILBOX, [_reply("m-3", thread_id=None, in_reply_to=None)]
        )
        result = await InboxSweepLayer().execute(_ctx(provider))
        assert result.found
        assert "from:(alice@acme.io)" in result.queries_issued[0]

    async def test_pagination_is_bounded(self) -> None:
        replies = [_reply(f"m-{i}", minutes=10 + i) for i in range(3)]
        provider = StaticMailboxProvider(MAILBOX, replies, page_size=1)
        result = await InboxSweepLayer(max_pages=2).execute(_ctx(provider))
        assert result.healthy
        assert len(result.evidence) == 2
        assert len(result.queries_issued) == 2
        assert result.notes == "stopped after 2 pages"

    async def test_ignores_mail_sent_before_the_outbound(self) -> None:
        provider = StaticMailboxProvider(MAILBOX, [_reply("m-old", minutes=-60)])
        result = await InboxSweepLayer().execute(_ctx(provider))
        assert result.healthy and not result.found


class TestAliasMatch:
    def test_candidates_exclude_primary(self) -> None:
        provider = StaticMailboxProvider(MAILBOX)
        aliases = candidate_aliases(_ctx(provider))
        assert "alice@acme.io" not in aliases
        assert "alice@mail.acme.io" in aliases

    async def test_finds_reply_from_generated_variant(self) -> None:
        provider = StaticMailboxProvider(MAILBOX, [_reply("m-4", sender="alice@mail.acme.io")])
        ctx = _ctx(provider)

        sweep = await InboxSweepLayer().execute(ctx)
        alias = await AliasMatchLayer().execute(ctx)

        assert not sweep.found
        assert alias.found
        assert alias.evidence[0].detected_alias == "alice@mail.acme.io"

    async def test_batches_searches(self) -> None:
        provider = StaticMailboxProvider(MAILBOX)
        ctx = _ctx(provider)
        result = await AliasMatchLayer(batch_size=1).execute(ctx)
        assert len(result.queries_issued) == len(candidate_aliases(ctx))

    async def test_authorization_failure(self) -> None:
        provider = StaticMailboxProvider(MAILBOX)
        provider.failures["search_messages"] = AuthorizationError("token revoked")
        result = await AliasMatchLayer().execute(_ctx(provider))
        assert result.error_kind == "authorization"


class TestRegistry:
    def test_provider_layer_sets(self) -> None:
        assert len(layer_names_for("gmail")) == 5
        assert "thread_continuity" not in layer_names_for("yahoo")
        assert layer_names_for("imap") == ("inbox_sweep", "alias_match")

    def test_applicable_layers_drop_missing_identifiers(self) -> None:
        provider = StaticMailboxProvider(MAILBOX)
        ctx = _ctx(provider, provider_thread_id=None, rfc822_message_id=None)
        names = [layer.name for layer in applicable_layers(ctx)]
        # No checkpoint store in this context either
        assert names == ["inbox_sweep", "alias_match"]


class _CrashingLayer(DetectionLayer):
    name = "crashing"

    async def execute(self, ctx: DetectionContext) -> LayerResult:
        raise RuntimeError("bug in layer")


class TestRunner:
    async def test_timeout_becomes_unhealthy_result(self) -> None:
        provider = StaticMailboxProvider(MAILBOX, [_reply("m-1")])
        provider.delays["get_thread"] = 1.0
        ctx = _ctx(provider)
        results = await run_layers([ThreadContinuityLayer(), InboxSweepLayer()], ctx, timeout=0.05)
        assert [r.layer for r in results] == ["thread_continuity", "inbox_sweep"]
        assert results[0].healthy is False
        assert results[0].error_kind == "timeout"
        assert results[1].healthy is True

    async def test_unexpected_exception_is_contained(self) -> None:
        provider = StaticMailboxProvider(MAILBOX)
        results = await run_layers([_CrashingLayer()], _ctx(provider), timeout=1)
        assert results[0].healthy is False
        assert results[0].error_kind == "internal"
        assert "bug in layer" in results[0].error


@pytest.mark.parametrize("layer_cls", [ThreadContinuityLayer, MessageIdLineageLayer, InboxSweepLayer])
async def test_layers_are_read_only(layer_cls) -> None:
    provider = StaticMailboxProvider(MAILBOX, [_outbound_copy(), _reply("m-1")])
    before = list(provider.messages)
    await layer_cls().execute(_ctx(provider))
    assert provider.messages == before
