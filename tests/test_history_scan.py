"""History scan: checkpoint protocol against the static change stream."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select, update

from replywatch.detection.layers import HistoryScanLayer
from replywatch.models.history_candidate import HistoryCandidate
from replywatch.models.mailbox_checkpoint import MailboxCheckpoint
from replywatch.models.reply import Reply
from replywatch.pipeline.executor import build_context
from replywatch.providers.base import AuthorizationError, CursorExpiredError
from replywatch.services.checkpoint_store import CheckpointStore
from replywatch.services.job_queue import create_on_send_job
from tests.factories import MAILBOX, mailbox_for, make_contact, make_outbound, reply_message

BOB_EMAIL = "bob@acme.io"


@pytest.fixture
def scan(db):
    """Outbound message, its job, a mailbox holding only the sent copy, and a store."""
    outbound = make_outbound(db, make_contact(db))
    job, _ = create_on_send_job(db, outbound.id, initial_delay_seconds=0)
    provider = mailbox_for(outbound)
    store = CheckpointStore(db)
    ctx = build_context(db, job, provider, store)
    return outbound, provider, store, ctx


def _candidate_ids(db) -> list[str]:
    return list(
        db.scalars(
            select(HistoryCandidate.provider_message_id).order_by(HistoryCandidate.id)
        ).all()
    )


def _reply_count(db) -> int:
    return db.scalar(select(func.count(Reply.id)))


async def test_first_run_initializes_checkpoint_at_head(scan) -> None:
    _outbound, _provider, store, ctx = scan
    result = await HistoryScanLayer().execute(ctx)

    assert result.healthy is True
    assert result.found is False
    assert result.queries_issued == ["history:head"]
    assert result.notes == "checkpoint initialized at 1"
    assert store.get("gmail", MAILBOX).last_position == "1"


async def test_new_reply_is_recorded_then_checkpoint_advances(db, scan) -> None:
    outbound, provider, store, ctx = scan
    layer = HistoryScanLayer()
    await layer.execute(ctx)
    provider.deliver(reply_message(outbound))

    result = await layer.execute(ctx)

    assert result.healthy is True
    assert result.found is True
    assert [e.provider_message_id for e in result.evidence] == ["m-reply-1"]
    assert result.messages_scanned == 1
    assert _candidate_ids(db) == ["m-reply-1"]
    assert store.get("gmail", MAILBOX).last_position == "2"


async def test_layer_never_writes_replies(db, scan) -> None:
    outbound, provider, _store, ctx = scan
    layer = HistoryScanLayer()
    await layer.execute(ctx)
    provider.deliver(reply_message(outbound))

    result = await layer.execute(ctx)

    assert result.found is True
    assert _reply_count(db) == 0


async def test_unmatched_messages_are_recorded_before_advance(db, scan) -> None:
    outbound, provider, store, ctx = scan
    layer = HistoryScanLayer()
    await layer.execute(ctx)
    provider.deliver(reply_message(outbound, "m-other", sender="carol@elsewhere.org"))

    result = await layer.execute(ctx)

    assert result.found is False
    assert _candidate_ids(db) == ["m-other"]
    assert store.get("gmail", MAILBOX).last_position == "2"


async def test_reply_to_another_contact_survives_the_advance(db, scan) -> None:
    alice_outbound, provider, store, alice_ctx = scan
    bob = make_contact(db, email=BOB_EMAIL)
    bob_outbound = make_outbound(
        db,
        bob,
        thread_id="t-2",
        rfc822_message_id="<out-2@example.com>",
        provider_message_id="m-out-2",
    )
    bob_job, _ = create_on_send_job(db, bob_outbound.id, initial_delay_seconds=0)
    bob_ctx = build_context(db, bob_job, provider, store)

    layer = HistoryScanLayer()
    await layer.execute(alice_ctx)
    provider.deliver(
        reply_message(
            bob_outbound,
            "m-reply-bob",
            sender=BOB_EMAIL,
            thread_id="t-2",
            in_reply_to="<out-2@example.com>",
        )
    )
    provider.deliver(reply_message(alice_outbound, "m-reply-alice"))

    alice_result = await layer.execute(alice_ctx)
    assert [e.provider_message_id for e in alice_result.evidence] == ["m-reply-alice"]
    assert store.get("gmail", MAILBOX).last_position == "3"

    bob_result = await layer.execute(bob_ctx)

    assert bob_result.healthy is True
    assert bob_result.messages_scanned == 0
    assert bob_result.found is True
    assert [e.provider_message_id for e in bob_result.evidence] == ["m-reply-bob"]


async def test_crash_before_advance_rereads_range_without_duplicates(
    db, scan, monkeypatch
) -> None:
    outbound, provider, store, ctx = scan
    layer = HistoryScanLayer()
    await layer.execute(ctx)
    provider.deliver(reply_message(outbound))

    def crash(*args, **kwargs):
        raise RuntimeError("worker died")

    monkeypatch.setattr(store, "advance", crash)
    with pytest.raises(RuntimeError):
        await layer.execute(ctx)
    assert _candidate_ids(db) == ["m-reply-1"]
    assert store.get("gmail", MAILBOX).last_position == "1"

    monkeypatch.undo()
    result = await layer.execute(ctx)

    assert result.found is True
    assert _candidate_ids(db) == ["m-reply-1"]
    assert store.get("gmail", MAILBOX).last_position == "2"


async def test_lost_advance_race_leaves_other_writer_position(db, scan, monkeypatch) -> None:
    outbound, provider, store, ctx = scan
    layer = HistoryScanLayer()
    await layer.execute(ctx)
    provider.deliver(reply_message(outbound))
    record = ctx.candidate_store.record

    def record_then_race(*args, **kwargs):
        created = record(*args, **kwargs)
        db.execute(
            update(MailboxCheckpoint)
            .where(MailboxCheckpoint.mailbox_address == MAILBOX)
            .values(last_position="5")
        )
        db.commit()
        return created

    monkeypatch.setattr(ctx.candidate_store, "record", record_then_race)
    result = await layer.execute(ctx)

    assert result.healthy is True
    assert result.found is True
    assert result.notes == "checkpoint moved by another writer; left unchanged"
    assert _candidate_ids(db) == ["m-reply-1"]
    assert store.get("gmail", MAILBOX).last_position == "5"


async def test_unchanged_position_still_marks_the_read(db, scan) -> None:
    _outbound, _provider, store, ctx = scan
    layer = HistoryScanLayer()
    await layer.execute(ctx)
    db.execute(update(MailboxCheckpoint).values(last_checked_at=None))
    db.commit()

    await layer.execute(ctx)

    snapshot = store.get("gmail", MAILBOX)
    assert snapshot.last_position == "1"
    assert snapshot.last_checked_at is not None


async def test_more_changes_pending_is_noted(scan) -> None:
    outbound, provider, store, ctx = scan
    layer = HistoryScanLayer(page_size=1)
    await layer.execute(ctx)
    provider.deliver(reply_message(outbound, "m-reply-1"))
    provider.deliver(reply_message(outbound, "m-reply-2"))

    result = await layer.execute(ctx)

    assert result.notes == "more changes pending"
    assert store.get("gmail", MAILBOX).last_position == "2"


async def test_history_gap_resets_position(scan) -> None:
    outbound, provider, store, ctx = scan
    store.initialize(outbound.tenant_id, "gmail", MAILBOX, "1")
    provider.failures["list_changes"] = CursorExpiredError("history id too old")

    result = await HistoryScanLayer().execute(ctx)

    assert result.healthy is False
    assert result.error_kind == "history_gap"
    snapshot = store.get("gmail", MAILBOX)
    assert snapshot.last_position is None
    assert snapshot.consecutive_errors == 1


async def test_authorization_error_is_left_to_the_executor(scan) -> None:
    outbound, provider, store, ctx = scan
    store.initialize(outbound.tenant_id, "gmail", MAILBOX, "1")
    provider.failures["list_changes"] = AuthorizationError("invalid_grant")

    result = await HistoryScanLayer().execute(ctx)

    assert result.healthy is False
    assert result.error_kind == "authorization"
    snapshot = store.get("gmail", MAILBOX)
    assert snapshot.sync_status == "active"
    assert snapshot.consecutive_errors == 0
