"""End-to-end detection attempts against the static mailbox provider."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from replywatch.db.types import utcnow
from replywatch.models.alert_delivery import AlertDelivery
from replywatch.models.anomaly import Anomaly
from replywatch.models.dead_letter import DeadLetterEntry
from replywatch.models.history_candidate import HistoryCandidate
from replywatch.models.reply import Reply
from replywatch.pipeline.executor import execute_job
from replywatch.providers.base import AuthorizationError, TransientProviderError
from replywatch.services.checkpoint_store import CheckpointStore
from replywatch.services.job_queue import create_job, create_on_send_job
from tests.factories import MAILBOX, lease_next, mailbox_for, make_contact, make_outbound, reply_message

PROVIDER_METHODS = (
    "get_thread",
    "search_messages",
    "find_by_reference",
    "get_message",
    "get_current_cursor",
    "list_changes",
)


def _fail_everything(provider, error) -> None:
    for method in PROVIDER_METHODS:
        provider.failures[method] = error


def _anomaly_types(db) -> list[str]:
    return [a.anomaly_type for a in db.scalars(select(Anomaly).order_by(Anomaly.id)).all()]


@pytest.fixture
def outbound(db):
    return make_outbound(db, make_contact(db))


async def test_reply_verified_when_every_layer_is_healthy(db, outbound) -> None:
    provider = mailbox_for(outbound, reply_message(outbound))
    create_on_send_job(db, outbound.id, initial_delay_seconds=0)
    job = lease_next(db, utcnow() + timedelta(seconds=1))

    outcome = await execute_job(db, job, provider)

    assert outcome.status == "verified"
    assert outcome.run_outcome == "success"
    assert outcome.reply_found is True
    assert outcome.quorum.quorum_met is True
    assert outcome.quorum.healthy_layers == [
        "thread_continuity",
        "message_id_lineage",
        "inbox_sweep",
        "history_scan",
        "alias_match",
    ]
    reply = db.scalar(select(Reply))
    assert reply.id == outcome.reply_id
    assert reply.detected_by == "thread_continuity"
    assert reply.provider_message_id == "m-reply-1"
    db.refresh(outbound)
    assert outbound.reply_received is True
    assert job.layers_executed == 5
    assert job.layers_healthy == 5
    assert job.runs[-1].reply_persisted is True


async def test_verified_without_reply(db, outbound) -> None:
    provider = mailbox_for(outbound)
    create_on_send_job(db, outbound.id, initial_delay_seconds=0)
    job = lease_next(db, utcnow() + timedelta(seconds=1))

    outcome = await execute_job(db, job, provider)

    assert outcome.status == "verified"
    assert outcome.reply_found is False
    assert job.reply_found is False
    assert db.scalar(select(func.count(Reply.id))) == 0


async def test_transient_failures_dead_letter_after_max_attempts(db, outbound) -> None:
    provider = mailbox_for(outbound, reply_message(outbound))
    _fail_everything(provider, TransientProviderError("503 backend error"))
    job, _ = create_job(db, outbound.id, "on_send", scheduled_for=utcnow(), max_attempts=3)

    statuses = []
    for hours in (1, 4, 12):
        leased = lease_next(db, utcnow() + timedelta(hours=hours))
        outcome = await execute_job(db, leased, provider)
        statuses.append(outcome.status)
        assert outcome.quorum.quorum_met is False
        assert outcome.reply_found is False

    assert statuses == ["pending", "pending", "dead"]
    entry = db.scalar(select(DeadLetterEntry).where(DeadLetterEntry.job_id == job.id))
    assert entry.total_attempts == 3
    assert entry.requires_manual_review is False
    assert len(entry.failure_history) == 3
    # A reply was never trusted from unhealthy layers
    assert db.scalar(select(func.count(Reply.id))) == 0
    assert "quorum_failure" in _anomaly_types(db)


async def test_reply_seen_by_too_few_layers_is_not_recorded(db, outbound) -> None:
    provider = mailbox_for(outbound)
    CheckpointStore(db).initialize(outbound.tenant_id, "gmail", MAILBOX, "1")
    provider.deliver(reply_message(outbound))
    for method in ("get_thread", "search_messages", "find_by_reference", "get_message"):
        provider.failures[method] = TransientProviderError("503 backend error")
    create_on_send_job(db, outbound.id, initial_delay_seconds=0)
    job = lease_next(db, utcnow() + timedelta(seconds=1))

    outcome = await execute_job(db, job, provider)

    assert outcome.status == "pending"
    assert outcome.quorum.quorum_met is False
    assert outcome.quorum.healthy_layers == ["history_scan"]
    assert db.scalar(select(func.count(Reply.id))) == 0
    db.refresh(outbound)
    assert outbound.reply_received is False
    # The page was still recorded before the checkpoint moved
    assert db.scalar(select(HistoryCandidate.provider_message_id)) == "m-reply-1"
    assert CheckpointStore(db).get("gmail", MAILBOX).last_position == "2"

    provider.failures.clear()
    retry = lease_next(db, utcnow() + timedelta(hours=1))
    outcome = await execute_job(db, retry, provider)

    assert outcome.reply_found is True
    assert db.scalar(select(func.count(Reply.id))) == 1


async def test_revoked_authorization_fails_fast_for_review(db, outbound) -> None:
    provider = mailbox_for(outbound, reply_message(outbound))
    _fail_everything(provider, AuthorizationError("invalid_grant"))
    create_on_send_job(db, outbound.id, initial_delay_seconds=0)
    job = lease_next(db, utcnow() + timedelta(seconds=1))

    outcome = await execute_job(db, job, provider)

    assert outcome.status == "dead"
    assert job.attempts == 1
    entry = db.scalar(select(DeadLetterEntry))
    assert entry.requires_manual_review is True
    checkpoint = CheckpointStore(db).get("gmail", MAILBOX)
    assert checkpoint.sync_status == "token_expired"
    assert _anomaly_types(db) == ["token_expired"]
    alert_types = sorted(a.alert_type for a in db.scalars(select(AlertDelivery)).all())
    assert alert_types == ["dead_letter_manual_review", "token_expired"]


async def test_slow_layer_times_out_without_losing_quorum(db, outbound) -> None:
    provider = mailbox_for(outbound, reply_message(outbound))
    provider.delays["get_thread"] = 1.0
    create_on_send_job(db, outbound.id, initial_delay_seconds=0)
    job = lease_next(db, utcnow() + timedelta(seconds=1))

    outcome = await execute_job(db, job, provider, layer_timeout=0.05)

    assert outcome.status == "verified"
    assert outcome.reply_found is True
    assert outcome.quorum.failed_layers == ["thread_continuity"]
    assert db.scalar(select(Reply.detected_by)) == "message_id_lineage"
    assert _anomaly_types(db) == ["layer_timeout"]


async def test_late_detection_is_flagged_stale(db) -> None:
    outbound = make_outbound(db, make_contact(db), sent_at=utcnow() - timedelta(hours=72))
    provider = mailbox_for(outbound, reply_message(outbound))
    create_on_send_job(db, outbound.id, initial_delay_seconds=0)
    job = lease_next(db, utcnow() + timedelta(seconds=1))

    outcome = await execute_job(db, job, provider)

    assert outcome.reply_found is True
    assert _anomaly_types(db) == ["stale_detection"]


async def test_job_must_be_leased_first(db, outbound) -> None:
    job, _ = create_on_send_job(db, outbound.id)
    with pytest.raises(ValueError):
        await execute_job(db, job, mailbox_for(outbound))
