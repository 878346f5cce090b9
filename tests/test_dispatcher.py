"""Dispatch cycle and worker pool tests."""

from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from replywatch.config import get_settings
from replywatch.db.types import utcnow
from replywatch.models.alert_delivery import AlertDelivery
from replywatch.models.dead_letter import DeadLetterEntry
from replywatch.models.detection_job import DetectionJob
from replywatch.pipeline.dispatcher import mailbox_usage, run_dispatch_cycle, run_worker_pool
from replywatch.services.checkpoint_store import CheckpointStore
from replywatch.services.job_queue import (
    create_history_sync_job,
    create_on_send_job,
    job_counts_by_status,
)
from tests.factories import MAILBOX, mailbox_for, make_contact, make_outbound, reply_message


@pytest.fixture
def two_outbound(db):
    contact = make_contact(db)
    first = make_outbound(db, contact)
    second = make_outbound(
        db,
        contact,
        thread_id="t-2",
        provider_message_id="m-out-2",
        rfc822_message_id="<out-2@example.com>",
        subject="Following up",
    )
    past = utcnow() - timedelta(seconds=1)
    for outbound in (first, second):
        create_on_send_job(db, outbound.id, initial_delay_seconds=0, now=past)
    return first, second


@pytest.fixture
def mailbox(registry, two_outbound):
    first, _ = two_outbound
    provider = mailbox_for(first, reply_message(first))
    registry.register("gmail", lambda address: provider)
    return provider


async def test_cycle_executes_due_jobs(db, registry, mailbox) -> None:
    summary = await run_dispatch_cycle(db, registry)

    assert summary.promoted == 2
    assert summary.executed == 2
    assert summary.outcomes == {"verified": 2}
    assert summary.skipped_mailboxes == []
    assert job_counts_by_status(db) == {"verified": 2}
    assert mailbox_usage(db, utcnow())[("gmail", MAILBOX)] == 2


async def test_batch_size_bounds_the_cycle(db, registry, mailbox) -> None:
    summary = await run_dispatch_cycle(db, registry, batch_size=1)
    assert summary.executed == 1
    assert job_counts_by_status(db) == {"verified": 1, "queued": 1}


async def test_mailbox_budget_throttles_runs(db, registry, mailbox, monkeypatch) -> None:
    monkeypatch.setenv("MAILBOX_MAX_JOBS_PER_MINUTE", "1")
    get_settings.cache_clear()

    first = await run_dispatch_cycle(db, registry)
    assert first.executed == 1

    second = await run_dispatch_cycle(db, registry)
    assert second.executed == 0
    assert second.skipped_mailboxes == [f"gmail:{MAILBOX}"]
    assert job_counts_by_status(db) == {"verified": 1, "queued": 1}


async def test_expired_mailbox_is_not_scheduled(db, registry, mailbox) -> None:
    CheckpointStore(db).record_error("gmail", MAILBOX, "invalid_grant", auth_error=True, tenant_id=1)

    summary = await run_dispatch_cycle(db, registry)

    assert summary.executed == 0
    assert summary.skipped_mailboxes == [f"gmail:{MAILBOX}"]
    assert mailbox.calls == []
    assert job_counts_by_status(db) == {"queued": 2}


async def test_unregistered_provider_dead_letters_job(db, registry, two_outbound) -> None:
    summary = await run_dispatch_cycle(db, registry, batch_size=1)

    assert summary.outcomes == {"dead": 1}
    entry = db.scalar(select(DeadLetterEntry))
    assert entry.requires_manual_review is True
    assert "No mailbox provider registered" in entry.job_context["last_error"]


async def test_worker_pool_drains_queue_until_stopped(db, session_factory, registry, mailbox) -> None:
    db.commit()
    stop = asyncio.Event()
    asyncio.get_running_loop().call_later(0.5, stop.set)

    executed = await run_worker_pool(
        registry, session_factory, stop, concurrency=1, poll_interval=0.01
    )

    assert executed == 2
    statuses = db.scalars(select(DetectionJob.status)).all()
    assert sorted(statuses) == ["verified", "verified"]


async def test_alerts_are_sent_off_the_event_loop(db, registry, two_outbound) -> None:
    loop_thread = threading.get_ident()
    sent_from = []

    def fake_send(subject, body, settings=None):
        sent_from.append(threading.get_ident())
        return True

    with patch("replywatch.services.alerting.send_alert_email", side_effect=fake_send):
        await run_dispatch_cycle(db, registry, batch_size=1)

    assert len(sent_from) == 1
    assert sent_from[0] != loop_thread
    alert = db.scalar(select(AlertDelivery))
    assert alert.alert_type == "dead_letter_manual_review"
    assert alert.delivered is True


async def test_history_sync_job_is_dispatched(db, registry) -> None:
    outbound = make_outbound(db, make_contact(db))
    provider = mailbox_for(outbound)
    registry.register("gmail", lambda address: provider)
    create_history_sync_job(db, 1, "gmail", MAILBOX, scheduled_for=utcnow() - timedelta(seconds=1))

    summary = await run_dispatch_cycle(db, registry)

    assert summary.outcomes == {"verified": 1}
    assert provider.calls == ["get_current_cursor"]
    assert mailbox_usage(db, utcnow())[("gmail", MAILBOX)] == 1
