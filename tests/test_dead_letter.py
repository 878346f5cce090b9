"""Tests for dead-letter creation and the review workflow."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from replywatch.db.types import utcnow
from replywatch.errors import NotFoundError, ReviewStateError
from replywatch.models.dead_letter import DeadLetterEntry
from replywatch.models.detection_job import DetectionJob
from replywatch.services.dead_letter import (
    apply_review_action,
    create_dead_letter,
    get_dead_letter,
    list_dead_letters,
)
from replywatch.services.job_queue import (
    VERDICT_FATAL,
    AttemptVerdict,
    create_on_send_job,
    record_attempt_outcome,
)
from tests.factories import lease_next, make_contact, make_outbound


@pytest.fixture
def outbound(db):
    return make_outbound(db, make_contact(db))


@pytest.fixture
def entry(db, outbound) -> DeadLetterEntry:
    create_on_send_job(db, outbound.id, initial_delay_seconds=0)
    job = lease_next(db, utcnow() + timedelta(seconds=1))
    record_attempt_outcome(
        db, job, AttemptVerdict(kind=VERDICT_FATAL, started_at=utcnow(), error="mailbox deleted")
    )
    return db.scalar(select(DeadLetterEntry).where(DeadLetterEntry.job_id == job.id))


def test_entry_carries_review_context(entry, outbound) -> None:
    assert entry.status == "pending_review"
    assert entry.total_attempts == 1
    assert entry.outbound_message_id == outbound.id
    context = entry.job_context
    assert context["contact_email"] == "alice@acme.io"
    assert context["subject"] == "Quick intro"
    assert context["last_error"] == "mailbox deleted"
    assert context["last_run"]["outcome"] == "failed"
    [attempt] = entry.failure_history
    assert attempt["error"] == "mailbox deleted"
    assert attempt["quorum_met"] is False


def test_create_is_idempotent_per_job(db, entry) -> None:
    job = db.get(DetectionJob, entry.job_id)
    again = create_dead_letter(db, job)
    assert again.id == entry.id
    assert db.scalar(select(func.count(DeadLetterEntry.id))) == 1


def test_retry_rearms_message_with_manual_recheck(db, entry) -> None:
    reviewed = apply_review_action(db, entry.id, "retry", "ops@example.com", notes="token renewed")

    assert reviewed.status == "retry_scheduled"
    assert reviewed.reviewed_by == "ops@example.com"
    retry_job = db.get(DetectionJob, reviewed.retry_job_id)
    assert retry_job.job_type == "manual_recheck"
    assert retry_job.status == "pending"
    assert retry_job.priority == 1
    assert retry_job.superseded_job_id == entry.job_id
    assert retry_job.payload["requested_by"] == "ops@example.com"
    assert retry_job.payload["dead_letter_id"] == entry.id
    assert db.get(DetectionJob, entry.job_id).status == "dead"

    with pytest.raises(ReviewStateError):
        apply_review_action(db, entry.id, "retry", "ops@example.com")


def test_mark_has_reply_resolves_and_flags_message(db, entry, outbound) -> None:
    reviewed = apply_review_action(db, entry.id, "mark_has_reply", "ops@example.com")
    assert reviewed.status == "resolved"
    db.refresh(outbound)
    assert outbound.reply_received is True


@pytest.mark.parametrize(
    "action, status",
    [("skip", "skipped"), ("mark_no_reply", "resolved")],
)
def test_closing_actions_are_final(db, entry, action: str, status: str) -> None:
    assert apply_review_action(db, entry.id, action, "ops@example.com").status == status
    with pytest.raises(ReviewStateError):
        apply_review_action(db, entry.id, "retry", "ops@example.com")


def test_manual_check_keeps_entry_open(db, entry) -> None:
    checked = apply_review_action(db, entry.id, "manual_check", "ops@example.com", notes="looked")
    assert checked.status == "manually_checked"
    assert checked.review_notes == "looked"
    assert apply_review_action(db, entry.id, "mark_no_reply", "ops@example.com").status == "resolved"


def test_unknown_action(db, entry) -> None:
    with pytest.raises(ValueError):
        apply_review_action(db, entry.id, "delete", "ops@example.com")


def test_unknown_entry(db) -> None:
    with pytest.raises(NotFoundError):
        get_dead_letter(db, 77)


def test_list_filters_by_status(db, entry) -> None:
    assert [e.id for e in list_dead_letters(db)] == [entry.id]
    assert list_dead_letters(db, status="resolved") == []
