"""Review workflow and checkpoint API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict


class DeadLetterRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: int
    tenant_id: int
    outbound_message_id: int | None = None
    contact_id: int | None = None
    moved_at: datetime
    total_attempts: int
    last_attempt_at: datetime | None = None
    failure_history: list[dict[str, Any]]
    job_context: dict[str, Any]
    requires_manual_review: bool
    status: str
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    review_action: str | None = None
    review_notes: str | None = None
    retry_job_id: int | None = None


class ReviewActionRequest(BaseModel):
    action: Literal["retry", "manual_check", "skip", "mark_no_reply", "mark_has_reply"]
    reviewed_by: str
    notes: str | None = None


class AnomalyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: int | None = None
    outbound_message_id: int | None = None
    job_id: int | None = None
    provider: str | None = None
    anomaly_type: str
    severity: str
    details: dict[str, Any]
    requires_manual_review: bool
    status: str
    resolved_at: datetime | None = None
    resolution: str | None = None
    created_at: datetime


class ResolveAnomalyRequest(BaseModel):
    status: Literal["investigating", "resolved", "wont_fix"] = "resolved"
    resolution: str | None = None


class CheckpointResumeRequest(BaseModel):
    provider: str
    mailbox_address: str


class CheckpointRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider: str
    mailbox_address: str
    last_position: str | None = None
    last_checked_at: datetime | None = None
    sync_status: str
    consecutive_errors: int
    error_message: str | None = None
