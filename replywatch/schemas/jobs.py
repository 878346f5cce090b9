"""Job payload variants and job API schemas.

DetectionJob.payload is a closed tagged union keyed by ``kind`` (= job_type);
each job type's fields are declared here rather than stored as free-form JSON.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class OnSendPayload(_Payload):
    kind: Literal["on_send"] = "on_send"
    triggered_by: str = "send_event"
    initial_delay_seconds: int = 0


class ScheduledPayload(_Payload):
    kind: Literal["scheduled"] = "scheduled"
    check_number: int = Field(default=1, ge=1)
    # Change-stream message from the contact that prompted this check
    candidate_message_id: str | None = None


class ReconciliationPayload(_Payload):
    kind: Literal["reconciliation"] = "reconciliation"
    sweep_run_id: int | None = None
    run_type: Literal["hourly", "nightly", "manual"] = "manual"


class ManualRecheckPayload(_Payload):
    kind: Literal["manual_recheck"] = "manual_recheck"
    requested_by: str
    dead_letter_id: int | None = None
    reason: str | None = None


class HistorySyncPayload(_Payload):
    kind: Literal["history_sync"] = "history_sync"
    mailbox_address: str


JobPayload = Annotated[
    OnSendPayload
    | ScheduledPayload
    | ReconciliationPayload
    | ManualRecheckPayload
    | HistorySyncPayload,
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter[Any] = TypeAdapter(JobPayload)


def parse_job_payload(data: dict[str, Any] | None, job_type: str) -> JobPayload | None:
    """Validate a stored payload. Raises ValueError when kind disagrees with job_type."""
    if data is None:
        return None
    payload = _payload_adapter.validate_python(data)
    if payload.kind != job_type:
        raise ValueError(f"payload kind {payload.kind!r} does not match job_type {job_type!r}")
    return payload


def dump_job_payload(payload: JobPayload | None) -> dict[str, Any] | None:
    if payload is None:
        return None
    return payload.model_dump(mode="json")


class OutboundSentRequest(BaseModel):
    """Body for POST /internal/outbound_sent."""

    outbound_message_id: int
    priority: int | None = None
    initial_delay_seconds: int | None = Field(default=None, ge=0)


class JobCreatedResponse(BaseModel):
    job_id: int
    status: str
    created: bool
    scheduled_for: datetime


class CancelJobRequest(BaseModel):
    reason: str = "cancelled"


class DetectionRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    run_number: int
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    from_status: str
    to_status: str
    layer_results: list[dict[str, Any]] | None = None
    quorum_result: dict[str, Any] | None = None
    reply_found: bool | None = None
    reply_message_id: str | None = None
    reply_persisted: bool | None = None
    outcome: str
    error_message: str | None = None


class DetectionJobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: int
    outbound_message_id: int | None = None
    contact_id: int | None = None
    job_type: str
    status: str
    priority: int
    provider: str
    mailbox_address: str
    scheduled_for: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    attempts: int
    max_attempts: int
    next_retry_at: datetime | None = None
    layers_executed: int
    layers_healthy: int
    quorum_met: bool | None = None
    reply_found: bool | None = None
    last_error: str | None = None
    error_count: int
    payload: dict[str, Any] | None = None
    cancel_requested: bool
    runs: list[DetectionRunRead] = Field(default_factory=list)
