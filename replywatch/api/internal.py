"""Internal endpoints for the send hook, cron triggers and operators.

These endpoints are secured with a static token (X-Internal-Token header).
They are meant for automated triggers and operator tooling only.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from replywatch.api.deps import get_db, get_provider_registry, require_internal_token
from replywatch.errors import NotFoundError
from replywatch.providers.registry import ProviderRegistry
from replywatch.schemas.jobs import (
    CancelJobRequest,
    DetectionJobRead,
    JobCreatedResponse,
    OutboundSentRequest,
)
from replywatch.schemas.review import CheckpointRead, CheckpointResumeRequest

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal",
    include_in_schema=False,
    dependencies=[Depends(require_internal_token)],
)


@router.post("/outbound_sent", response_model=JobCreatedResponse)
def outbound_sent(body: OutboundSentRequest, db: Session = Depends(get_db)):
    """Create the on_send detection job for a just-sent message.

    Idempotent: a repeated call returns the already active job with created=false.
    """
    from replywatch.services.job_queue import create_on_send_job

    try:
        job, created = create_on_send_job(
            db,
            body.outbound_message_id,
            initial_delay_seconds=body.initial_delay_seconds,
            priority=body.priority,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return JobCreatedResponse(
        job_id=job.id, status=job.status, created=created, scheduled_for=job.scheduled_for
    )


@router.post("/run_dispatch")
async def run_dispatch(
    batch_size: int | None = Query(None, ge=1, le=500),
    db: Session = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    """Promote due jobs and execute one batch in this process."""
    from replywatch.pipeline.dispatcher import run_dispatch_cycle

    try:
        summary = await run_dispatch_cycle(db, registry, batch_size=batch_size)
    except Exception as exc:
        logger.exception("Internal dispatch failed")
        return {"status": "failed", "error": str(exc)}
    return {"status": "completed", **summary.as_dict()}


@router.post("/run_reconciliation")
def run_reconciliation(
    run_type: str = Query("manual", pattern="^(hourly|nightly|manual)$"),
    tenant_id: int | None = Query(None),
    db: Session = Depends(get_db),
):
    """Trigger a reconciliation sweep. Returns the ReconciliationRun summary."""
    from replywatch.services.reconciliation import run_reconciliation_sweep

    run = run_reconciliation_sweep(db, run_type=run_type, tenant_id=tenant_id)
    return {
        "status": run.outcome,
        "reconciliation_run_id": run.id,
        "messages_checked": run.messages_checked,
        "jobs_created": run.jobs_created,
        "anomalies_logged": run.anomalies_logged,
        "errors": run.errors,
    }


@router.post("/run_history_sync")
def run_history_sync(tenant_id: int | None = Query(None), db: Session = Depends(get_db)):
    """Queue a history_sync job for every mailbox with watched messages."""
    from replywatch.services.history_sync import schedule_history_sync_jobs

    jobs = schedule_history_sync_jobs(db, tenant_id=tenant_id)
    return {
        "status": "completed",
        "jobs_created": len(jobs),
        "mailboxes": [f"{job.provider}:{job.mailbox_address}" for job in jobs],
    }


@router.post("/run_metrics")
def run_metrics(
    period_type: str = Query("hourly", pattern="^(hourly|daily|weekly)$"),
    db: Session = Depends(get_db),
):
    """Write metrics snapshots for the last closed period."""
    from replywatch.services.metrics import run_metrics_rollup

    snapshots = run_metrics_rollup(db, period_type=period_type)
    return {
        "status": "completed" if snapshots else "failed",
        "snapshots": [
            {
                "id": s.id,
                "tenant_id": s.tenant_id,
                "period_start": s.period_start.isoformat(),
                "total_jobs_processed": s.total_jobs_processed,
            }
            for s in snapshots
        ],
    }


@router.post("/jobs/{job_id}/cancel", response_model=DetectionJobRead)
def cancel(job_id: int, body: CancelJobRequest | None = None, db: Session = Depends(get_db)):
    from replywatch.services.job_queue import cancel_job

    reason = body.reason if body is not None else "cancelled"
    try:
        return cancel_job(db, job_id, reason)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/checkpoints/resume", response_model=CheckpointRead)
def resume_checkpoint(body: CheckpointResumeRequest, db: Session = Depends(get_db)):
    """Re-enable a mailbox after the user re-authorized it."""
    from replywatch.services.checkpoint_store import CheckpointStore

    try:
        return CheckpointStore(db).resume(body.provider, body.mailbox_address)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
