"""Review workflow endpoints: dead letters, anomalies and job history."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from replywatch.api.deps import get_db, require_internal_token
from replywatch.errors import JobStateError, NotFoundError, ReviewStateError
from replywatch.schemas.jobs import DetectionJobRead
from replywatch.schemas.review import (
    AnomalyRead,
    DeadLetterRead,
    ResolveAnomalyRequest,
    ReviewActionRequest,
)
from replywatch.services import anomalies, dead_letter, job_queue

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_internal_token)])


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (ReviewStateError, JobStateError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=422, detail=str(exc))


@router.get("/dead_letters", response_model=list[DeadLetterRead])
def list_dead_letters(
    status: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return dead_letter.list_dead_letters(db, status=status, limit=limit)


@router.get("/dead_letters/{entry_id}", response_model=DeadLetterRead)
def get_dead_letter(entry_id: int, db: Session = Depends(get_db)):
    try:
        return dead_letter.get_dead_letter(db, entry_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc


@router.post("/dead_letters/{entry_id}/action", response_model=DeadLetterRead)
def review_dead_letter(entry_id: int, body: ReviewActionRequest, db: Session = Depends(get_db)):
    """Apply a review decision (retry, manual_check, skip, mark_no_reply, mark_has_reply)."""
    try:
        return dead_letter.apply_review_action(
            db, entry_id, body.action, reviewed_by=body.reviewed_by, notes=body.notes
        )
    except (NotFoundError, ReviewStateError, JobStateError, ValueError) as exc:
        logger.info("Review action rejected: dead_letter_id=%s reason=%s", entry_id, exc)
        raise _http_error(exc) from exc


@router.get("/anomalies", response_model=list[AnomalyRead])
def list_anomalies(
    status: str | None = Query(None),
    severity: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return anomalies.list_anomalies(db, status=status, severity=severity, limit=limit)


@router.post("/anomalies/{anomaly_id}/resolve", response_model=AnomalyRead)
def resolve_anomaly(anomaly_id: int, body: ResolveAnomalyRequest, db: Session = Depends(get_db)):
    try:
        return anomalies.resolve_anomaly(
            db, anomaly_id, status=body.status, resolution=body.resolution
        )
    except (NotFoundError, ReviewStateError, ValueError) as exc:
        raise _http_error(exc) from exc


@router.get("/jobs/{job_id}", response_model=DetectionJobRead)
def get_job(job_id: int, db: Session = Depends(get_db)):
    """Job state plus its append-only run history."""
    try:
        return job_queue.get_job(db, job_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc
