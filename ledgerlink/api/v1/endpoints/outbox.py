"""
Outbox inspection and operator endpoints.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from ledgerlink.api.deps import get_db
from ledgerlink.models.db import JobStatus, OutboxJob
from ledgerlink.models.schemas.base import ResponseBase
from ledgerlink.models.schemas.outbox import OutboxJobRead
from ledgerlink.services import outbox as outbox_store
from ledgerlink.utils.observability import request_id_for
from ledgerlink.utils import get_logger, log_business_event
from ledgerlink.utils.time import ensure_utc

router = APIRouter()
logger = get_logger(__name__)


def _job_read(job: OutboxJob) -> dict:
    return OutboxJobRead(
        id=job.id,
        type=job.type,
        status=JobStatus(job.status).value,
        attempts=job.attempts,
        idempotency_key=job.idempotency_key,
        payload=dict(job.payload or {}),
        next_run_at=ensure_utc(job.next_run_at),
        last_error=job.last_error,
        completed_at=ensure_utc(job.completed_at),
        created_at=ensure_utc(job.created_at),
    ).model_dump(mode="json")


@router.get(
    "/jobs",
    response_model=ResponseBase,
    summary="List outbox jobs"
)
def get_jobs(
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    job_type: Optional[str] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> ResponseBase:
    jobs = outbox_store.list_jobs(db, status=status_filter, job_type=job_type, limit=limit, offset=offset)
    return ResponseBase(
        success=True,
        message=f"{len(jobs)} job(s)",
        data={"jobs": [_job_read(j) for j in jobs], "limit": limit, "offset": offset},
    )


@router.post(
    "/jobs/{job_id}/requeue",
    response_model=ResponseBase,
    summary="Requeue a failed job with a fresh attempt budget"
)
def requeue_job(job_id: int, request: Request, db: Session = Depends(get_db)) -> ResponseBase:
    request_id = request_id_for(request)
    job = db.get(OutboxJob, job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    if not outbox_store.requeue(db, job_id):
        db.refresh(job)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job {job_id} is {JobStatus(job.status).value}; only failed jobs can be requeued",
        )
    db.refresh(job)
    log_business_event("outbox_job_requeued", {"job_id": job_id, "job_type": job.type}, request_id=request_id)
    return ResponseBase(success=True, message=f"Job {job_id} requeued", data={"job": _job_read(job)})


@router.post(
    "/dispatch",
    response_model=ResponseBase,
    summary="Run one dispatcher tick now"
)
def dispatch_now(request: Request) -> ResponseBase:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Outbox dispatcher not configured")
    stats = dispatcher.run_once()
    return ResponseBase(success=True, message="Dispatcher tick finished", data=stats.as_dict())
