"""
Anchored record endpoints: create a record (queued for ledger anchoring in the
same transaction) and verify it against the ledger.
"""
from typing import Any, Dict
import time

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ledgerlink.api.deps import get_db
from ledgerlink.models.db import JobStatus
from ledgerlink.models.schemas.base import ResponseBase
from ledgerlink.services.outbox import save_and_anchor_record
from ledgerlink.services.records import verify_record
from ledgerlink.utils.observability import request_id_for
from ledgerlink.utils import get_logger, log_business_event, log_performance
from ledgerlink.utils.time import ensure_utc

router = APIRouter()
logger = get_logger(__name__)


@router.post(
    "",
    response_model=ResponseBase,
    status_code=status.HTTP_201_CREATED,
    summary="Create a record and queue its ledger anchor"
)
def create_record(
    request: Request,
    content: Dict[str, Any] = Body(..., description="Arbitrary JSON document to anchor"),
    db: Session = Depends(get_db),
) -> ResponseBase:
    start_time = time.time()
    request_id = request_id_for(request)
    clock = getattr(request.app.state, "clock", None)
    record, job = save_and_anchor_record(db, content, now=clock.now() if clock else None)

    log_business_event(
        event_type="record_created",
        details={"record_id": record.id, "job_id": job.id, "content_hash": record.content_hash},
        request_id=request_id,
    )
    log_performance(operation="create_record", duration_ms=(time.time() - start_time) * 1000)
    return ResponseBase(
        success=True,
        message="Record stored; ledger anchor queued",
        data={
            "record_id": record.id,
            "content_hash": record.content_hash,
            "job_id": job.id,
            "job_status": JobStatus(job.status).value,
            "created_at": ensure_utc(record.created_at).isoformat() if record.created_at else None,
        },
    )


@router.get(
    "/{record_id}/verify",
    response_model=ResponseBase,
    summary="Compare a record's hash with the memo anchored on the ledger"
)
def verify(record_id: int, request: Request, db: Session = Depends(get_db)) -> ResponseBase:
    ledger = getattr(request.app.state, "ledger", None)
    if ledger is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Ledger client not configured")
    try:
        result = verify_record(db, ledger, record_id)
    except LookupError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Record {record_id} not found")
    message = "Record verified" if result["valid"] else "Record not verified"
    return ResponseBase(success=bool(result["valid"]), message=message, data=result)
