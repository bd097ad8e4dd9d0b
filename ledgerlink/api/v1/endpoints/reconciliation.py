"""
Reconciliation management endpoints.

``POST /{provider}/run`` runs synchronously in the threadpool; feeds may spin
up their own event loop, so these handlers are plain ``def``.
"""
from typing import Optional, Dict
import time

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ledgerlink.api.deps import get_db, get_feeds, get_notifier, get_clock
from ledgerlink.integrations.feeds.base import ProviderFeed
from ledgerlink.models.db import MismatchType, ReconciliationItem, ReconciliationRun, RunStatus
from ledgerlink.models.schemas.base import ResponseBase
from ledgerlink.models.schemas.reconciliation import ReconciliationItemRead, ReconciliationRunRead
from ledgerlink.services.alerting import Notifier
from ledgerlink.services.reconciliation_engine import list_items, list_runs, run_reconciliation
from ledgerlink.utils.observability import request_id_for
from ledgerlink.utils import get_logger, log_business_event, log_performance
from ledgerlink.utils.time import Clock, ensure_utc

router = APIRouter()
logger = get_logger(__name__)


def _run_read(run: ReconciliationRun) -> dict:
    return ReconciliationRunRead(
        id=run.id,
        provider_name=run.provider_name,
        status=RunStatus(run.status).value,
        start_cursor=run.start_cursor,
        cursor=run.cursor,
        summary=dict(run.summary or {}),
        started_at=ensure_utc(run.started_at),
        finished_at=ensure_utc(run.finished_at),
    ).model_dump(mode="json")


def _item_read(item: ReconciliationItem) -> dict:
    return ReconciliationItemRead(
        id=item.id,
        run_id=item.run_id,
        external_id=item.external_id,
        local_record_id=item.local_record_id,
        mismatch_type=MismatchType(item.mismatch_type).value,
        details=dict(item.details or {}),
        alerted=item.alerted,
    ).model_dump(mode="json")


@router.post(
    "/{provider}/run",
    response_model=ResponseBase,
    summary="Run reconciliation for one provider now"
)
def trigger_reconciliation(
    provider: str,
    request: Request,
    cursor: Optional[str] = Query(None, description="Start from this cursor instead of the stored one"),
    full_scan: bool = Query(False, description="Ignore the stored cursor and scan from the beginning"),
    db: Session = Depends(get_db),
    feeds: Dict[str, ProviderFeed] = Depends(get_feeds),
    notifier: Notifier = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
):
    start_time = time.time()
    request_id = request_id_for(request)
    provider = provider.lower()
    logger.info("Manual reconciliation triggered", provider=provider, cursor=cursor, full_scan=full_scan, request_id=request_id)

    feed = feeds.get(provider)
    if feed is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No reconciliation feed configured for '{provider}'")

    run = run_reconciliation(db, feed, cursor=cursor, full_scan=full_scan, clock=clock, notifier=notifier)
    payload = _run_read(run)

    log_business_event(
        event_type="manual_reconciliation_triggered",
        details={"provider": provider, "run_id": run.id, "status": payload["status"]},
        request_id=request_id,
    )
    log_performance(
        operation="trigger_reconciliation",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"provider": provider, "run_id": run.id},
    )

    if run.status == RunStatus.FAILED:
        body = ResponseBase(
            success=False,
            message=f"Reconciliation run {run.id} failed: {payload['summary'].get('error')}",
            data={"run": payload},
        )
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=body.model_dump(mode="json"))
    return ResponseBase(success=True, message=f"Reconciliation run {run.id} completed", data={"run": payload})


@router.get(
    "/runs",
    response_model=ResponseBase,
    summary="List reconciliation runs"
)
def get_runs(
    request: Request,
    provider: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> ResponseBase:
    runs = list_runs(db, provider=provider.lower() if provider else None, limit=limit, offset=offset)
    return ResponseBase(
        success=True,
        message=f"{len(runs)} run(s)",
        data={"runs": [_run_read(r) for r in runs], "limit": limit, "offset": offset},
    )


@router.get(
    "/runs/{run_id}",
    response_model=ResponseBase,
    summary="Get one reconciliation run"
)
def get_run(run_id: int, db: Session = Depends(get_db)) -> ResponseBase:
    run = db.get(ReconciliationRun, run_id)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Reconciliation run {run_id} not found")
    return ResponseBase(success=True, message="Reconciliation run", data={"run": _run_read(run)})


@router.get(
    "/runs/{run_id}/items",
    response_model=ResponseBase,
    summary="List mismatch items of a run"
)
def get_run_items(
    run_id: int,
    mismatch_type: Optional[MismatchType] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> ResponseBase:
    if db.get(ReconciliationRun, run_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Reconciliation run {run_id} not found")
    items = list_items(db, run_id, mismatch_type=mismatch_type, limit=limit, offset=offset)
    return ResponseBase(
        success=True,
        message=f"{len(items)} item(s)",
        data={"items": [_item_read(i) for i in items], "limit": limit, "offset": offset},
    )
