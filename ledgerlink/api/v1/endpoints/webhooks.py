"""
Payment provider webhook endpoints.

The raw body is read before any parsing because signatures are computed over
the exact bytes the provider sent. Every understood delivery (including
duplicates and deliveries whose processing failed and will be retried) gets a
200; only signature and configuration problems answer non-2xx.
"""
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ledgerlink.api.deps import get_db, get_webhook_ingress
from ledgerlink.exceptions import ConfigurationError, WebhookSignatureError
from ledgerlink.models.db import WebhookStatus
from ledgerlink.models.schemas.base import ResponseBase
from ledgerlink.models.schemas.webhooks import WebhookAck, WebhookStatusRead
from ledgerlink.services.webhook_ingress import WebhookIngress, get_event_status, resolve_provider
from ledgerlink.utils.observability import request_id_for
from ledgerlink.utils import get_logger, log_performance

router = APIRouter()
logger = get_logger(__name__)


async def _receive(
    request: Request,
    provider: Optional[str],
    db: Session,
    ingress: WebhookIngress,
) -> ResponseBase:
    start_time = time.time()
    request_id = request_id_for(request)
    body = await request.body()
    resolved = resolve_provider(provider, request.headers)

    try:
        result = await run_in_threadpool(
            ingress.ingest,
            db,
            resolved,
            body,
            request.headers,
            request_id=request_id,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("User-Agent"),
        )
    except WebhookSignatureError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except ConfigurationError as e:
        logger.error("Webhook provider misconfigured", provider=resolved, error=str(e), request_id=request_id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="webhook secret not configured")

    log_performance(
        operation="receive_webhook",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"provider": resolved, "status": result.status.value},
    )
    ack = WebhookAck(
        webhook_id=result.webhook_id,
        status=result.status.value,
        payment_record_id=result.payment_record_id,
        retry_scheduled=result.retry_scheduled,
    )
    accepted = result.status in (WebhookStatus.PROCESSED, WebhookStatus.DUPLICATE) or result.retry_scheduled
    return ResponseBase(success=accepted, message=result.message, data=ack.model_dump())


@router.post(
    "",
    response_model=ResponseBase,
    summary="Receive a payment webhook (provider from header)"
)
async def receive_webhook(
    request: Request,
    db: Session = Depends(get_db),
    ingress: WebhookIngress = Depends(get_webhook_ingress),
) -> ResponseBase:
    return await _receive(request, None, db, ingress)


@router.get(
    "/status/{webhook_id}",
    response_model=ResponseBase,
    summary="Get processing status of a webhook delivery"
)
def webhook_status(
    webhook_id: str,
    request: Request,
    db: Session = Depends(get_db),
) -> ResponseBase:
    request_id = request_id_for(request)
    info = get_event_status(db, webhook_id)
    if info is None:
        logger.info("Webhook status lookup miss", webhook_id=webhook_id, request_id=request_id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook not found")
    return ResponseBase(
        success=True,
        message="Webhook status",
        data=WebhookStatusRead(**info).model_dump(mode="json"),
    )


@router.post(
    "/{provider}",
    response_model=ResponseBase,
    summary="Receive a payment webhook for a specific provider"
)
async def receive_provider_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    ingress: WebhookIngress = Depends(get_webhook_ingress),
) -> ResponseBase:
    return await _receive(request, provider, db, ingress)
