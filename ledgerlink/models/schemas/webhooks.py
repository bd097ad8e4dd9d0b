"""
Pydantic schemas for webhook ingestion responses and status queries.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class WebhookAck(BaseModel):
    """Body returned to the provider for every understood delivery."""
    webhook_id: str
    status: str = Field(description="processed | duplicate | failed")
    payment_record_id: Optional[int] = None
    retry_scheduled: bool = False


class WebhookStatusRead(BaseModel):
    webhook_id: str
    status: str
    provider: str
    event_type: Optional[str] = None
    external_event_id: Optional[str] = None
    received_at: Optional[datetime] = None
    processing_duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    payment_record_id: Optional[int] = None
