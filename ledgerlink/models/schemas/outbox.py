"""
Pydantic schemas for outbox job inspection.
"""
from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict


class OutboxJobRead(BaseModel):
    id: int
    type: str
    status: str
    attempts: int
    idempotency_key: str
    payload: Dict[str, Any]
    next_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
