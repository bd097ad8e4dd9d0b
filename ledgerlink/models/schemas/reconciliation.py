"""
Pydantic schemas for reconciliation runs and mismatch items.
"""
from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, ConfigDict


class ReconciliationRunRead(BaseModel):
    id: int
    provider_name: str
    status: str = Field(description="pending | running | completed | failed")
    start_cursor: Optional[str] = None
    cursor: Optional[str] = Field(None, description="Last fully processed page boundary")
    summary: Dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReconciliationItemRead(BaseModel):
    id: int
    run_id: int
    external_id: str
    local_record_id: Optional[int] = None
    mismatch_type: str = Field(description="MISSING_LOCAL | MISSING_PROVIDER | AMOUNT_MISMATCH | REFUND_MISSING | OTHER")
    details: Dict[str, Any] = Field(default_factory=dict)
    alerted: bool = False

    model_config = ConfigDict(from_attributes=True)
