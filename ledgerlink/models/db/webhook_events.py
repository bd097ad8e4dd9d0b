"""SQLAlchemy model for inbound webhook deliveries (dedup + audit log)."""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledgerlink.database import Base
from .enums import WebhookStatus

if TYPE_CHECKING:  # pragma: no cover
    from .payments import PaymentRecord


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        Index("ix_webhook_events_dedup", "provider_name", "external_event_id", "status"),
        Index("ix_webhook_events_retry", "status", "next_retry_at"),
        # at most one processed delivery per provider event
        Index(
            "uq_webhook_events_processed",
            "provider_name",
            "external_event_id",
            unique=True,
            sqlite_where=text("status = 'PROCESSED'"),
            postgresql_where=text("status = 'PROCESSED'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    webhook_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    provider_name: Mapped[str] = mapped_column(String(32), nullable=False)
    event_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    external_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    signature_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[WebhookStatus] = mapped_column(Enum(WebhookStatus), nullable=False, default=WebhookStatus.RECEIVED)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    raw_payload: Mapped[str] = mapped_column(Text, nullable=False, default="")
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    payment_record_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("payment_records.id"), nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    payment_record: Mapped[PaymentRecord | None] = relationship("PaymentRecord")
