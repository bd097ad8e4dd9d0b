"""SQLAlchemy models for reconciliation runs, their mismatch items and per-provider cursors."""
from __future__ import annotations

from datetime import datetime
from typing import List

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from ledgerlink.database import Base
from .enums import MismatchType, RunStatus


class ReconciliationRun(Base):
    __tablename__ = "reconciliation_runs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    provider_name: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[RunStatus] = mapped_column(Enum(RunStatus), nullable=False, default=RunStatus.PENDING, index=True)
    start_cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Last fully processed page boundary reached by this run
    cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    items: Mapped[List["ReconciliationItem"]] = relationship(
        "ReconciliationItem", back_populates="run", cascade="all, delete-orphan", order_by="ReconciliationItem.id"
    )


class ReconciliationItem(Base):
    __tablename__ = "reconciliation_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("reconciliation_runs.id"), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    local_record_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("payment_records.id"), nullable=True)
    mismatch_type: Mapped[MismatchType] = mapped_column(Enum(MismatchType), nullable=False, index=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    alerted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    run: Mapped[ReconciliationRun] = relationship("ReconciliationRun", back_populates="items")


class ProviderCursor(Base):
    """Durable bookmark into a provider's transaction feed (one row per provider)."""
    __tablename__ = "provider_cursors"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    provider_name: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=func.now(), nullable=True)
