"""SQLAlchemy model for business records anchored to the public ledger."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from ledgerlink.database import Base


class Record(Base):
    __tablename__ = "records"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    content: Mapped[dict] = mapped_column(JSON, nullable=False)
    # SHA-256 hex of the canonical content; doubles as the ledger memo
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # Set exactly once, by the dispatcher, when the anchor is committed locally
    tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    anchored_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @property
    def is_anchored(self) -> bool:
        return bool(self.tx_hash)
