from __future__ import annotations
"""SQLAlchemy model for the reconciliation lease (single row)."""
from datetime import datetime
from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from order_reconciliation.database import Base

SINGLETON_LOCK_ID = "singleton"

class ReconciliationLock(Base):
    __tablename__ = "reconciliation_locks"
    # Primary key collision on insert is what makes acquisition exclusive.
    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=SINGLETON_LOCK_ID)
    holder_id: Mapped[str] = mapped_column(String(128), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
