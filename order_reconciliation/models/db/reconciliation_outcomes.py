from __future__ import annotations
"""SQLAlchemy model for per-order reconciliation outcomes (append-only audit)."""
from datetime import datetime
from sqlalchemy import Integer, String, Text, DateTime, Enum, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from order_reconciliation.database import Base
from order_reconciliation.utils.time import utc_now
from .enums import OrderStatus, OutcomeKind, ErrorKind, enum_values

class ReconciliationOutcome(Base):
    __tablename__ = "reconciliation_outcomes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payment_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)

    kind: Mapped[OutcomeKind] = mapped_column(
        Enum(OutcomeKind, native_enum=False, values_callable=enum_values, length=16), nullable=False, index=True
    )
    previous_status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, native_enum=False, values_callable=enum_values, length=16), nullable=False
    )
    new_status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, native_enum=False, values_callable=enum_values, length=16), nullable=False
    )
    gateway_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    error_kind: Mapped[ErrorKind | None] = mapped_column(
        Enum(ErrorKind, native_enum=False, values_callable=enum_values, length=32), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Amount validation (integer centavos)
    amount_mismatch: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expected_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gateway_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gateway_fee: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)
