from __future__ import annotations
"""SQLAlchemy model for storefront orders (tickets + merchandise).

The table belongs to the storefront; the reconciliation job only reads
pending rows and moves `status` / `updated_at` / `payment_data`.
"""
from datetime import datetime
from typing import Any
from sqlalchemy import String, Integer, DateTime, Enum, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column, validates

from order_reconciliation.database import Base
from order_reconciliation.utils.money import ensure_minor_units
from order_reconciliation.utils.time import utc_now
from .enums import OrderStatus, TERMINAL_STATUSES, enum_values

class Order(Base):
    __tablename__ = "orders"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    payment_reference: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, native_enum=False, values_callable=enum_values, length=16),
        default=OrderStatus.PENDING,
        nullable=False,
    )
    # Integer centavos only, see validate_amount
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    customer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_orders_status_created_at", "status", "created_at"),
    )

    @validates("amount")
    def validate_amount(self, key: str, value: Any) -> int:
        return ensure_minor_units(value, field=key)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Order id={self.id} status={self.status} amount={self.amount}>"
