"""Pending order batch selection.

Only `pending` orders inside the age window are candidates: younger orders
may still be paid through the normal webhook path, older ones are left to
the storefront's own expiry policy.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from order_reconciliation.exceptions import OrderSelectionError
from order_reconciliation.models.db.enums import OrderStatus
from order_reconciliation.models.db.orders import Order
from order_reconciliation.utils import get_logger

logger = get_logger(__name__)


class OrderSelector:

    def select_batch(
        self,
        session: Session,
        max_size: int,
        min_age: timedelta,
        max_age: timedelta,
        now: datetime,
    ) -> List[Order]:
        """Oldest-first pending orders with `now - max_age <= created_at <= now - min_age`."""
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        if min_age < timedelta(0):
            raise ValueError("min_age must be >= 0")
        if max_age <= min_age:
            raise ValueError("max_age must exceed min_age")

        newest = now - min_age
        oldest = now - max_age
        try:
            orders = (
                session.query(Order)
                .filter(
                    Order.status == OrderStatus.PENDING,
                    Order.created_at >= oldest,
                    Order.created_at <= newest,
                )
                .order_by(Order.created_at.asc(), Order.id.asc())
                .limit(max_size)
                .all()
            )
        except SQLAlchemyError as e:
            logger.error("Order selection failed", error=str(e))
            raise OrderSelectionError(f"Order selection failed: {e}") from e

        logger.info(
            "Pending orders selected",
            count=len(orders),
            max_size=max_size,
            window_start=oldest.isoformat(),
            window_end=newest.isoformat(),
        )
        return orders


__all__ = ["OrderSelector"]
