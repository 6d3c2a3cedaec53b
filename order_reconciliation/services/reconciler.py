"""Per-order reconciliation against the payment gateway.

`Reconciler.reconcile_one(order)`:
1. No payment reference -> SKIPPED (no gateway call).
2. Gateway lookup with bounded retries. Only timeouts and server errors are
   retried; not-found, client and payload errors fail the order at once.
3. Exhausted / permanent failure -> FAILED, local status untouched.
4. Success:
   * mapped status == local status -> UNCHANGED, no write;
   * local pending, mapped differs -> conditional UPDATE ... WHERE status =
     'pending' -> UPDATED (a lost race with a webhook is re-read and turned
     into UNCHANGED or CONFLICT);
   * local terminal, mapped differs -> CONFLICT, never written.
5. Gateway amount outside tolerance of the expected amount sets the
   `amount_mismatch` flag; it never blocks the status update.

Every path returns a `ReconciliationResult`; nothing per-order escapes into
the batch loop.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from order_reconciliation.config import ReconciliationSettings
from order_reconciliation.exceptions import GatewayError, GatewayTimeout, StatusConflict
from order_reconciliation.integrations.base import PaymentGateway
from order_reconciliation.models.db.enums import AMOUNT_MISMATCH, ErrorKind, OrderStatus, OutcomeKind
from order_reconciliation.models.db.orders import Order
from order_reconciliation.models.schemas.gateway import GatewayCharge
from order_reconciliation.services.lock_manager import SessionFactory
from order_reconciliation.utils import get_logger, log_business_event
from order_reconciliation.utils.backoff import compute_backoff_seconds
from order_reconciliation.utils.circuit_breaker import CircuitBreaker
from order_reconciliation.utils.money import format_brl, within_tolerance
from order_reconciliation.utils.time import Clock, utc_now

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class ReconciliationResult:
    order_id: str
    payment_reference: Optional[str]
    kind: OutcomeKind
    previous_status: OrderStatus
    new_status: OrderStatus
    gateway_status: Optional[str] = None
    attempts: int = 0
    api_errors: int = 0
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    amount_mismatch: bool = False
    expected_amount: Optional[int] = None
    gateway_amount: Optional[int] = None
    gateway_fee: Optional[int] = None
    retry_delays: List[float] = field(default_factory=list)

    @property
    def metric_keys(self) -> List[str]:
        keys = [self.kind.value]
        if self.amount_mismatch:
            keys.append(AMOUNT_MISMATCH)
        return keys


@dataclass
class _Lookup:
    charge: Optional[GatewayCharge]
    attempts: int
    api_errors: int
    error: Optional[GatewayError]
    delays: List[float]


class Reconciler:
    """Reconciles one order at a time; state is limited to the circuit breaker."""

    def __init__(
        self,
        session_factory: SessionFactory,
        gateway: PaymentGateway,
        settings: ReconciliationSettings,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = utc_now,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self._session_factory = session_factory
        self.gateway = gateway
        self.settings = settings
        self._sleep = sleep
        self._clock = clock
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=settings.circuit_breaker_threshold,
            cooldown_seconds=settings.circuit_breaker_cooldown_seconds,
            clock=clock,
        )

    async def reconcile_one(self, order: Order, *, execution_id: Optional[str] = None) -> ReconciliationResult:
        """Reconcile one order. Never raises: every failure becomes a FAILED result."""
        log = logger.bind(order_id=order.id, execution_id=execution_id)
        previous = OrderStatus(order.status)
        try:
            return await self._reconcile(order, previous, execution_id, log)
        except Exception as e:
            log.error("Unexpected error while reconciling order", error=str(e), error_type=type(e).__name__, exc_info=True)
            # counts like an exhausted lookup so a half-open probe cannot stay pending forever
            self.breaker.record_failure(self.gateway.name)
            return ReconciliationResult(
                order_id=order.id,
                payment_reference=order.payment_reference,
                kind=OutcomeKind.FAILED,
                previous_status=previous,
                new_status=previous,
                error_kind=ErrorKind.UNEXPECTED,
                error_message=f"{type(e).__name__}: {e}",
            )

    async def _reconcile(self, order: Order, previous: OrderStatus, execution_id: Optional[str], log) -> ReconciliationResult:
        if not order.payment_reference:
            log.warning("Order has no payment reference, skipping")
            return ReconciliationResult(
                order_id=order.id,
                payment_reference=None,
                kind=OutcomeKind.SKIPPED,
                previous_status=previous,
                new_status=previous,
                error_kind=ErrorKind.NO_REFERENCE,
                error_message="no-reference",
            )

        allowed, reason = self.breaker.allow_call(self.gateway.name)
        if not allowed:
            log.warning("Gateway circuit open, failing fast", reason=reason)
            return ReconciliationResult(
                order_id=order.id,
                payment_reference=order.payment_reference,
                kind=OutcomeKind.FAILED,
                previous_status=previous,
                new_status=previous,
                error_kind=ErrorKind.CIRCUIT_OPEN,
                error_message=reason,
            )

        lookup = await self._lookup(order.payment_reference, log)
        if lookup.error is not None:
            if lookup.error.retryable:
                self.breaker.record_failure(self.gateway.name)
            else:
                # the gateway answered; it is reachable
                self.breaker.record_success(self.gateway.name)
            log.warning(
                "Gateway lookup failed",
                error_kind=lookup.error.kind,
                attempts=lookup.attempts,
                error=lookup.error.message,
            )
            return ReconciliationResult(
                order_id=order.id,
                payment_reference=order.payment_reference,
                kind=OutcomeKind.FAILED,
                previous_status=previous,
                new_status=previous,
                attempts=lookup.attempts,
                api_errors=lookup.api_errors,
                error_kind=ErrorKind(lookup.error.kind),
                error_message=lookup.error.message,
                retry_delays=lookup.delays,
            )

        self.breaker.record_success(self.gateway.name)
        charge = lookup.charge
        result = ReconciliationResult(
            order_id=order.id,
            payment_reference=order.payment_reference,
            kind=OutcomeKind.UNCHANGED,
            previous_status=previous,
            new_status=previous,
            gateway_status=charge.gateway_status,
            attempts=lookup.attempts,
            api_errors=lookup.api_errors,
            gateway_amount=charge.amount,
            gateway_fee=charge.fee,
            retry_delays=lookup.delays,
        )
        self._check_amount(order, charge, result, log)

        try:
            self._apply(order, charge, result, log)
        except StatusConflict as conflict:
            result.kind = OutcomeKind.CONFLICT
            result.new_status = OrderStatus(order.status)
            result.error_message = str(conflict)
            log.warning(
                "Status conflict, local terminal status kept",
                local_status=conflict.local_status,
                gateway_status=conflict.gateway_status,
            )
            log_business_event(
                "status_conflict",
                {
                    "order_id": order.id,
                    "payment_reference": order.payment_reference,
                    "local_status": conflict.local_status,
                    "gateway_status": conflict.gateway_status,
                },
                execution_id=execution_id,
            )
        except SQLAlchemyError as e:
            result.kind = OutcomeKind.FAILED
            result.new_status = previous
            result.error_kind = ErrorKind.STORAGE_ERROR
            result.error_message = str(e)
            log.error("Order update failed", error=str(e))

        if result.kind == OutcomeKind.UPDATED and result.new_status == OrderStatus.PAID:
            log_business_event(
                "order_paid",
                {
                    "order_id": order.id,
                    "payment_reference": order.payment_reference,
                    "amount": order.amount,
                    "customer_email": order.customer_email,
                },
                execution_id=execution_id,
            )
        return result

    async def _call_gateway(self, reference: str) -> GatewayCharge:
        try:
            return await asyncio.wait_for(
                self.gateway.query_status(reference),
                timeout=self.settings.api_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise GatewayTimeout(
                f"Gateway call exceeded {self.settings.api_timeout_seconds}s for {reference}"
            ) from e

    async def _lookup(self, reference: str, log) -> _Lookup:
        max_attempts = self.settings.max_retries
        delays: List[float] = []
        api_errors = 0
        last_error: Optional[GatewayError] = None
        for attempt in range(1, max_attempts + 1):
            try:
                charge = await self._call_gateway(reference)
                return _Lookup(charge, attempt, api_errors, None, delays)
            except GatewayError as e:
                api_errors += 1
                last_error = e
                if not e.retryable or attempt >= max_attempts:
                    return _Lookup(None, attempt, api_errors, e, delays)
                delay = compute_backoff_seconds(
                    attempt,
                    base=self.settings.retry_delay_seconds,
                    factor=self.settings.backoff_multiplier,
                )
                log.info(
                    "Retrying gateway lookup",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error_kind=e.kind,
                    delay_seconds=round(delay, 3),
                )
                delays.append(delay)
                await self._sleep(delay)
        return _Lookup(None, max_attempts, api_errors, last_error, delays)

    def _expected_amount(self, order: Order) -> int:
        if order.amount and order.amount > 0:
            return order.amount
        return self.settings.expected_ticket_price

    def _check_amount(self, order: Order, charge: GatewayCharge, result: ReconciliationResult, log) -> None:
        expected = self._expected_amount(order)
        result.expected_amount = expected
        if charge.amount is None:
            return
        if not within_tolerance(charge.amount, expected, self.settings.price_tolerance):
            result.amount_mismatch = True
            log.warning(
                "Gateway amount outside tolerance",
                expected=format_brl(expected),
                gateway=format_brl(charge.amount),
                tolerance=self.settings.price_tolerance,
            )

    def _apply(self, order: Order, charge: GatewayCharge, result: ReconciliationResult, log) -> None:
        local = OrderStatus(order.status)
        mapped = charge.status
        if mapped == local:
            log.debug("Order status unchanged", status=local.value)
            return
        if local.is_terminal:
            raise StatusConflict(order.id, local.value, charge.gateway_status)

        now = self._clock()
        session = self._session_factory()
        try:
            written = session.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == OrderStatus.PENDING)
                .values(status=mapped, updated_at=now, payment_data=charge.raw)
            ).rowcount
            if written:
                session.commit()
            else:
                session.rollback()
                current = session.get(Order, order.id)
                current_status = OrderStatus(current.status) if current is not None else None
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

        if not written:
            # row moved off pending underneath us (webhook); never overwrite it
            if current_status is None:
                result.kind = OutcomeKind.FAILED
                result.error_kind = ErrorKind.STORAGE_ERROR
                result.error_message = "order no longer exists"
                log.error("Order disappeared before update")
                return
            order.status = current_status
            result.new_status = current_status
            if current_status == mapped:
                log.info("Order already updated concurrently", status=current_status.value)
                return
            raise StatusConflict(order.id, current_status.value, charge.gateway_status)

        order.status = mapped
        order.updated_at = now
        order.payment_data = charge.raw
        result.kind = OutcomeKind.UPDATED
        result.new_status = mapped
        log.info("Order status updated", from_status=local.value, to_status=mapped.value)


__all__ = ["Reconciler", "ReconciliationResult", "Sleep"]
