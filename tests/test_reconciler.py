import asyncio
from datetime import timedelta

import pytest

from order_reconciliation.config import load_settings
from order_reconciliation.exceptions import GatewayClientError, GatewayServerError, GatewayTimeout
from order_reconciliation.models.db import Order, OrderStatus
from order_reconciliation.models.db.enums import AMOUNT_MISMATCH, ErrorKind, OutcomeKind
from order_reconciliation.services import reconciler as reconciler_module
from order_reconciliation.services.reconciler import Reconciler
from order_reconciliation.utils.time import ensure_utc


def run(coro):
    return asyncio.run(coro)


def test_pending_order_paid_out_is_updated(reconciler, gateway, order_factory, load_order, clock):
    """Order A: pending, R$ 90,00, gateway says paid_out with the same amount."""
    order = order_factory("A", amount=9000)
    payload = {"status": "paid_out", "amount": 9000}
    gateway.script(order.payment_reference, payload)
    clock.advance(minutes=1)

    result = run(reconciler.reconcile_one(order))

    assert result.kind is OutcomeKind.UPDATED
    assert result.previous_status is OrderStatus.PENDING
    assert result.new_status is OrderStatus.PAID
    assert result.amount_mismatch is False
    assert result.metric_keys == ["updated"]
    stored = load_order("A")
    assert stored.status is OrderStatus.PAID
    assert ensure_utc(stored.updated_at) == clock()
    assert stored.payment_data == payload


def test_terminal_order_with_different_gateway_status_is_a_conflict(reconciler, gateway, order_factory, load_order):
    """Order B: paid locally, gateway says cancelled; nothing is written."""
    order = order_factory("B", status=OrderStatus.PAID)
    gateway.script(order.payment_reference, {"status": "cancelled"})

    result = run(reconciler.reconcile_one(order))

    assert result.kind is OutcomeKind.CONFLICT
    assert result.new_status is OrderStatus.PAID
    assert result.gateway_status == "cancelled"
    assert load_order("B").status is OrderStatus.PAID


def test_reconciling_twice_is_idempotent(reconciler, gateway, order_factory, load_order, clock):
    order = order_factory("C")
    gateway.script(order.payment_reference, {"status": "PAID", "amount": 9000})

    first = run(reconciler.reconcile_one(order))
    updated_at = ensure_utc(load_order("C").updated_at)
    clock.advance(minutes=5)
    second = run(reconciler.reconcile_one(order))

    assert first.kind is OutcomeKind.UPDATED
    assert second.kind is OutcomeKind.UNCHANGED
    assert ensure_utc(load_order("C").updated_at) == updated_at


@pytest.mark.parametrize("local", [OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.EXPIRED])
@pytest.mark.parametrize("gateway_status", ["PAID", "CANCELLED", "EXPIRED", "PENDING", "REFUNDED", "WEIRD"])
def test_terminal_status_never_regresses(reconciler, gateway, order_factory, load_order, local, gateway_status):
    order = order_factory(status=local)
    gateway.script(order.payment_reference, {"status": gateway_status})

    result = run(reconciler.reconcile_one(order))

    assert result.kind in (OutcomeKind.UNCHANGED, OutcomeKind.CONFLICT)
    assert load_order(order.id).status is local


def test_unpaid_pending_order_stays_unchanged(reconciler, gateway, order_factory, load_order):
    order = order_factory()
    gateway.script(order.payment_reference, {"status": "PENDING", "amount": 9000})
    result = run(reconciler.reconcile_one(order))
    assert result.kind is OutcomeKind.UNCHANGED
    assert load_order(order.id).payment_data is None


def test_expired_charge_expires_pending_order(reconciler, gateway, order_factory, load_order):
    order = order_factory()
    gateway.script(order.payment_reference, {"status": "EXPIRED"})
    result = run(reconciler.reconcile_one(order))
    assert result.kind is OutcomeKind.UPDATED
    assert load_order(order.id).status is OrderStatus.EXPIRED


def test_always_timing_out_gateway_stops_after_max_retries(reconciler, gateway, order_factory, load_order, recording_sleep):
    order = order_factory()
    gateway.script(order.payment_reference, GatewayTimeout("slow"))

    result = run(reconciler.reconcile_one(order))

    assert gateway.call_count(order.payment_reference) == 3
    assert result.kind is OutcomeKind.FAILED
    assert result.error_kind is ErrorKind.TIMEOUT
    assert result.attempts == 3
    assert result.api_errors == 3
    assert recording_sleep.calls == [1.0, 2.0]
    assert load_order(order.id).status is OrderStatus.PENDING


def test_transient_server_error_is_retried(reconciler, gateway, order_factory, recording_sleep):
    order = order_factory()
    gateway.script(
        order.payment_reference,
        GatewayServerError("HTTP 502", status_code=502),
        {"status": "PAID", "amount": 9000},
    )

    result = run(reconciler.reconcile_one(order))

    assert result.kind is OutcomeKind.UPDATED
    assert result.attempts == 2
    assert result.api_errors == 1
    assert recording_sleep.calls == [1.0]


def test_not_found_is_not_retried(reconciler, gateway, order_factory, load_order, recording_sleep):
    order = order_factory()  # unscripted reference -> 404

    result = run(reconciler.reconcile_one(order))

    assert gateway.call_count(order.payment_reference) == 1
    assert result.kind is OutcomeKind.FAILED
    assert result.error_kind is ErrorKind.NOT_FOUND
    assert recording_sleep.calls == []
    assert load_order(order.id).status is OrderStatus.PENDING


@pytest.mark.parametrize(
    "outcome,kind",
    [
        (GatewayClientError("HTTP 401", status_code=401), ErrorKind.CLIENT_ERROR),
        ({"data": None, "error": "boom"}, ErrorKind.INVALID_RESPONSE),
    ],
)
def test_permanent_errors_fail_after_one_attempt(reconciler, gateway, order_factory, outcome, kind):
    order = order_factory()
    gateway.script(order.payment_reference, outcome)
    result = run(reconciler.reconcile_one(order))
    assert gateway.call_count(order.payment_reference) == 1
    assert result.kind is OutcomeKind.FAILED
    assert result.error_kind is kind


def test_order_without_reference_is_skipped(reconciler, gateway, order_factory):
    order = order_factory(payment_reference=None)
    result = run(reconciler.reconcile_one(order))
    assert result.kind is OutcomeKind.SKIPPED
    assert result.error_kind is ErrorKind.NO_REFERENCE
    assert gateway.calls == []


def test_amount_mismatch_is_flagged_without_blocking_update(reconciler, gateway, order_factory, load_order):
    order = order_factory(amount=9000)
    gateway.script(order.payment_reference, {"status": "PAID", "amount": 12000})

    result = run(reconciler.reconcile_one(order))

    assert result.kind is OutcomeKind.UPDATED
    assert result.amount_mismatch is True
    assert result.expected_amount == 9000
    assert result.gateway_amount == 12000
    assert result.metric_keys == ["updated", AMOUNT_MISMATCH]
    assert load_order(order.id).status is OrderStatus.PAID


def test_amount_within_tolerance_is_not_flagged(reconciler, gateway, order_factory):
    order = order_factory(amount=10000)
    gateway.script(order.payment_reference, {"status": "PAID", "amount": 10500})
    result = run(reconciler.reconcile_one(order))
    assert result.amount_mismatch is False


def test_expected_price_used_when_order_has_no_amount(reconciler, gateway, order_factory):
    order = order_factory(amount=0)
    gateway.script(order.payment_reference, {"status": "PAID", "amount": 15000})
    result = run(reconciler.reconcile_one(order))
    assert result.expected_amount == 15000
    assert result.amount_mismatch is False


def test_fee_is_carried_on_the_result(reconciler, gateway, order_factory):
    order = order_factory()
    gateway.script(order.payment_reference, {"data": {"status": "PAID", "amount": 9000}, "payment": {"fee": 80}})
    result = run(reconciler.reconcile_one(order))
    assert result.gateway_fee == 80


def _webhook_sets(session_factory, order_id, status):
    def _apply(reference):
        with session_factory() as session:
            session.get(Order, order_id).status = status
            session.commit()
    return _apply


def test_webhook_applied_same_status_first(reconciler, gateway, order_factory, load_order, session_factory):
    order = order_factory()
    gateway.script(order.payment_reference, {"status": "PAID", "amount": 9000})
    gateway.on_call = _webhook_sets(session_factory, order.id, OrderStatus.PAID)

    result = run(reconciler.reconcile_one(order))

    assert result.kind is OutcomeKind.UNCHANGED
    assert result.new_status is OrderStatus.PAID
    assert load_order(order.id).payment_data is None


def test_webhook_applied_different_status_first(reconciler, gateway, order_factory, load_order, session_factory):
    order = order_factory()
    gateway.script(order.payment_reference, {"status": "PAID", "amount": 9000})
    gateway.on_call = _webhook_sets(session_factory, order.id, OrderStatus.CANCELLED)

    result = run(reconciler.reconcile_one(order))

    assert result.kind is OutcomeKind.CONFLICT
    assert result.new_status is OrderStatus.CANCELLED
    assert load_order(order.id).status is OrderStatus.CANCELLED


def test_per_call_timeout_is_enforced(session_factory, gateway, order_factory, recording_sleep, clock):
    class HangingGateway(type(gateway)):
        async def query_status(self, payment_reference):
            self.calls.append(payment_reference)
            await asyncio.sleep(10)

    settings = load_settings(
        "test",
        api_timeout_seconds=0.01,
        api_throttle_seconds=0.0,
        max_retries=2,
        pending_order_min_age_seconds=3600.0,
        pending_order_max_age_seconds=86400.0,
    )
    hanging = HangingGateway()
    order = order_factory()
    reconciler = Reconciler(session_factory, hanging, settings, sleep=recording_sleep, clock=clock)

    result = run(reconciler.reconcile_one(order))

    assert result.error_kind is ErrorKind.TIMEOUT
    assert len(hanging.calls) == 2


def test_circuit_opens_after_consecutive_exhausted_orders(session_factory, gateway, order_factory, recording_sleep, clock):
    settings = load_settings("test", circuit_breaker_threshold=2, max_retries=1, api_throttle_seconds=0.0)
    reconciler = Reconciler(session_factory, gateway, settings, sleep=recording_sleep, clock=clock)
    orders = [order_factory() for _ in range(3)]
    for o in orders:
        gateway.script(o.payment_reference, GatewayServerError("HTTP 503", status_code=503))

    results = [run(reconciler.reconcile_one(o)) for o in orders]

    assert [r.error_kind for r in results] == [ErrorKind.SERVER_ERROR, ErrorKind.SERVER_ERROR, ErrorKind.CIRCUIT_OPEN]
    assert gateway.call_count(orders[2].payment_reference) == 0

    clock.advance(seconds=settings.circuit_breaker_cooldown_seconds + 1)
    gateway.script(orders[2].payment_reference, {"status": "PAID", "amount": 9000})
    recovered = run(reconciler.reconcile_one(orders[2]))
    assert recovered.kind is OutcomeKind.UPDATED


def test_paid_transition_emits_business_event(reconciler, gateway, order_factory, monkeypatch):
    events = []
    monkeypatch.setattr(
        reconciler_module,
        "log_business_event",
        lambda event_type, details, execution_id=None, request_id=None: events.append((event_type, details, execution_id)),
    )
    order = order_factory(amount=9000)
    gateway.script(order.payment_reference, {"status": "PAID", "amount": 9000})

    run(reconciler.reconcile_one(order, execution_id="exec-1"))

    assert events == [("order_paid", {
        "order_id": order.id,
        "payment_reference": order.payment_reference,
        "amount": 9000,
        "customer_email": "buyer@example.com",
    }, "exec-1")]


def test_unexpected_error_becomes_failed_result(reconciler, gateway, order_factory, load_order):
    order = order_factory()
    gateway.script(order.payment_reference, KeyError("data"))

    result = run(reconciler.reconcile_one(order))

    assert result.kind is OutcomeKind.FAILED
    assert result.error_kind is ErrorKind.UNEXPECTED
    assert result.error_message.startswith("KeyError")
    assert load_order(order.id).status is OrderStatus.PENDING
