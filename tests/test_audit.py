from datetime import timedelta

import pytest

from order_reconciliation.models.db import OrderStatus, ReconciliationOutcome, ReconciliationRun
from order_reconciliation.models.db.enums import AMOUNT_MISMATCH, ErrorKind, OutcomeKind, RunStatus
from order_reconciliation.services.reconciler import ReconciliationResult


def make_result(order_id="order-1", kind=OutcomeKind.UPDATED, **extra):
    values = dict(
        order_id=order_id,
        payment_reference=f"bill_{order_id}",
        kind=kind,
        previous_status=OrderStatus.PENDING,
        new_status=OrderStatus.PAID if kind is OutcomeKind.UPDATED else OrderStatus.PENDING,
        gateway_status="paid",
        attempts=1,
    )
    values.update(extra)
    return ReconciliationResult(**values)


def test_record_appends_outcome_row(audit, db_session):
    audit.begin_cycle()
    audit.record(make_result(amount_mismatch=True, expected_amount=9000, gateway_amount=12000), execution_id="exec-1")
    audit.record(make_result(kind=OutcomeKind.FAILED, error_kind=ErrorKind.TIMEOUT, error_message="slow"), execution_id="exec-1")

    rows = db_session.query(ReconciliationOutcome).order_by(ReconciliationOutcome.id).all()
    assert [r.kind for r in rows] == [OutcomeKind.UPDATED, OutcomeKind.FAILED]
    assert rows[0].amount_mismatch is True
    assert rows[0].gateway_amount == 12000
    assert rows[1].error_kind is ErrorKind.TIMEOUT
    assert {r.execution_id for r in rows} == {"exec-1"}


def test_metrics_last_cycle_and_cumulative(audit):
    audit.begin_cycle()
    audit.record(make_result(amount_mismatch=True))
    audit.record(make_result(kind=OutcomeKind.CONFLICT))
    audit.begin_cycle()
    audit.record(make_result(kind=OutcomeKind.SKIPPED, error_kind=ErrorKind.NO_REFERENCE))

    metrics = audit.metrics()
    assert metrics["cycles"] == 2
    assert metrics["last_cycle"] == {
        "updated": 0, "unchanged": 0, "failed": 0, "conflict": 0, AMOUNT_MISMATCH: 0, "skipped": 1,
    }
    assert metrics["cumulative"]["updated"] == 1
    assert metrics["cumulative"]["conflict"] == 1
    assert metrics["cumulative"][AMOUNT_MISMATCH] == 1
    assert metrics["cumulative"]["skipped"] == 1


def test_purge_deletes_only_rows_outside_retention(audit, db_session, clock):
    audit.record(make_result("old"))
    clock.advance(days=31)
    audit.record(make_result("recent"))

    deleted = audit.purge_older_than(30)

    assert deleted == 1
    assert [r.order_id for r in db_session.query(ReconciliationOutcome).all()] == ["recent"]


def test_purge_also_drops_old_runs(audit, db_session, clock):
    db_session.add(ReconciliationRun(
        execution_id="old-run",
        holder_id="host",
        status=RunStatus.COMPLETED,
        started_at=clock(),
    ))
    db_session.commit()
    clock.advance(days=40)
    audit.purge_older_than(30)
    db_session.expire_all()
    assert db_session.query(ReconciliationRun).count() == 0


def test_purge_requires_positive_window(audit):
    with pytest.raises(ValueError):
        audit.purge_older_than(0)
