"""Append-only reconciliation audit trail plus in-process outcome counters.

Outcome rows are written one per reconciled order; `purge_older_than` is
the retention job and never runs on the cycle's hot path.
"""
from __future__ import annotations

from collections import Counter
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError

from order_reconciliation.models.db.enums import METRIC_KEYS, RunStatus
from order_reconciliation.models.db.reconciliation_outcomes import ReconciliationOutcome
from order_reconciliation.models.db.reconciliation_runs import ReconciliationRun
from order_reconciliation.services.lock_manager import SessionFactory
from order_reconciliation.services.reconciler import ReconciliationResult
from order_reconciliation.utils import get_logger
from order_reconciliation.utils.time import Clock, utc_now

if TYPE_CHECKING:
    from order_reconciliation.jobs.reconciliation_cycle import CycleSummary

logger = get_logger(__name__)


def _zeroed() -> Counter:
    return Counter({key: 0 for key in METRIC_KEYS})


class AuditSink:
    def __init__(self, session_factory: SessionFactory, *, clock: Clock = utc_now):
        self._session_factory = session_factory
        self._clock = clock
        self._last_cycle: Counter = _zeroed()
        self._cumulative: Counter = _zeroed()
        self.cycles = 0

    def begin_cycle(self) -> None:
        self._last_cycle = _zeroed()
        self.cycles += 1

    def record(self, result: ReconciliationResult, execution_id: Optional[str] = None) -> Optional[ReconciliationOutcome]:
        """Persist one outcome row and bump counters.

        A storage failure is logged with the full outcome so the record is
        not lost; the batch carries on.
        """
        for key in result.metric_keys:
            self._last_cycle[key] += 1
            self._cumulative[key] += 1

        row = ReconciliationOutcome(
            execution_id=execution_id,
            order_id=result.order_id,
            payment_reference=result.payment_reference,
            kind=result.kind,
            previous_status=result.previous_status,
            new_status=result.new_status,
            gateway_status=result.gateway_status,
            attempt_count=result.attempts,
            error_kind=result.error_kind,
            error_message=result.error_message,
            amount_mismatch=result.amount_mismatch,
            expected_amount=result.expected_amount,
            gateway_amount=result.gateway_amount,
            gateway_fee=result.gateway_fee,
            created_at=self._clock(),
        )
        session = self._session_factory()
        try:
            session.add(row)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(
                "Failed to persist reconciliation outcome",
                execution_id=execution_id,
                order_id=result.order_id,
                kind=result.kind.value,
                previous_status=result.previous_status.value,
                new_status=result.new_status.value,
                error_kind=result.error_kind.value if result.error_kind else None,
                error=str(e),
            )
            return None
        finally:
            session.close()
        return row

    def record_run(self, summary: "CycleSummary") -> Optional[ReconciliationRun]:
        row = ReconciliationRun(
            execution_id=summary.execution_id,
            holder_id=summary.holder_id,
            status=summary.status,
            started_at=summary.started_at,
            finished_at=summary.finished_at,
            duration_ms=summary.duration_ms,
            orders_selected=summary.orders_selected,
            orders_processed=summary.orders_processed,
            orders_updated=summary.counts.get("updated", 0),
            api_calls=summary.api_calls,
            api_errors=summary.api_errors,
            outcome_counts=dict(summary.counts),
            error_message=summary.error_message,
        )
        session = self._session_factory()
        try:
            session.add(row)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(
                "Failed to persist reconciliation run",
                execution_id=summary.execution_id,
                status=summary.status.value if isinstance(summary.status, RunStatus) else summary.status,
                error=str(e),
            )
            return None
        finally:
            session.close()
        return row

    def purge_older_than(self, days: int) -> int:
        """Delete outcome and run rows older than `days`; returns outcomes deleted."""
        if days <= 0:
            raise ValueError("days must be > 0")
        cutoff = self._clock() - timedelta(days=days)
        session = self._session_factory()
        try:
            outcomes = session.execute(
                delete(ReconciliationOutcome).where(ReconciliationOutcome.created_at < cutoff)
            ).rowcount
            runs = session.execute(
                delete(ReconciliationRun).where(ReconciliationRun.started_at < cutoff)
            ).rowcount
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Audit purge failed", days=days, error=str(e))
            raise
        finally:
            session.close()

        logger.info("Audit records purged", days=days, cutoff=cutoff.isoformat(), outcomes=outcomes, runs=runs)
        return int(outcomes or 0)

    def metrics(self) -> Dict[str, Any]:
        return {
            "last_cycle": dict(self._last_cycle),
            "cumulative": dict(self._cumulative),
            "cycles": self.cycles,
        }


__all__ = ["AuditSink"]
