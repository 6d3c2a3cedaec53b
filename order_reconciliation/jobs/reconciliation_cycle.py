"""One reconciliation cycle: lease -> select -> reconcile sequentially -> audit -> release.

Cycle-level failures (lock storage, selection) end the cycle with a
`failed` run row and leave every order untouched; a busy lease ends it as
`skipped`. The overall execution timeout is checked between orders, so the
order in flight always finishes its own retries.
"""
from __future__ import annotations

import asyncio
import os
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from order_reconciliation.config import ReconciliationSettings
from order_reconciliation.exceptions import LockStorageError, OrderSelectionError
from order_reconciliation.integrations.base import PaymentGateway
from order_reconciliation.models.db.enums import METRIC_KEYS, RunStatus
from order_reconciliation.models.db.orders import Order
from order_reconciliation.services.alerting import CycleAlert, emit_cycle_alerts
from order_reconciliation.services.audit import AuditSink
from order_reconciliation.services.lock_manager import LockBusy, LockManager, SessionFactory
from order_reconciliation.services.order_selector import OrderSelector
from order_reconciliation.services.reconciler import Reconciler, ReconciliationResult, Sleep
from order_reconciliation.services.redis_lock import RedisLockManager
from order_reconciliation.utils import get_logger, log_performance
from order_reconciliation.utils.time import Clock, elapsed_ms, format_elapsed, utc_now

logger = get_logger(__name__)

AnyLockManager = Union[LockManager, RedisLockManager]


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def build_lock_manager(settings: ReconciliationSettings, session_factory: SessionFactory, *, clock: Clock = utc_now) -> AnyLockManager:
    if settings.lock_backend == "redis":
        return RedisLockManager.from_url(settings.redis_url, lease_seconds=settings.lock_timeout_seconds, clock=clock)
    return LockManager(session_factory, lease_seconds=settings.lock_timeout_seconds, clock=clock)


@dataclass
class CycleSummary:
    execution_id: str
    holder_id: str
    started_at: datetime
    status: RunStatus = RunStatus.COMPLETED
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    orders_selected: int = 0
    orders_processed: int = 0
    api_calls: int = 0
    api_errors: int = 0
    counts: Dict[str, int] = field(default_factory=lambda: {key: 0 for key in METRIC_KEYS})
    error_message: Optional[str] = None
    lock_held_by: Optional[str] = None
    lock_release_error: Optional[str] = None
    results: List[ReconciliationResult] = field(default_factory=list)
    alerts: List[CycleAlert] = field(default_factory=list)

    def add(self, result: ReconciliationResult) -> None:
        self.results.append(result)
        self.orders_processed += 1
        self.api_calls += result.attempts
        self.api_errors += result.api_errors
        for key in result.metric_keys:
            self.counts[key] = self.counts.get(key, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "holder_id": self.holder_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "orders_selected": self.orders_selected,
            "orders_processed": self.orders_processed,
            "api_calls": self.api_calls,
            "api_errors": self.api_errors,
            "counts": dict(self.counts),
            "error_message": self.error_message,
            "lock_held_by": self.lock_held_by,
            "lock_release_error": self.lock_release_error,
            "alerts": [alert.alert_type for alert in self.alerts],
        }


class ReconciliationCycle:
    def __init__(
        self,
        settings: ReconciliationSettings,
        session_factory: SessionFactory,
        *,
        lock_manager: AnyLockManager,
        reconciler: Reconciler,
        audit: AuditSink,
        selector: Optional[OrderSelector] = None,
        holder_id: Optional[str] = None,
        clock: Clock = utc_now,
    ):
        self.settings = settings
        self._session_factory = session_factory
        self.lock_manager = lock_manager
        self.reconciler = reconciler
        self.audit = audit
        self.selector = selector or OrderSelector()
        self.holder_id = holder_id or default_holder_id()
        self._clock = clock

    async def run(self) -> CycleSummary:
        summary = CycleSummary(
            execution_id=uuid.uuid4().hex,
            holder_id=self.holder_id,
            started_at=self._clock(),
        )
        log = logger.bind(execution_id=summary.execution_id)
        log.info("Reconciliation cycle started", holder_id=self.holder_id, environment=self.settings.environment)

        try:
            acquired = self.lock_manager.try_acquire(self.holder_id)
        except LockStorageError as e:
            summary.status = RunStatus.FAILED
            summary.error_message = str(e)
            log.error("Reconciliation cycle aborted: lock unavailable", error=str(e))
            return self._finish(summary, log)

        if isinstance(acquired, LockBusy):
            summary.status = RunStatus.SKIPPED
            summary.lock_held_by = acquired.holder_id
            log.info("Reconciliation cycle skipped, lease held elsewhere", held_by=acquired.holder_id)
            return self._finish(summary, log)

        try:
            await self._process(summary, log)
        except Exception as e:
            summary.status = RunStatus.FAILED
            summary.error_message = f"{type(e).__name__}: {e}"
            log.error("Reconciliation cycle aborted by unexpected error", error=str(e), exc_info=True)
        finally:
            try:
                self.lock_manager.release(acquired)
            except LockStorageError as e:
                summary.lock_release_error = str(e)
                log.error("Lease release failed; it will expire on its own", error=str(e))
        return self._finish(summary, log)

    def _timed_out(self, summary: CycleSummary) -> bool:
        elapsed = self._clock() - summary.started_at
        return elapsed >= timedelta(seconds=self.settings.execution_timeout_seconds)

    async def _process(self, summary: CycleSummary, log) -> None:
        self.audit.begin_cycle()
        session = self._session_factory()
        try:
            orders: List[Order] = self.selector.select_batch(
                session,
                self.settings.batch_size,
                timedelta(seconds=self.settings.pending_order_min_age_seconds),
                timedelta(seconds=self.settings.pending_order_max_age_seconds),
                self._clock(),
            )
        except OrderSelectionError as e:
            summary.status = RunStatus.FAILED
            summary.error_message = str(e)
            log.error("Reconciliation cycle aborted: order selection failed", error=str(e))
            return
        finally:
            session.close()

        summary.orders_selected = len(orders)
        for index, order in enumerate(orders):
            if self._timed_out(summary):
                summary.status = RunStatus.TIMED_OUT
                log.warning(
                    "Execution timeout reached, remaining orders left for next cycle",
                    processed=index,
                    remaining=len(orders) - index,
                    timeout_seconds=self.settings.execution_timeout_seconds,
                )
                break
            result = await self.reconciler.reconcile_one(order, execution_id=summary.execution_id)
            self.audit.record(result, execution_id=summary.execution_id)
            summary.add(result)

    def _finish(self, summary: CycleSummary, log) -> CycleSummary:
        summary.finished_at = self._clock()
        summary.duration_ms = elapsed_ms(summary.started_at, summary.finished_at)
        self.audit.record_run(summary)
        if summary.status != RunStatus.SKIPPED:
            summary.alerts = emit_cycle_alerts(summary, self.settings)
            log_performance(
                "reconciliation_cycle",
                summary.duration_ms,
                {
                    "execution_id": summary.execution_id,
                    "orders_processed": summary.orders_processed,
                    "api_calls": summary.api_calls,
                },
            )
        log.info(
            "Reconciliation cycle finished",
            status=summary.status.value,
            elapsed=format_elapsed(summary.started_at, summary.finished_at),
            selected=summary.orders_selected,
            processed=summary.orders_processed,
            **{key.replace("-", "_"): value for key, value in summary.counts.items()},
        )
        return summary


def build_cycle(
    settings: ReconciliationSettings,
    session_factory: SessionFactory,
    gateway: PaymentGateway,
    *,
    audit: Optional[AuditSink] = None,
    lock_manager: Optional[AnyLockManager] = None,
    holder_id: Optional[str] = None,
    clock: Clock = utc_now,
    sleep: Sleep = asyncio.sleep,
) -> ReconciliationCycle:
    """Wire a cycle from settings with explicitly passed collaborators."""
    return ReconciliationCycle(
        settings,
        session_factory,
        lock_manager=lock_manager or build_lock_manager(settings, session_factory, clock=clock),
        reconciler=Reconciler(session_factory, gateway, settings, sleep=sleep, clock=clock),
        audit=audit or AuditSink(session_factory, clock=clock),
        holder_id=holder_id,
        clock=clock,
    )


__all__ = [
    "CycleSummary",
    "ReconciliationCycle",
    "build_cycle",
    "build_lock_manager",
    "default_holder_id",
]
