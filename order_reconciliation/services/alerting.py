"""Cycle-level alert thresholds.

Rules:
1. Cycle wall time above `alert_execution_time_seconds` -> slow_cycle (WARNING).
2. Gateway error rate (api_errors / api_calls) above `alert_api_error_rate`
   -> gateway_error_rate (HIGH). Cycles without gateway calls never alert.

Alerts are emitted as `reconciliation_alert` business events; delivery to a
pager is left to whatever ships the audit log.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List

from order_reconciliation.config import ReconciliationSettings
from order_reconciliation.utils import get_logger, log_business_event

if TYPE_CHECKING:
    from order_reconciliation.jobs.reconciliation_cycle import CycleSummary

logger = get_logger(__name__)


@dataclass(frozen=True)
class CycleAlert:
    alert_type: str
    severity: str
    message: str
    value: float
    threshold: float


def evaluate_cycle_alerts(summary: "CycleSummary", settings: ReconciliationSettings) -> List[CycleAlert]:
    alerts: List[CycleAlert] = []

    elapsed_seconds = (summary.duration_ms or 0) / 1000.0
    if elapsed_seconds > settings.alert_execution_time_seconds:
        alerts.append(
            CycleAlert(
                alert_type="slow_cycle",
                severity="WARNING",
                message=f"Cycle took {elapsed_seconds:.1f}s (limit {settings.alert_execution_time_seconds:.0f}s)",
                value=elapsed_seconds,
                threshold=settings.alert_execution_time_seconds,
            )
        )

    if summary.api_calls > 0:
        error_rate = summary.api_errors / summary.api_calls
        if error_rate > settings.alert_api_error_rate:
            alerts.append(
                CycleAlert(
                    alert_type="gateway_error_rate",
                    severity="HIGH",
                    message=f"Gateway error rate {error_rate:.0%} over {summary.api_calls} calls",
                    value=error_rate,
                    threshold=settings.alert_api_error_rate,
                )
            )
    return alerts


def emit_cycle_alerts(summary: "CycleSummary", settings: ReconciliationSettings) -> List[CycleAlert]:
    """Evaluate thresholds and log one business event per alert raised."""
    alerts = evaluate_cycle_alerts(summary, settings)
    for alert in alerts:
        logger.warning(
            "Reconciliation alert raised",
            execution_id=summary.execution_id,
            alert_type=alert.alert_type,
            severity=alert.severity,
            value=round(alert.value, 4),
            threshold=alert.threshold,
        )
        log_business_event(
            "reconciliation_alert",
            {
                "alert_type": alert.alert_type,
                "severity": alert.severity,
                "alert_message": alert.message,
                "value": alert.value,
                "threshold": alert.threshold,
            },
            execution_id=summary.execution_id,
        )
    return alerts


__all__ = ["CycleAlert", "evaluate_cycle_alerts", "emit_cycle_alerts"]
