from .orders import Order
from .reconciliation_locks import ReconciliationLock, SINGLETON_LOCK_ID
from .reconciliation_outcomes import ReconciliationOutcome
from .reconciliation_runs import ReconciliationRun
from .enums import OrderStatus, OutcomeKind, ErrorKind, RunStatus, TERMINAL_STATUSES, AMOUNT_MISMATCH

__all__ = [
    "Order",
    "ReconciliationLock",
    "SINGLETON_LOCK_ID",
    "ReconciliationOutcome",
    "ReconciliationRun",
    "OrderStatus",
    "OutcomeKind",
    "ErrorKind",
    "RunStatus",
    "TERMINAL_STATUSES",
    "AMOUNT_MISMATCH",
]
