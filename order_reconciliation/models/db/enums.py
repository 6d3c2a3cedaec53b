"""Central Enum definitions for order and reconciliation states.

These replace scattered string literals to ensure consistency across
DB models, schemas, and the reconciliation logic.
"""
from __future__ import annotations
import enum


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.EXPIRED})

# ------------------ Reconciliation outcome enums ------------------ #

class OutcomeKind(str, enum.Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    CONFLICT = "conflict"
    SKIPPED = "skipped"


# Counter key for the amount flag; it rides on top of the outcome kind.
AMOUNT_MISMATCH = "amount-mismatch"

METRIC_KEYS = (
    OutcomeKind.UPDATED.value,
    OutcomeKind.UNCHANGED.value,
    OutcomeKind.FAILED.value,
    OutcomeKind.CONFLICT.value,
    AMOUNT_MISMATCH,
    OutcomeKind.SKIPPED.value,
)

class ErrorKind(str, enum.Enum):
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    NOT_FOUND = "not_found"
    CLIENT_ERROR = "client_error"
    INVALID_RESPONSE = "invalid_response"
    CIRCUIT_OPEN = "circuit_open"
    NO_REFERENCE = "no_reference"
    STORAGE_ERROR = "storage_error"
    UNEXPECTED = "unexpected"

class RunStatus(str, enum.Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """values_callable for sqlalchemy.Enum so rows hold 'pending', not 'PENDING'."""
    return [member.value for member in enum_cls]


__all__ = [
    "OrderStatus",
    "TERMINAL_STATUSES",
    "OutcomeKind",
    "AMOUNT_MISMATCH",
    "METRIC_KEYS",
    "ErrorKind",
    "RunStatus",
    "enum_values",
]
