"""Error taxonomy for the reconciliation job.

Per-order errors (gateway failures, conflicts) are converted into audit
outcomes by the reconciler. Cycle-level errors (lock storage, selection,
configuration) abort the whole cycle before any order is touched.
"""
from __future__ import annotations

from typing import Optional


class ReconciliationError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationInvalid(ReconciliationError):
    """Tunables failed validation; the job must refuse to run."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid configuration: " + "; ".join(self.errors))


class LockUnavailable(ReconciliationError):
    """Another instance holds a live lease."""

    def __init__(self, holder_id: str | None = None, expires_at=None):
        self.holder_id = holder_id
        self.expires_at = expires_at
        super().__init__(f"Reconciliation lock held by {holder_id or 'another instance'}")


class LockStorageError(ReconciliationError):
    """Lock table / Redis call failed while acquiring or releasing."""


class OrderSelectionError(ReconciliationError):
    """Loading the pending batch failed."""


class StatusConflict(ReconciliationError):
    """Local terminal status disagrees with a fresh gateway read."""

    def __init__(self, order_id: str, local_status: str, gateway_status: str):
        self.order_id = order_id
        self.local_status = local_status
        self.gateway_status = gateway_status
        super().__init__(
            f"Order {order_id} is {local_status} locally but gateway reports {gateway_status}"
        )


class GatewayError(ReconciliationError):
    """Failure talking to the payment gateway."""

    kind: str = "gateway_error"
    retryable: bool = False

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class GatewayTimeout(GatewayError):
    kind = "timeout"
    retryable = True


class GatewayServerError(GatewayError):
    kind = "server_error"
    retryable = True


class GatewayNotFound(GatewayError):
    kind = "not_found"


class GatewayClientError(GatewayError):
    kind = "client_error"


class GatewayResponseError(GatewayError):
    kind = "invalid_response"


__all__ = [
    "ReconciliationError",
    "ConfigurationInvalid",
    "LockUnavailable",
    "LockStorageError",
    "OrderSelectionError",
    "StatusConflict",
    "GatewayError",
    "GatewayTimeout",
    "GatewayServerError",
    "GatewayNotFound",
    "GatewayClientError",
    "GatewayResponseError",
]
