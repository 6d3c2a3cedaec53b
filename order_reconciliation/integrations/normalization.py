"""Normalization of AbacatePay charge payloads.

The gateway answers either with the charge at the top level or wrapped in a
`data` envelope, and webhook-stored payloads carry the fee under different
keys. Every fallback is an explicit priority list below; callers never poke
at nested keys themselves.
"""
from __future__ import annotations

from typing import Any, Mapping

from pydantic import ValidationError

from order_reconciliation.exceptions import GatewayResponseError
from order_reconciliation.models.db.enums import OrderStatus
from order_reconciliation.models.schemas.gateway import (
    AbacatePayChargeBody,
    FeeLookup,
    FeeRecognized,
    FeeUnrecognized,
    GatewayCharge,
)

# Where the charge body may live, first match wins. () is the payload itself.
CHARGE_ROOTS: tuple[tuple[str, ...], ...] = (
    ("data",),
    (),
)

# Where the fee (integer centavos) may live, first match wins.
FEE_PATHS: tuple[tuple[str, ...], ...] = (
    ("payment", "fee"),
    ("data", "payment", "fee"),
    ("data", "fee"),
)

# Gateway status (lower-cased) -> local status. Anything absent maps to pending.
STATUS_MAP: dict[str, OrderStatus] = {
    "paid": OrderStatus.PAID,
    "confirmed": OrderStatus.PAID,
    "paid_out": OrderStatus.PAID,
    "completed": OrderStatus.PAID,
    "refunded": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
    "canceled": OrderStatus.CANCELLED,
    "expired": OrderStatus.EXPIRED,
}

_MISSING = object()


def map_gateway_status(raw_status: str | None) -> OrderStatus:
    if not raw_status:
        return OrderStatus.PENDING
    return STATUS_MAP.get(raw_status.strip().lower(), OrderStatus.PENDING)


def _dig(payload: Any, path: tuple[str, ...]) -> Any:
    node = payload
    for key in path:
        if not isinstance(node, Mapping) or key not in node:
            return _MISSING
        node = node[key]
    return node


def _as_minor_units(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float) and value.is_integer() and value >= 0:
        return int(value)
    return None


def unwrap_charge(payload: Any) -> Mapping[str, Any]:
    """Return the first charge body (a mapping with a status) along CHARGE_ROOTS."""
    if not isinstance(payload, Mapping):
        raise GatewayResponseError(f"Gateway payload is not an object: {type(payload).__name__}")
    for root in CHARGE_ROOTS:
        node = _dig(payload, root)
        if isinstance(node, Mapping) and node.get("status"):
            return node
    raise GatewayResponseError("Gateway payload has no charge status")


def extract_fee(payload: Any) -> FeeLookup:
    for path in FEE_PATHS:
        fee = _as_minor_units(_dig(payload, path))
        if fee is not None:
            return FeeRecognized(fee=fee, path=path)
    return FeeUnrecognized()


def normalize_charge(reference: str, payload: Any) -> GatewayCharge:
    """Turn a raw gateway body into a GatewayCharge or raise GatewayResponseError."""
    body = unwrap_charge(payload)
    try:
        charge = AbacatePayChargeBody.model_validate(dict(body))
    except ValidationError as e:
        raise GatewayResponseError(f"Unrecognized charge body: {e.error_count()} validation error(s)") from e
    fee = extract_fee(payload)
    gateway_status = charge.status.strip().lower()
    return GatewayCharge(
        reference=charge.id or reference,
        gateway_status=gateway_status,
        status=map_gateway_status(gateway_status),
        amount=charge.amount,
        fee=fee.fee if isinstance(fee, FeeRecognized) else None,
        raw=dict(payload),
    )


__all__ = [
    "CHARGE_ROOTS",
    "FEE_PATHS",
    "STATUS_MAP",
    "map_gateway_status",
    "unwrap_charge",
    "extract_fee",
    "normalize_charge",
]
