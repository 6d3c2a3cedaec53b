"""Currency helpers. Amounts are always integer minor units (centavos)."""
from __future__ import annotations

from typing import Any


def ensure_minor_units(value: Any, *, field: str = "amount") -> int:
    """Validate a storage-boundary amount; rejects floats, bools and strings."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{field} must be an integer amount in minor units, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{field} must be >= 0")
    return value


def format_brl(minor: int) -> str:
    """9000 -> 'R$ 90,00'; 123456 -> 'R$ 1.234,56'."""
    ensure_minor_units(minor)
    reais, centavos = divmod(minor, 100)
    grouped = f"{reais:,}".replace(",", ".")
    return f"R$ {grouped},{centavos:02d}"


def within_tolerance(actual: int, expected: int, tolerance: float) -> bool:
    """True when |actual - expected| <= expected * tolerance."""
    if expected <= 0:
        return actual == expected
    return abs(actual - expected) <= expected * tolerance


__all__ = ["ensure_minor_units", "format_brl", "within_tolerance"]
