"""Time utilities (UTC now, tz normalisation, elapsed formatting)."""
from __future__ import annotations
from datetime import datetime, timezone, timedelta
from typing import Callable

Clock = Callable[[], datetime]

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def ensure_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes; everything we store is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def elapsed_ms(start: datetime, end: datetime | None = None) -> int:
    end_ts = end or utc_now()
    return int((end_ts - start).total_seconds() * 1000)

def format_elapsed(start: datetime, end: datetime | None = None) -> str:
    end_ts = end or utc_now()
    delta: timedelta = end_ts - start
    ms = int(delta.total_seconds() * 1000)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms/1000:.2f}s"
    return f"{delta.total_seconds()/60:.2f}m"

__all__ = ["Clock", "utc_now", "ensure_utc", "elapsed_ms", "format_elapsed"]
