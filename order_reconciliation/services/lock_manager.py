"""Time-boxed lease preventing overlapping reconciliation cycles.

The lease is a single row in `reconciliation_locks` whose primary key is
constant, so two inserts can never both succeed. Expired rows are deleted
before each insert attempt, which lets any instance reclaim the lease of a
crashed holder once `expires_at` has passed.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from order_reconciliation.exceptions import LockStorageError
from order_reconciliation.models.db.reconciliation_locks import ReconciliationLock, SINGLETON_LOCK_ID
from order_reconciliation.utils import get_logger
from order_reconciliation.utils.time import Clock, ensure_utc, utc_now

logger = get_logger(__name__)

SessionFactory = Callable[[], Session]


@dataclass(frozen=True)
class Lease:
    holder_id: str
    acquired_at: datetime
    expires_at: datetime
    token: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class LockBusy:
    holder_id: Optional[str]
    expires_at: Optional[datetime]


AcquireResult = Union[Lease, LockBusy]


class LockManager:
    """Database-backed lease (default backend)."""

    backend = "database"

    def __init__(self, session_factory: SessionFactory, *, lease_seconds: float, clock: Clock = utc_now):
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be > 0")
        self._session_factory = session_factory
        self.lease_seconds = float(lease_seconds)
        self._clock = clock

    def try_acquire(self, holder_id: str) -> AcquireResult:
        now = self._clock()
        expires_at = now + timedelta(seconds=self.lease_seconds)
        session = self._session_factory()
        try:
            session.execute(
                delete(ReconciliationLock).where(ReconciliationLock.expires_at <= now)
            )
            session.add(
                ReconciliationLock(
                    id=SINGLETON_LOCK_ID,
                    holder_id=holder_id,
                    acquired_at=now,
                    expires_at=expires_at,
                )
            )
            session.commit()
        except IntegrityError:
            session.rollback()
            existing = session.get(ReconciliationLock, SINGLETON_LOCK_ID)
            busy = LockBusy(
                holder_id=existing.holder_id if existing else None,
                expires_at=ensure_utc(existing.expires_at) if existing else None,
            )
            logger.info(
                "Reconciliation lock busy",
                requested_by=holder_id,
                held_by=busy.holder_id,
                expires_at=busy.expires_at.isoformat() if busy.expires_at else None,
            )
            return busy
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Lock acquisition failed", holder_id=holder_id, error=str(e))
            raise LockStorageError(f"Lock acquisition failed: {e}") from e
        finally:
            session.close()

        logger.info("Reconciliation lock acquired", holder_id=holder_id, expires_at=expires_at.isoformat())
        return Lease(holder_id=holder_id, acquired_at=now, expires_at=expires_at)

    def release(self, lease: Lease) -> bool:
        """Delete our own lease row. Returns False when there was nothing to release."""
        session = self._session_factory()
        try:
            result = session.execute(
                delete(ReconciliationLock).where(
                    ReconciliationLock.id == SINGLETON_LOCK_ID,
                    ReconciliationLock.holder_id == lease.holder_id,
                    ReconciliationLock.acquired_at == lease.acquired_at,
                )
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Lock release failed", holder_id=lease.holder_id, error=str(e))
            raise LockStorageError(f"Lock release failed: {e}") from e
        finally:
            session.close()

        released = bool(result.rowcount)
        if released:
            logger.info("Reconciliation lock released", holder_id=lease.holder_id)
        else:
            logger.debug("Lock already released or reclaimed", holder_id=lease.holder_id)
        return released

    def current(self) -> Optional[Lease]:
        """The live lease, if any (expired rows count as no lease)."""
        session = self._session_factory()
        try:
            row = session.get(ReconciliationLock, SINGLETON_LOCK_ID)
            if row is None:
                return None
            lease = Lease(
                holder_id=row.holder_id,
                acquired_at=ensure_utc(row.acquired_at),
                expires_at=ensure_utc(row.expires_at),
            )
        except SQLAlchemyError as e:
            raise LockStorageError(f"Lock lookup failed: {e}") from e
        finally:
            session.close()
        if lease.is_expired(self._clock()):
            return None
        return lease


__all__ = ["Lease", "LockBusy", "AcquireResult", "LockManager", "SessionFactory"]
