from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from order_reconciliation.exceptions import LockStorageError
from order_reconciliation.models.db import ReconciliationLock
from order_reconciliation.services.lock_manager import Lease, LockBusy, LockManager


def test_lease_busy_then_reclaimed_after_expiry(session_factory, clock):
    """5 minute lease at T0: busy at T0+1min, free again at T0+6min."""
    manager = LockManager(session_factory, lease_seconds=300, clock=clock)
    t0 = clock()

    first = manager.try_acquire("host-a:1")
    assert isinstance(first, Lease)
    assert first.expires_at == t0 + timedelta(minutes=5)

    clock.advance(minutes=1)
    second = manager.try_acquire("host-b:2")
    assert isinstance(second, LockBusy)
    assert second.holder_id == "host-a:1"
    assert second.expires_at == first.expires_at

    clock.advance(minutes=5)
    third = manager.try_acquire("host-b:2")
    assert isinstance(third, Lease)
    assert third.holder_id == "host-b:2"


def test_overlapping_acquires_never_both_succeed(session_factory, clock):
    a = LockManager(session_factory, lease_seconds=300, clock=clock)
    b = LockManager(session_factory, lease_seconds=300, clock=clock)
    results = [a.try_acquire("host-a"), b.try_acquire("host-b")]
    assert sum(isinstance(r, Lease) for r in results) == 1


def test_release_frees_the_lease(session_factory, clock):
    manager = LockManager(session_factory, lease_seconds=300, clock=clock)
    lease = manager.try_acquire("host-a")
    assert manager.release(lease) is True
    assert manager.current() is None
    assert isinstance(manager.try_acquire("host-b"), Lease)


def test_release_is_idempotent(session_factory, clock):
    manager = LockManager(session_factory, lease_seconds=300, clock=clock)
    lease = manager.try_acquire("host-a")
    assert manager.release(lease) is True
    assert manager.release(lease) is False


def test_stale_holder_cannot_release_reclaimed_lease(session_factory, clock):
    manager = LockManager(session_factory, lease_seconds=300, clock=clock)
    stale = manager.try_acquire("host-a")
    clock.advance(minutes=6)
    fresh = manager.try_acquire("host-b")
    assert isinstance(fresh, Lease)

    assert manager.release(stale) is False
    current = manager.current()
    assert current is not None and current.holder_id == "host-b"


def test_current_ignores_expired_row(session_factory, clock):
    manager = LockManager(session_factory, lease_seconds=300, clock=clock)
    manager.try_acquire("host-a")
    assert manager.current().holder_id == "host-a"
    clock.advance(minutes=5)
    assert manager.current() is None
    with session_factory() as session:
        # the row stays until the next acquire sweeps it
        assert session.query(ReconciliationLock).count() == 1


def test_storage_failure_is_wrapped(clock):
    class BrokenSession:
        def execute(self, *args, **kwargs):
            raise OperationalError("DELETE", {}, Exception("database is locked"))

        def rollback(self):
            pass

        def close(self):
            pass

    manager = LockManager(lambda: BrokenSession(), lease_seconds=300, clock=clock)
    with pytest.raises(LockStorageError):
        manager.try_acquire("host-a")


def test_lease_length_must_be_positive(session_factory):
    with pytest.raises(ValueError):
        LockManager(session_factory, lease_seconds=0)
