"""Redis lease backend with a mocked client (no server needed)."""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import redis

from order_reconciliation.exceptions import LockStorageError
from order_reconciliation.services.lock_manager import Lease, LockBusy
from order_reconciliation.services.redis_lock import DEFAULT_LOCK_KEY, RELEASE_SCRIPT, RedisLockManager


def test_acquire_uses_set_nx_with_lease_ttl(clock):
    client = MagicMock()
    client.set.return_value = True
    manager = RedisLockManager(client, lease_seconds=300, clock=clock)

    lease = manager.try_acquire("host-a:1")

    assert isinstance(lease, Lease)
    assert lease.expires_at == clock() + timedelta(seconds=300)
    assert lease.token.startswith("host-a:1|")
    client.set.assert_called_once_with(DEFAULT_LOCK_KEY, lease.token, nx=True, px=300_000)


def test_busy_reports_holder_and_remaining_ttl(clock):
    client = MagicMock()
    client.set.return_value = None
    client.get.return_value = b"host-a:1|deadbeef"
    client.pttl.return_value = 120_000
    manager = RedisLockManager(client, lease_seconds=300, clock=clock)

    busy = manager.try_acquire("host-b:2")

    assert isinstance(busy, LockBusy)
    assert busy.holder_id == "host-a:1"
    assert busy.expires_at == clock() + timedelta(minutes=2)


def test_release_is_compare_and_delete(clock):
    client = MagicMock()
    client.set.return_value = True
    client.eval.return_value = 1
    manager = RedisLockManager(client, lease_seconds=300, clock=clock)
    lease = manager.try_acquire("host-a:1")

    assert manager.release(lease) is True
    client.eval.assert_called_once_with(RELEASE_SCRIPT, 1, DEFAULT_LOCK_KEY, lease.token)

    client.eval.return_value = 0
    assert manager.release(lease) is False


def test_current_reads_holder_from_value(clock):
    client = MagicMock()
    client.get.return_value = b"host-a:1|deadbeef"
    client.pttl.return_value = 60_000
    manager = RedisLockManager(client, lease_seconds=300, clock=clock)

    lease = manager.current()
    assert lease.holder_id == "host-a:1"
    assert lease.expires_at == clock() + timedelta(minutes=1)

    client.get.return_value = None
    assert manager.current() is None


def test_redis_errors_become_lock_storage_errors(clock):
    client = MagicMock()
    client.set.side_effect = redis.ConnectionError("connection refused")
    manager = RedisLockManager(client, lease_seconds=300, clock=clock)
    with pytest.raises(LockStorageError):
        manager.try_acquire("host-a:1")
