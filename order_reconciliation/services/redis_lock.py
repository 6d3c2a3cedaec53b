"""Redis-backed lease with the same contract as LockManager.

SET key token NX PX <lease_ms> acquires; Redis expiry reclaims the lease of
a crashed holder. Release is a compare-and-delete so a holder can never drop
a lease another instance reclaimed after expiry.

Keys:
  order_reconciliation:lock -> "<holder_id>|<random token>"
"""
from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Optional

import redis

from order_reconciliation.exceptions import LockStorageError
from order_reconciliation.services.lock_manager import AcquireResult, Lease, LockBusy
from order_reconciliation.utils import get_logger
from order_reconciliation.utils.time import Clock, utc_now

logger = get_logger(__name__)

DEFAULT_LOCK_KEY = "order_reconciliation:lock"

RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def _decode(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisLockManager:
    backend = "redis"

    def __init__(self, client: "redis.Redis", *, lease_seconds: float, clock: Clock = utc_now, key: str = DEFAULT_LOCK_KEY):
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be > 0")
        self._client = client
        self.lease_seconds = float(lease_seconds)
        self._clock = clock
        self.key = key

    @classmethod
    def from_url(cls, url: str, *, lease_seconds: float, **kwargs) -> "RedisLockManager":
        return cls(redis.from_url(url, socket_connect_timeout=2.0), lease_seconds=lease_seconds, **kwargs)

    def try_acquire(self, holder_id: str) -> AcquireResult:
        now = self._clock()
        token = f"{holder_id}|{uuid.uuid4().hex}"
        try:
            acquired = self._client.set(self.key, token, nx=True, px=int(self.lease_seconds * 1000))
            if not acquired:
                current = _decode(self._client.get(self.key))
                ttl_ms = self._client.pttl(self.key)
        except redis.RedisError as e:
            logger.error("Redis lock acquisition failed", holder_id=holder_id, error=str(e))
            raise LockStorageError(f"Redis lock acquisition failed: {e}") from e

        if not acquired:
            held_by = current.split("|", 1)[0] if current else None
            expires_at = now + timedelta(milliseconds=ttl_ms) if ttl_ms and ttl_ms > 0 else None
            logger.info("Reconciliation lock busy", requested_by=holder_id, held_by=held_by, backend=self.backend)
            return LockBusy(holder_id=held_by, expires_at=expires_at)

        expires_at = now + timedelta(seconds=self.lease_seconds)
        logger.info("Reconciliation lock acquired", holder_id=holder_id, backend=self.backend, expires_at=expires_at.isoformat())
        return Lease(holder_id=holder_id, acquired_at=now, expires_at=expires_at, token=token)

    def release(self, lease: Lease) -> bool:
        if not lease.token:
            return False
        try:
            deleted = self._client.eval(RELEASE_SCRIPT, 1, self.key, lease.token)
        except redis.RedisError as e:
            logger.error("Redis lock release failed", holder_id=lease.holder_id, error=str(e))
            raise LockStorageError(f"Redis lock release failed: {e}") from e
        released = bool(deleted)
        if released:
            logger.info("Reconciliation lock released", holder_id=lease.holder_id, backend=self.backend)
        else:
            logger.debug("Lock already released or reclaimed", holder_id=lease.holder_id, backend=self.backend)
        return released

    def current(self) -> Optional[Lease]:
        try:
            value = _decode(self._client.get(self.key))
            ttl_ms = self._client.pttl(self.key) if value else None
        except redis.RedisError as e:
            raise LockStorageError(f"Redis lock lookup failed: {e}") from e
        if not value or not ttl_ms or ttl_ms <= 0:
            return None
        now = self._clock()
        expires_at = now + timedelta(milliseconds=ttl_ms)
        return Lease(
            holder_id=value.split("|", 1)[0],
            acquired_at=expires_at - timedelta(seconds=self.lease_seconds),
            expires_at=expires_at,
            token=value,
        )


__all__ = ["RedisLockManager", "DEFAULT_LOCK_KEY", "RELEASE_SCRIPT"]
