"""
Booking locks.

A conflict check followed by an insert is only safe if nobody else books the
same driver, vehicle or trip request in between. BookingLock serializes that
sequence per resource: callers hold the locks for every resource they touch from
the conflict check until the commit.

Keys are always acquired in sorted order, so two bookings that share
resources cannot deadlock each other.

Backends:
- "local": asyncio locks, correct for a single process
- "redis": Redis locks (redis.asyncio), shared by every worker
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional

from redis.exceptions import LockError

from tripdesk.app.core.config import settings
from tripdesk.app.core.exceptions import ConflictError
from tripdesk.app.core.redis_client import get_redis_client

logger = logging.getLogger("tripdesk")


def driver_key(driver_id: int) -> str:
    return f"driver:{driver_id}"


def vehicle_key(vehicle_id: int) -> str:
    return f"vehicle:{vehicle_id}"


def request_key(request_id: int) -> str:
    return f"request:{request_id}"


def resource_keys(
    driver_ids: Iterable[Optional[int]] = (),
    vehicle_ids: Iterable[Optional[int]] = (),
    request_ids: Iterable[Optional[int]] = ()
) -> List[str]:
    """Sorted, de-duplicated lock keys for the given drivers, vehicles and trip requests."""
    keys = {driver_key(d) for d in driver_ids if d is not None}
    keys.update(vehicle_key(v) for v in vehicle_ids if v is not None)
    keys.update(request_key(r) for r in request_ids if r is not None)
    return sorted(keys)


class BookingLock:
    """Per-resource mutual exclusion around check-then-book sequences."""

    def __init__(self, backend: str = "local", timeout: float = 10.0, redis_client=None):
        if backend not in ("local", "redis"):
            raise ValueError(f"Unknown booking lock backend: {backend}")
        if backend == "redis" and redis_client is None:
            raise ValueError("The redis booking lock backend needs a redis client")
        self.backend = backend
        self.timeout = timeout
        self.redis = redis_client
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, keys: Iterable[str]) -> AsyncIterator[List[str]]:
        """
        Hold every lock in ``keys`` for the duration of the block.

        Raises:
            ConflictError: If a lock is not obtained within the timeout,
                meaning another booking for the same resource is in progress
        """
        ordered = sorted(set(keys))
        if self.backend == "redis":
            async with self._hold_redis(ordered):
                yield ordered
        else:
            async with self._hold_local(ordered):
                yield ordered

    @asynccontextmanager
    async def _hold_local(self, keys: List[str]):
        acquired: List[str] = []
        try:
            for key in keys:
                lock = self._locks.setdefault(key, asyncio.Lock())
                self._holders[key] = self._holders.get(key, 0) + 1
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
                except asyncio.TimeoutError:
                    self._forget(key)
                    raise self._busy(key)
                except asyncio.CancelledError:
                    self._forget(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._forget(key)

    def _forget(self, key: str) -> None:
        # Drop the lock object once nobody holds or waits for it
        remaining = self._holders.get(key, 0) - 1
        if remaining <= 0:
            self._holders.pop(key, None)
            self._locks.pop(key, None)
        else:
            self._holders[key] = remaining

    @asynccontextmanager
    async def _hold_redis(self, keys: List[str]):
        acquired = []
        try:
            for key in keys:
                lock = self.redis.lock(
                    f"tripdesk:booking:{key}",
                    timeout=self.timeout * 3,
                    blocking_timeout=self.timeout,
                )
                if not await lock.acquire():
                    raise self._busy(key)
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                try:
                    await lock.release()
                except LockError:
                    # Expired while held; the key is free again either way
                    logger.warning("Booking lock expired before release", extra={"lock": lock.name})

    @staticmethod
    def _busy(key: str) -> ConflictError:
        logger.warning("Booking lock timeout", extra={"lock": key})
        return ConflictError(
            f"Another booking for {key.replace(':', ' ')} is in progress, please retry",
            details={"resource": key},
        )


_booking_lock: Optional[BookingLock] = None


def get_booking_lock() -> BookingLock:
    """
    Process-wide BookingLock built from settings.

    Usable as a FastAPI dependency; tests override it with a fresh instance.
    """
    global _booking_lock
    if _booking_lock is None:
        redis_client = None
        if settings.booking_lock_backend == "redis":
            redis_client = get_redis_client()
        _booking_lock = BookingLock(
            backend=settings.booking_lock_backend,
            timeout=settings.booking_lock_timeout_seconds,
            redis_client=redis_client,
        )
    return _booking_lock
