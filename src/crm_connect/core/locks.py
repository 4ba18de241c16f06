"""Keyed mutual exclusion for read-modify-write sequences.

``RedisLockProvider`` serializes across every API instance and the renewal
scheduler; ``LocalLockProvider`` only within one process (development and
tests). Both expose ``lock(key)`` as an async context manager.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

logger = structlog.get_logger(__name__)


class LockAcquireError(RuntimeError):
    """The lock could not be acquired within the blocking timeout."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Timed out waiting for lock {key!r}")
        self.key = key


class RedisLockProvider:
    """Distributed locks on top of ``redis.asyncio.lock.Lock``.

    Args:
        redis_client: Shared async Redis client.
        timeout: Lock TTL in seconds; a crashed holder releases after this.
        blocking_timeout: How long ``lock()`` waits before giving up.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        timeout: float = 60.0,
        blocking_timeout: float = 30.0,
        key_prefix: str = "lock:",
    ) -> None:
        self._redis = redis_client
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout
        self._prefix = key_prefix

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._redis.lock(
            f"{self._prefix}{key}",
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
        )
        if not await lock.acquire():
            logger.warning("lock.acquire_timeout", key=key)
            raise LockAcquireError(key)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # TTL elapsed while held; another holder may already own it
                logger.warning("lock.release_failed", key=key)


class LocalLockProvider:
    """One ``asyncio.Lock`` per key, process-local."""

    def __init__(self, blocking_timeout: float = 30.0) -> None:
        self._blocking_timeout = blocking_timeout
        self._locks: dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._blocking_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("lock.acquire_timeout", key=key)
            raise LockAcquireError(key) from exc
        try:
            yield
        finally:
            lock.release()
