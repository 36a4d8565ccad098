"""
Single-writer-per-key locking and bounded conflict retry.

Settlement holds a lock on ``order:<code>`` for the whole lookup-to-commit
sequence. The lock narrows the race window; correctness across processes
still rests on the conditional updates in the stores.

Backends:
- LocalKeyedLock: asyncio locks, one event loop
- RedisKeyedLock: redis.asyncio Lock, shared by every API worker
"""
import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Dict, Optional, Protocol

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError, RedisError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from paycode.config import Settings
from paycode.errors import Conflict, PersistenceError
from paycode.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class KeyedLock(Protocol):
    """Exclusive lock per string key."""

    def hold(self, key: str) -> "AsyncIterator[None]":
        """Async context manager holding ``key`` exclusively."""
        ...


class LocalKeyedLock:
    """
    In-process keyed lock.

    Lock objects are created on demand and dropped once nobody holds or
    waits for them, so the map does not grow with every payment code.
    """

    def __init__(self, timeout_seconds: float = 5.0) -> None:
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        started = time.monotonic()
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                metrics.record_lock("timeout")
                logger.warning("lock_timeout", key=key, timeout=self.timeout_seconds)
                raise Conflict(f"Another request is working on {key}", {"key": key})
            metrics.record_lock("acquired", time.monotonic() - started)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class RedisKeyedLock:
    """Keyed lock shared across processes through Redis."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        timeout_seconds: float = 5.0,
        ttl_seconds: int = 30,
        prefix: str = "paycode:lock:",
    ) -> None:
        """
        Initialize Redis lock.

        Args:
            redis_client: Redis client
            timeout_seconds: Max wait to acquire
            ttl_seconds: Lock expiry if the holder dies
            prefix: Key namespace
        """
        self.redis_client = redis_client
        self.timeout_seconds = timeout_seconds
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self.redis_client.lock(
            f"{self.prefix}{key}",
            timeout=self.ttl_seconds,
            blocking_timeout=self.timeout_seconds,
        )
        started = time.monotonic()
        try:
            acquired = await lock.acquire()
        except RedisError as exc:
            metrics.record_lock("error")
            logger.error("lock_backend_unavailable", key=key, error=str(exc))
            raise PersistenceError("Lock backend unavailable", {"key": key}) from exc
        if not acquired:
            metrics.record_lock("timeout")
            logger.warning("lock_timeout", key=key, timeout=self.timeout_seconds)
            raise Conflict(f"Another request is working on {key}", {"key": key})
        metrics.record_lock("acquired", time.monotonic() - started)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # TTL elapsed mid-operation; the DB transaction already decided
                logger.warning("lock_expired_before_release", key=key)
            except RedisError as exc:
                # Left to the TTL; the DB transaction already decided
                logger.error("lock_release_failed", key=key, error=str(exc))

    async def close(self) -> None:
        """Close Redis connection."""
        await self.redis_client.close()


def build_lock(settings: Settings, redis_client: Optional[aioredis.Redis] = None) -> KeyedLock:
    """Create the lock backend selected by ``settings.lock_backend``."""
    if settings.lock_backend == "redis":
        client = redis_client or aioredis.from_url(
            settings.redis_url, encoding="utf-8", decode_responses=True
        )
        return RedisKeyedLock(
            client,
            timeout_seconds=settings.lock_timeout_seconds,
            ttl_seconds=settings.lock_ttl_seconds,
        )
    return LocalKeyedLock(timeout_seconds=settings.lock_timeout_seconds)


def conflict_retrying(settings: Settings, operation: str) -> AsyncRetrying:
    """
    Retry policy for an atomic unit that lost a storage race.

    Usage:
        async for attempt in conflict_retrying(settings, "recharge"):
            with attempt:
                result = await do_unit()
    """

    def _log_retry(state: RetryCallState) -> None:
        metrics.record_conflict_retry(operation)
        logger.warning(
            "conflict_retry",
            operation=operation,
            attempt=state.attempt_number,
            error=str(state.outcome.exception()) if state.outcome else None,
        )

    return AsyncRetrying(
        retry=retry_if_exception_type(Conflict),
        stop=stop_after_attempt(settings.conflict_retry_attempts),
        wait=wait_exponential(multiplier=settings.conflict_retry_base_delay, max=1.0),
        before_sleep=_log_retry,
        reraise=True,
    )
