"""
Redis-based Distributed Locking.

Serializes read-modify-write cycles on a single aggregate across processes,
for example the capacity check-and-increment of participant registration.

Lock keys:
- lock:torneo:tournament:{id}   # registration, issuance, lifecycle changes
"""

import asyncio
import hashlib
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncGenerator, Optional, Set
from uuid import uuid4

import redis.asyncio as redis

from torneo.utils.errors import ErrorCode, TorneoError

logger = logging.getLogger(__name__)


class LockType(Enum):
    """Lock scopes."""

    TOURNAMENT = "tournament"


@dataclass
class LockInfo:
    """Lock metadata."""

    lock_key: str
    owner_id: str
    acquired_at: float
    expires_at: float
    lock_type: LockType


class DistributedLockError(TorneoError):
    """Base lock error."""

    def __init__(self, message: str, lock_key: str):
        super().__init__(
            code=ErrorCode.LOCK_UNAVAILABLE,
            message=message,
            details={"lockKey": lock_key},
            recoverable=True,
        )
        self.lock_key = lock_key


class LockAcquisitionError(DistributedLockError):
    """Failed to acquire lock within timeout."""


class DistributedLockManager:
    """
    Redis-based Distributed Lock Manager.

    Redis commands:
    - SET NX PX: atomic acquire with expiry, so a crashed holder cannot
      block the resource forever
    - GET + DEL (Lua): release only if we still own the key
    """

    KEY_PREFIX = "lock:torneo"

    RELEASE_LOCK_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        default_lock_timeout_ms: int = 10000,
        default_acquire_timeout_ms: int = 5000,
        retry_interval_ms: int = 50,
    ):
        self.redis = redis_client
        self.default_lock_timeout_ms = default_lock_timeout_ms
        self.default_acquire_timeout_ms = default_acquire_timeout_ms
        self.retry_interval_ms = retry_interval_ms

        self._instance_id = str(uuid4())

        # Keys currently held by this instance (for cleanup on shutdown)
        self._held_locks: Set[str] = set()

        self._release_script = None

    @classmethod
    def from_settings(cls, redis_client: redis.Redis, settings) -> "DistributedLockManager":
        return cls(
            redis_client,
            default_lock_timeout_ms=settings.lock_timeout_ms,
            default_acquire_timeout_ms=settings.lock_acquire_timeout_ms,
            retry_interval_ms=settings.lock_retry_interval_ms,
        )

    async def _ensure_release_script(self) -> None:
        """Register the release script once."""
        if self._release_script is None:
            self._release_script = self.redis.register_script(self.RELEASE_LOCK_SCRIPT)

    def _make_lock_key(self, resource_id: str, lock_type: LockType) -> str:
        return f"{self.KEY_PREFIX}:{lock_type.value}:{resource_id}"

    def _make_owner_token(self) -> str:
        """Unique token per acquisition: instance, timestamp and random part."""
        raw = f"{self._instance_id}:{time.time_ns()}:{uuid4().hex[:8]}"
        return hashlib.sha256(raw.encode()).hexdigest()[:32]

    async def acquire(
        self,
        resource_id: str,
        lock_type: LockType = LockType.TOURNAMENT,
        lock_timeout_ms: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
    ) -> LockInfo:
        """
        Acquire a distributed lock, polling at a fixed interval.

        Args:
            resource_id: Tournament identifier
            lock_type: Scope of the lock
            lock_timeout_ms: Lock auto-expire time
            acquire_timeout_ms: Max time to wait for the lock

        Returns:
            LockInfo with lock details

        Raises:
            LockAcquisitionError: If the lock cannot be acquired within timeout
        """
        await self._ensure_release_script()

        lock_timeout = lock_timeout_ms or self.default_lock_timeout_ms
        acquire_timeout = acquire_timeout_ms or self.default_acquire_timeout_ms

        lock_key = self._make_lock_key(resource_id, lock_type)
        owner_token = self._make_owner_token()

        start_time = time.monotonic() * 1000

        while True:
            acquired = await self.redis.set(
                lock_key,
                owner_token,
                nx=True,
                px=lock_timeout,
            )

            if acquired:
                now = time.time()
                self._held_locks.add(lock_key)
                return LockInfo(
                    lock_key=lock_key,
                    owner_id=owner_token,
                    acquired_at=now,
                    expires_at=now + (lock_timeout / 1000),
                    lock_type=lock_type,
                )

            elapsed = (time.monotonic() * 1000) - start_time
            if elapsed >= acquire_timeout:
                logger.warning(
                    "Lock %s not acquired within %dms", lock_key, acquire_timeout
                )
                raise LockAcquisitionError(
                    f"Failed to acquire lock {lock_key} within {acquire_timeout}ms",
                    lock_key,
                )

            await asyncio.sleep(self.retry_interval_ms / 1000)

    async def release(self, lock_info: LockInfo) -> bool:
        """
        Release a lock if this owner still holds it.

        Returns:
            True if released, False if it had already expired or been taken
        """
        await self._ensure_release_script()

        result = await self._release_script(
            keys=[lock_info.lock_key],
            args=[lock_info.owner_id],
        )

        self._held_locks.discard(lock_info.lock_key)
        return result == 1

    @asynccontextmanager
    async def lock(
        self,
        resource_id: str,
        lock_type: LockType = LockType.TOURNAMENT,
        lock_timeout_ms: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
    ) -> AsyncGenerator[LockInfo, None]:
        """
        Acquire on entry, release on exit (including on exceptions).

            async with lock_manager.lock(tournament_id) as lock_info:
                tournament = await repo.get_for_update(tournament_id)
                ...
        """
        lock_info = await self.acquire(
            resource_id,
            lock_type,
            lock_timeout_ms,
            acquire_timeout_ms,
        )
        try:
            yield lock_info
        finally:
            if not await self.release(lock_info):
                logger.warning(
                    "Lock %s expired before release; the guarded section "
                    "outlived its TTL",
                    lock_info.lock_key,
                )

    async def cleanup_all(self) -> int:
        """
        Release all locks held by this instance (call on shutdown).

        Returns:
            Number of locks released
        """
        released = 0
        for lock_key in list(self._held_locks):
            try:
                await self.redis.delete(lock_key)
                released += 1
            except redis.RedisError:
                logger.exception("Failed to release lock %s during cleanup", lock_key)
            self._held_locks.discard(lock_key)
        return released
