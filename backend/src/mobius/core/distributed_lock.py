"""
Distributed run lock for Mobius background jobs.

This module defines the DistributedLock protocol used to make sure a periodic
job runs on at most one server process at a time. It supports two
interchangeable implementations:
- RedisDistributedLock: For scaled multi-node deployments
- InMemoryDistributedLock: For single-node/development deployments

Backend selection is automatic based on the MOBIUS_REDIS_URL configuration.

Example usage:
    from mobius.core.distributed_lock import get_distributed_lock

    lock = await get_distributed_lock()
    token = await lock.try_acquire("calendar:cron", lease_seconds=300)
    if token is None:
        return  # another instance holds it
    try:
        ...
    finally:
        await lock.release("calendar:cron", token)
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Optional, Protocol, runtime_checkable

import redis.asyncio as redis

from .exceptions import LockError

logger = logging.getLogger(__name__)

# Global lock instance (singleton)
_distributed_lock: Optional["DistributedLock"] = None

# Global Redis client instance (internal use only)
_redis_client: Optional[Any] = None

# Deletes the key only when it still holds our token, so an expired lease
# re-acquired by another process is never released by us.
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

LOCK_KEY_PREFIX = "mobius:lock:"


@runtime_checkable
class DistributedLock(Protocol):
    """Protocol for a leased mutual-exclusion lock shared across processes.

    Acquisition never blocks: a caller that does not get the lock is expected
    to skip its work for this period.
    """

    async def try_acquire(self, name: str, lease_seconds: float) -> str | None:
        """Try to take the lock.

        Args:
            name: Lock name, e.g. ``"calendar:cron"``.
            lease_seconds: How long the lock is held before it expires on its
                own if never released.

        Returns:
            An opaque owner token when the lock was acquired, None if another
            holder has it.

        Raises:
            LockError: If the lock backend is unreachable.
        """
        ...

    async def release(self, name: str, token: str) -> bool:
        """Release the lock if ``token`` still owns it.

        Returns:
            True if the lock was released, False if it had expired or is
            owned by someone else.
        """
        ...


class InMemoryDistributedLock:
    """Process-local lock with lease expiry.

    Suitable for single-process deployments and tests. Offers no protection
    across processes.
    """

    def __init__(self) -> None:
        # name -> (token, expiry monotonic timestamp)
        self._locks: dict[str, tuple[str, float]] = {}
        self._mutex = asyncio.Lock()

    async def try_acquire(self, name: str, lease_seconds: float) -> str | None:
        if not name:
            raise ValueError("Lock name cannot be empty")
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")

        async with self._mutex:
            now = time.monotonic()
            held = self._locks.get(name)
            if held is not None and held[1] > now:
                return None
            token = str(uuid.uuid4())
            self._locks[name] = (token, now + lease_seconds)
            return token

    async def release(self, name: str, token: str) -> bool:
        async with self._mutex:
            held = self._locks.get(name)
            if held is None or held[0] != token:
                return False
            del self._locks[name]
            return True

    def is_held(self, name: str) -> bool:
        """Whether ``name`` is currently held and unexpired."""
        held = self._locks.get(name)
        return held is not None and held[1] > time.monotonic()


class RedisDistributedLock:
    """Redis-backed lock using ``SET key token NX PX lease``.

    Release is a compare-and-delete Lua script so only the owner can free
    the lock.

    Note:
        Use `get_distributed_lock()` to obtain a properly configured instance
        rather than constructing RedisDistributedLock directly.
    """

    def __init__(self, redis_client: Any, key_prefix: str = LOCK_KEY_PREFIX):
        self._client = redis_client
        self._key_prefix = key_prefix

    def _key(self, name: str) -> str:
        return f"{self._key_prefix}{name}"

    async def try_acquire(self, name: str, lease_seconds: float) -> str | None:
        if not name:
            raise ValueError("Lock name cannot be empty")
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")

        token = str(uuid.uuid4())
        try:
            acquired = await self._client.set(
                self._key(name),
                token,
                nx=True,
                px=int(lease_seconds * 1000),
            )
        except Exception as e:
            logger.error(f"Redis SET NX failed for lock '{name}': {e}")
            raise LockError(
                f"failed to acquire '{name}': {e}",
                details={"lock": name, "error": str(e)},
            ) from e
        return token if acquired else None

    async def release(self, name: str, token: str) -> bool:
        try:
            result = await self._client.eval(RELEASE_SCRIPT, 1, self._key(name), token)
        except Exception as e:
            logger.error(f"Redis lock release failed for lock '{name}': {e}")
            raise LockError(
                f"failed to release '{name}': {e}",
                details={"lock": name, "error": str(e)},
            ) from e
        return bool(result)


# =============================================================================
# Redis Client Management (Internal)
# =============================================================================


async def _create_redis_client() -> Any:
    """Create and test a Redis client connection.

    Raises:
        LockError: If Redis connection fails.
    """
    from .config import get_settings_instance

    settings = get_settings_instance()

    try:
        client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_connection_timeout,
        )
        await client.ping()
        logger.info(
            "Redis client initialized successfully",
            extra={
                "connection_timeout": settings.redis_connection_timeout,
                "socket_timeout": settings.redis_socket_timeout,
            },
        )
        return client
    except Exception as e:
        logger.warning(f"Redis connection failed: {e}")
        raise LockError(f"Redis connection failed: {e}", details={"error": str(e)}) from e


async def _get_redis_client() -> Any:
    """Get or create the Redis client (internal singleton)."""
    global _redis_client

    if _redis_client is None:
        _redis_client = await _create_redis_client()

    return _redis_client


# =============================================================================
# Lock Factory
# =============================================================================


async def get_distributed_lock() -> DistributedLock:
    """Get the configured distributed lock (singleton).

    Selection logic:
    1. If MOBIUS_REDIS_URL is set and Redis is reachable -> RedisDistributedLock
    2. If MOBIUS_REDIS_URL is set but unreachable and fallback enabled -> InMemoryDistributedLock (with warning)
    3. If MOBIUS_REDIS_URL is not set -> InMemoryDistributedLock

    Raises:
        LockError: If Redis is required but unavailable.
    """
    global _distributed_lock

    if _distributed_lock is not None:
        return _distributed_lock

    from .config import get_settings_instance

    settings = get_settings_instance()

    if not settings.redis_enabled:
        if settings.redis_required:
            raise LockError("MOBIUS_REDIS_REQUIRED is set but MOBIUS_REDIS_URL is empty")
        logger.info("No Redis URL configured, using InMemoryDistributedLock")
        _distributed_lock = InMemoryDistributedLock()
        return _distributed_lock

    try:
        redis_client = await _get_redis_client()
        _distributed_lock = RedisDistributedLock(redis_client)
        logger.info("Using RedisDistributedLock")
        return _distributed_lock
    except LockError as e:
        if settings.redis_required or not settings.redis_fallback_enabled:
            logger.error("Redis lock unavailable and fallback not allowed", extra={"error": str(e)})
            raise

        logger.warning(
            "Redis connection failed, falling back to InMemoryDistributedLock",
            extra={"error": str(e)},
        )
        _distributed_lock = InMemoryDistributedLock()
        return _distributed_lock


async def close_distributed_lock() -> None:
    """Close the shared Redis client, if any (call during shutdown)."""
    global _redis_client, _distributed_lock
    if _redis_client is not None:
        await _redis_client.aclose()
    _redis_client = None
    _distributed_lock = None


def reset_distributed_lock() -> None:
    """Reset the lock singleton (for testing only)."""
    global _distributed_lock, _redis_client
    _distributed_lock = None
    _redis_client = None
