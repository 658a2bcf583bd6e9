"""
Cache backends for the ledger gateway.

Both backends store opaque strings; the gateway encodes domain objects to
JSON before calling ``set``. Neither backend is transactional: concurrent
writers of one key race and the last ``set`` wins.

TTL is enforced by both backends. Redis expires keys server-side via SETEX;
the in-process backend records an expiry deadline per entry and drops the
entry on the first read past that deadline.
"""

import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple, runtime_checkable

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.config import GatewayConfig
from shared.errors import CacheError
from shared.logging import get_logger


@runtime_checkable
class Cache(Protocol):
    """Capability set shared by every cache backend."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ttl: int) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def check_connection(self) -> bool:
        ...


class RedisCache:
    """Redis-backed cache."""

    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.logger = get_logger("ledger.cache.redis")
        self._redis: Optional[redis.Redis] = client

    def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30
            )
        return self._redis

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self._get_redis().get(key)
        except (RedisError, OSError) as e:
            raise CacheError("get", str(e)) from e

        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        # SETEX rejects a zero TTL; one second is the smallest expiry Redis accepts.
        ttl = max(1, int(ttl))
        try:
            await self._get_redis().setex(key, ttl, value)
        except (RedisError, OSError) as e:
            raise CacheError("set", str(e)) from e

    async def delete(self, key: str) -> None:
        try:
            await self._get_redis().delete(key)
        except (RedisError, OSError) as e:
            raise CacheError("delete", str(e)) from e

    async def check_connection(self) -> bool:
        try:
            return bool(await self._get_redis().ping())
        except (RedisError, OSError) as e:
            self.logger.warning("Redis ping failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis cache stopped")


class InMemoryCache:
    """Process-local cache guarded by a lock.

    The lock is held only for the dictionary access itself; no ``await``
    happens while it is held.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= now:
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        expires_at = self._clock() + max(0, ttl)
        with self._lock:
            self._entries[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def check_connection(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def create_cache(config: GatewayConfig) -> Cache:
    """Pick a backend from the configured URL; ``memory://`` is in-process."""
    if config.uses_memory_cache:
        return InMemoryCache()
    return RedisCache(config.redis_url)
