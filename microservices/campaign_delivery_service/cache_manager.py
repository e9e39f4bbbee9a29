"""
Cache Manager

Redis-backed TTL cache with refresh-ahead, tenant invalidation and a
distributed lock. Reads and writes fail open: a cache outage is logged and
the caller proceeds without the cache.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from enum import Enum, IntEnum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.config import CacheConfig

from .protocols import LockNotAcquiredError, TransientInfraError

logger = logging.getLogger(__name__)


class CacheTTL(IntEnum):
    """TTL presets in seconds"""
    VERY_SHORT = 60
    SHORT = 300
    MEDIUM = 1800
    LONG = 3600
    VERY_LONG = 86400
    WEEK = 604800


class CachePrefix(str, Enum):
    TENANT = "tenant"
    USER = "user"
    NEWSLETTER = "newsletter"
    CAMPAIGN = "campaign"
    ANALYTICS = "analytics"
    SESSION = "session"
    RATE_LIMIT = "rate_limit"
    TEMP = "temp"


# Deletes the lock only while it still holds the caller's token
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def _encode(value: Any) -> str:
    return json.dumps(value, default=str)


def _decode(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


class CacheManager:
    """
    Namespaced key/value cache over redis.asyncio.

    Keys are built as ``<key_prefix><prefix>:<key>``, e.g.
    ``newsletter:campaign:cmp_123``.
    """

    def __init__(self, redis_client: aioredis.Redis, config: Optional[CacheConfig] = None):
        self.redis = redis_client
        self.config = config or CacheConfig()
        self._refresh_tasks: Set[asyncio.Task] = set()
        self._release_script = self.redis.register_script(RELEASE_LOCK_SCRIPT)

    # ====================
    # Keys
    # ====================

    def _key(self, prefix: str, key: str) -> str:
        prefix_value = prefix.value if isinstance(prefix, Enum) else prefix
        return f"{self.config.key_prefix}{prefix_value}:{key}"

    def _lock_key(self, name: str) -> str:
        return self._key(CachePrefix.TEMP, f"lock:{name}")

    # ====================
    # Basic Operations
    # ====================

    async def get(self, prefix: str, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss or any failure"""
        full_key = self._key(prefix, key)
        try:
            return _decode(await self.redis.get(full_key))
        except (RedisError, OSError) as e:
            logger.warning(f"Cache get failed for {full_key}: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Cache value for {full_key} is not valid JSON: {e}")
            return None

    async def set(self, prefix: str, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        full_key = self._key(prefix, key)
        try:
            await self.redis.set(full_key, _encode(value), ex=int(ttl or self.config.default_ttl))
            return True
        except (RedisError, OSError, TypeError) as e:
            logger.warning(f"Cache set failed for {full_key}: {e}")
            return False

    async def delete(self, prefix: str, key: str) -> bool:
        full_key = self._key(prefix, key)
        try:
            return await self.redis.delete(full_key) > 0
        except (RedisError, OSError) as e:
            logger.warning(f"Cache delete failed for {full_key}: {e}")
            return False

    async def exists(self, prefix: str, key: str) -> bool:
        try:
            return await self.redis.exists(self._key(prefix, key)) > 0
        except (RedisError, OSError) as e:
            logger.warning(f"Cache exists failed: {e}")
            return False

    async def get_ttl(self, prefix: str, key: str) -> int:
        """Remaining TTL in seconds; -2 when missing, -1 when persistent"""
        try:
            return await self.redis.ttl(self._key(prefix, key))
        except (RedisError, OSError) as e:
            logger.warning(f"Cache ttl failed: {e}")
            return -2

    async def increment(
        self, prefix: str, key: str, amount: int = 1, ttl: Optional[int] = None
    ) -> Optional[int]:
        full_key = self._key(prefix, key)
        try:
            value = await self.redis.incrby(full_key, amount)
            if ttl:
                await self.redis.expire(full_key, int(ttl))
            return value
        except (RedisError, OSError) as e:
            logger.warning(f"Cache increment failed for {full_key}: {e}")
            return None

    async def set_multiple(
        self, prefix: str, values: Dict[str, Any], ttl: Optional[int] = None
    ) -> bool:
        if not values:
            return True
        expiry = int(ttl or self.config.default_ttl)
        try:
            pipe = self.redis.pipeline(transaction=False)
            for key, value in values.items():
                pipe.set(self._key(prefix, key), _encode(value), ex=expiry)
            await pipe.execute()
            return True
        except (RedisError, OSError, TypeError) as e:
            logger.warning(f"Cache set_multiple failed: {e}")
            return False

    async def get_multiple(self, prefix: str, keys: List[str]) -> Dict[str, Any]:
        """Return hits only, keyed by the caller's key"""
        if not keys:
            return {}
        try:
            raw_values = await self.redis.mget([self._key(prefix, key) for key in keys])
        except (RedisError, OSError) as e:
            logger.warning(f"Cache get_multiple failed: {e}")
            return {}

        result = {}
        for key, raw in zip(keys, raw_values):
            if raw is None:
                continue
            try:
                result[key] = json.loads(raw)
            except ValueError:
                continue
        return result

    # ====================
    # Refresh-Ahead
    # ====================

    async def get_or_set(
        self,
        prefix: str,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
        refresh_threshold: Optional[float] = None,
    ) -> Any:
        """
        Return the cached value, computing and storing it on a miss.

        When the entry is close to expiry (remaining TTL below
        ``ttl * refresh_threshold``) a background task recomputes it; the
        caller still gets the cached value immediately.

        A None result is returned but never stored, so a fetch that finds
        nothing runs again on every call.
        """
        ttl = int(ttl or self.config.default_ttl)
        threshold = self.config.refresh_threshold if refresh_threshold is None else refresh_threshold

        cached = await self.get(prefix, key)
        if cached is not None:
            remaining = await self.get_ttl(prefix, key)
            if 0 < remaining < ttl * threshold:
                self._schedule_refresh(prefix, key, fetch_fn, ttl)
            return cached

        value = await fetch_fn()
        if value is not None:
            await self.set(prefix, key, value, ttl)
        return value

    def _schedule_refresh(
        self, prefix: str, key: str, fetch_fn: Callable[[], Awaitable[Any]], ttl: int
    ) -> None:
        task = asyncio.create_task(self._refresh(prefix, key, fetch_fn, ttl))
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def _refresh(
        self, prefix: str, key: str, fetch_fn: Callable[[], Awaitable[Any]], ttl: int
    ) -> None:
        try:
            value = await fetch_fn()
            if value is None:
                await self.delete(prefix, key)
                return
            await self.set(prefix, key, value, ttl)
            logger.debug(f"Refreshed cache entry {self._key(prefix, key)}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Background cache refresh failed for {self._key(prefix, key)}: {e}")

    # ====================
    # Bulk Invalidation
    # ====================

    async def _delete_matching(self, match: str) -> int:
        deleted = 0
        batch: List[str] = []
        async for full_key in self.redis.scan_iter(match=match, count=500):
            batch.append(full_key)
            if len(batch) >= 500:
                deleted += await self.redis.delete(*batch)
                batch = []
        if batch:
            deleted += await self.redis.delete(*batch)
        return deleted

    async def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern inside the namespace"""
        try:
            return await self._delete_matching(f"{self.config.key_prefix}{pattern}")
        except (RedisError, OSError) as e:
            logger.warning(f"Cache delete_pattern failed for {pattern}: {e}")
            return 0

    async def clear_prefix(self, prefix: str) -> int:
        prefix_value = prefix.value if isinstance(prefix, Enum) else prefix
        return await self.delete_pattern(f"{prefix_value}:*")

    async def invalidate_tenant(self, tenant_id: str) -> int:
        """Delete every key whose name contains the tenant identifier"""
        try:
            deleted = await self._delete_matching(f"{self.config.key_prefix}*{tenant_id}*")
            logger.info(f"Invalidated {deleted} cache keys for tenant {tenant_id}")
            return deleted
        except (RedisError, OSError) as e:
            logger.warning(f"Cache invalidation failed for tenant {tenant_id}: {e}")
            return 0

    # ====================
    # Distributed Lock
    # ====================

    async def acquire_lock(
        self, name: str, ttl: int = 30, retries: int = 3, delay: float = 0.1
    ) -> Optional[str]:
        """
        Try to take ``temp:lock:{name}`` with SET NX EX.

        Returns the owner token, or None once retries are exhausted.
        """
        lock_key = self._lock_key(name)
        token = uuid4().hex
        attempts = max(1, retries)
        for attempt in range(attempts):
            try:
                acquired = await self.redis.set(lock_key, token, nx=True, ex=int(ttl))
            except (RedisError, OSError) as e:
                raise TransientInfraError(f"Lock backend unavailable for {name}: {e}") from e
            if acquired:
                return token
            if attempt < attempts - 1:
                await asyncio.sleep(delay)
        return None

    async def release_lock(self, name: str, token: str) -> bool:
        try:
            result = await self._release_script(keys=[self._lock_key(name)], args=[token])
            return int(result or 0) == 1
        except (RedisError, OSError) as e:
            logger.warning(f"Failed to release lock {name}: {e}")
            return False

    @asynccontextmanager
    async def lock(
        self, name: str, ttl: int = 30, retries: int = 3, delay: float = 0.1
    ) -> AsyncIterator[str]:
        token = await self.acquire_lock(name, ttl=ttl, retries=retries, delay=delay)
        if token is None:
            raise LockNotAcquiredError(name)
        try:
            yield token
        finally:
            await self.release_lock(name, token)

    # ====================
    # Health & Lifecycle
    # ====================

    async def get_stats(self) -> Dict[str, Any]:
        try:
            connected = bool(await self.redis.ping())
            key_count = 0
            async for _ in self.redis.scan_iter(match=f"{self.config.key_prefix}*", count=500):
                key_count += 1
            memory = await self.redis.info("memory")
            return {
                "connected": connected,
                "key_count": key_count,
                "memory_usage": memory.get("used_memory_human", "unknown"),
            }
        except (RedisError, OSError) as e:
            logger.warning(f"Cache stats unavailable: {e}")
            return {"connected": False, "key_count": 0, "memory_usage": "unknown"}

    async def health_check(self) -> bool:
        test_key = f"health_check_{uuid4().hex[:8]}"
        if not await self.set(CachePrefix.TEMP, test_key, {"ok": True}, CacheTTL.VERY_SHORT):
            return False
        value = await self.get(CachePrefix.TEMP, test_key)
        await self.delete(CachePrefix.TEMP, test_key)
        return value == {"ok": True}

    async def close(self) -> None:
        """Cancel outstanding background refreshes"""
        for task in list(self._refresh_tasks):
            task.cancel()
        if self._refresh_tasks:
            await asyncio.gather(*self._refresh_tasks, return_exceptions=True)
        self._refresh_tasks.clear()


__all__ = ["CacheManager", "CacheTTL", "CachePrefix", "RELEASE_LOCK_SCRIPT"]
