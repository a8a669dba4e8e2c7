"""Cache service with Redis (production) or in-memory (development) backend.

Redis is used when REDIS_ENABLED=true and the server answers a ping; otherwise
an in-process backend with the same surface is used, which is sufficient for
single-process deployments and tests.

Unlike a best-effort cache, this service is the engine's durability layer:
backend failures are raised as ``PersistenceError`` so callers can decide
whether a failed write is fatal.
"""

import json
import time
from typing import Any, Dict, List, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from flowengine.core.config import Settings
from flowengine.core.errors import PersistenceError
from flowengine.core.logging import get_logger, log_cache_operation

logger = get_logger(__name__)


def _dumps(key: str, value: Any) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError) as e:
        raise PersistenceError(f"Value for '{key}' is not JSON-serializable: {e}") from e


def _loads(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw


class MemoryBackend:
    """In-process key space with TTLs, lists and sets."""

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.lists: Dict[str, List[str]] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.expiry: Dict[str, float] = {}

    def _purge(self, key: str) -> None:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.values.pop(key, None)
            self.lists.pop(key, None)
            self.sets.pop(key, None)
            self.expiry.pop(key, None)

    def get(self, key: str) -> Optional[str]:
        self._purge(key)
        return self.values.get(key)

    def set(self, key: str, value: str, ttl: Optional[float] = None, nx: bool = False) -> bool:
        self._purge(key)
        if nx and key in self.values:
            return False
        self.values[key] = value
        if ttl:
            self.expiry[key] = time.monotonic() + ttl
        else:
            self.expiry.pop(key, None)
        return True

    def expire(self, key: str, ttl: float) -> bool:
        self._purge(key)
        if key in self.values or key in self.lists or key in self.sets:
            self.expiry[key] = time.monotonic() + ttl
            return True
        return False

    def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            self._purge(key)
            found = False
            for space in (self.values, self.lists, self.sets):
                if key in space:
                    del space[key]
                    found = True
            self.expiry.pop(key, None)
            deleted += int(found)
        return deleted

    def incr(self, key: str) -> int:
        self._purge(key)
        value = int(self.values.get(key, "0")) + 1
        self.values[key] = str(value)
        return value

    def rpush(self, key: str, value: str) -> int:
        self._purge(key)
        items = self.lists.setdefault(key, [])
        items.append(value)
        return len(items)

    def lrange(self, key: str, start: int, end: int) -> List[str]:
        self._purge(key)
        items = self.lists.get(key, [])
        stop = None if end == -1 else end + 1
        return list(items[start:stop])

    def lrem(self, key: str, value: str) -> int:
        items = self.lists.get(key, [])
        before = len(items)
        self.lists[key] = [i for i in items if i != value]
        return before - len(self.lists[key])

    def sadd(self, key: str, member: str) -> int:
        self._purge(key)
        members = self.sets.setdefault(key, set())
        added = member not in members
        members.add(member)
        return int(added)

    def srem(self, key: str, member: str) -> int:
        members = self.sets.get(key, set())
        removed = member in members
        members.discard(member)
        return int(removed)

    def smembers(self, key: str) -> Set[str]:
        self._purge(key)
        return set(self.sets.get(key, set()))


class CacheService:
    """Async key-value service with Redis or in-memory backend.

    Backend selection:
    - Redis: When REDIS_ENABLED=true and Redis is reachable (production)
    - Memory: Otherwise (development, tests, single process)
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.redis: Optional[redis.Redis] = None
        self.memory = MemoryBackend()
        self.use_redis = settings.redis_enabled and bool(settings.redis_url)

    async def startup(self):
        """Initialize cache connection."""
        if self.use_redis:
            try:
                self.redis = redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=5,
                    socket_connect_timeout=5,
                    retry_on_timeout=True
                )
                await self.redis.ping()
                logger.info("Redis persistence initialized", url=self.settings.redis_url)
            except (RedisError, OSError) as e:
                logger.warning("Redis connection failed, falling back to memory", error=str(e))
                self.use_redis = False
                self.redis = None
        else:
            logger.info("Using in-memory persistence",
                        redis_enabled=self.settings.redis_enabled)

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.aclose()
            logger.info("Redis connections closed")

    def is_redis_available(self) -> bool:
        """Check if Redis is available and connected."""
        return self.use_redis and self.redis is not None

    async def _call(self, operation: str, key: str, redis_fn, memory_fn):
        try:
            if self.is_redis_available():
                return await redis_fn()
            return memory_fn()
        except (RedisError, OSError) as e:
            logger.error("Persistence operation failed", operation=operation, key=key, error=str(e))
            raise PersistenceError(f"{operation} failed for '{key}': {e}") from e

    # =========================================================================
    # KEY / VALUE
    # =========================================================================

    async def get(self, key: str) -> Optional[Any]:
        """Get a JSON value."""
        raw = await self._call("get", key,
                               lambda: self.redis.get(key),
                               lambda: self.memory.get(key))
        log_cache_operation(logger, "get", key, hit=raw is not None)
        return _loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set a JSON value with optional TTL."""
        serialized = _dumps(key, value)
        await self._call("set", key,
                         lambda: self.redis.set(key, serialized, ex=ttl),
                         lambda: self.memory.set(key, serialized, ttl))
        log_cache_operation(logger, "set", key, ttl=ttl)
        return True

    async def set_nx(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set only if absent (lock/lease acquisition)."""
        serialized = _dumps(key, value)
        acquired = await self._call("set_nx", key,
                                    lambda: self.redis.set(key, serialized, ex=ttl, nx=True),
                                    lambda: self.memory.set(key, serialized, ttl, nx=True))
        return bool(acquired)

    async def expire(self, key: str, ttl: int) -> bool:
        """Set TTL for existing key."""
        return bool(await self._call("expire", key,
                                     lambda: self.redis.expire(key, ttl),
                                     lambda: self.memory.expire(key, ttl)))

    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""
        deleted = await self._call("delete", ",".join(keys),
                                   lambda: self.redis.delete(*keys),
                                   lambda: self.memory.delete(*keys))
        log_cache_operation(logger, "delete", ",".join(keys), deleted=deleted)
        return int(deleted)

    async def incr(self, key: str) -> int:
        """Atomically increment an integer counter."""
        return int(await self._call("incr", key,
                                    lambda: self.redis.incr(key),
                                    lambda: self.memory.incr(key)))

    # =========================================================================
    # LISTS (append-only logs)
    # =========================================================================

    async def list_append(self, key: str, value: Any) -> int:
        serialized = _dumps(key, value)
        return int(await self._call("rpush", key,
                                    lambda: self.redis.rpush(key, serialized),
                                    lambda: self.memory.rpush(key, serialized)))

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> List[Any]:
        raw = await self._call("lrange", key,
                               lambda: self.redis.lrange(key, start, end),
                               lambda: self.memory.lrange(key, start, end))
        return [_loads(item) for item in raw]

    async def list_remove(self, key: str, value: Any) -> int:
        serialized = _dumps(key, value)
        return int(await self._call("lrem", key,
                                    lambda: self.redis.lrem(key, 0, serialized),
                                    lambda: self.memory.lrem(key, serialized)))

    # =========================================================================
    # SETS (indices)
    # =========================================================================

    async def set_add(self, key: str, member: str) -> int:
        return int(await self._call("sadd", key,
                                    lambda: self.redis.sadd(key, member),
                                    lambda: self.memory.sadd(key, member)))

    async def set_remove(self, key: str, member: str) -> int:
        return int(await self._call("srem", key,
                                    lambda: self.redis.srem(key, member),
                                    lambda: self.memory.srem(key, member)))

    async def set_members(self, key: str) -> Set[str]:
        members = await self._call("smembers", key,
                                   lambda: self.redis.smembers(key),
                                   lambda: self.memory.smembers(key))
        return set(members)
