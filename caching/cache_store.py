"""
Key/value store backing the access-list cache and the rate-limit counters.
Redis when configured, an in-process dictionary otherwise.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from models.rate_limit import RateLimitWindow
from utils.exceptions import TransientStoreError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# Atomic check-and-increment of a fixed window counter.
# KEYS[1] counter key; ARGV now, max requests, window seconds.
# Returns {allowed, count, window_reset_at, first_request_at}.
FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local window = tonumber(ARGV[3])

local count = 0
local reset_at = now + window
local first = now

local raw = redis.call('GET', key)
if raw then
    local state = cjson.decode(raw)
    if now <= tonumber(state.window_reset_at) then
        count = tonumber(state.count)
        reset_at = tonumber(state.window_reset_at)
        first = tonumber(state.first_request_at)
    end
end

if count >= limit then
    return {0, count, reset_at, first}
end

count = count + 1
local ttl = math.max(1, reset_at - now)
redis.call('SET', key, cjson.encode({count = count, window_reset_at = reset_at, first_request_at = first}), 'EX', ttl)
return {1, count, reset_at, first}
"""


class CacheStore(ABC):
    """Minimal async cache contract. Values must be JSON-serializable."""

    backend = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        pass

    @abstractmethod
    async def consume_fixed_window(
        self, key: str, max_requests: int, window_seconds: int, now: int
    ) -> Tuple[bool, RateLimitWindow]:
        """
        Atomically take one slot from a fixed window counter.

        A window that is absent or already past its reset time starts over at zero.
        A full window is left untouched and reported as denied.
        """

    @abstractmethod
    async def ping(self) -> bool:
        pass

    async def remember(self, key: str, ttl: int, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value or load, cache and return it. None is never cached."""
        cached = await self.get(key)
        if cached is not None:
            return cached

        value = await loader()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    async def close(self) -> None:
        pass


class MemoryCacheStore(CacheStore):
    """Thread-safe in-process store with per-key expiry."""

    backend = "memory"

    def __init__(self, clock: Optional[Clock] = None, sweep_interval: float = 60.0):
        self._clock = clock or time.time
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = Lock()
        self.sweep_interval = sweep_interval
        self._last_sweep = self._clock()

    def _sweep_expired(self) -> None:
        """Drop every expired entry, at most once per sweep interval. Caller holds the lock."""
        now = self._clock()
        if now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        expired = [key for key, (_, expires_at) in self._data.items()
                   if expires_at is not None and now >= expires_at]
        for key in expired:
            del self._data[key]
        if expired:
            logger.debug(f"Purged {len(expired)} expired cache entries")

    def size(self) -> int:
        """Number of stored entries, including expired ones not yet purged."""
        with self._lock:
            return len(self._data)

    def _live_value(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[Any]:
        with self._lock:
            value = self._live_value(key)
        # Copy through JSON so callers never share mutable state with the store
        return None if value is None else json.loads(value)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        encoded = json.dumps(value, default=str)
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            self._sweep_expired()
            self._data[key] = (encoded, expires_at)

    async def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    async def consume_fixed_window(
        self, key: str, max_requests: int, window_seconds: int, now: int
    ) -> Tuple[bool, RateLimitWindow]:
        with self._lock:
            self._sweep_expired()
            raw = self._live_value(key)
            state = json.loads(raw) if raw is not None else None

            if state is None or now > state["window_reset_at"]:
                window = RateLimitWindow(key, 0, now + window_seconds, now)
            else:
                window = RateLimitWindow(
                    key, state["count"], state["window_reset_at"], state["first_request_at"]
                )

            if window.count >= max_requests:
                return False, window

            window.count += 1
            ttl = max(1, window.window_reset_at - now)
            payload = {
                "count": window.count,
                "window_reset_at": window.window_reset_at,
                "first_request_at": window.first_request_at,
            }
            self._data[key] = (json.dumps(payload), self._clock() + ttl)
            return True, window

    async def ping(self) -> bool:
        return True

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class RedisCacheStore(CacheStore):
    """
    Redis-backed store.

    Every call is bounded by ``timeout`` seconds. Timeouts and connection failures are
    raised as TransientStoreError so callers can decide to fail open.
    """

    backend = "redis"

    def __init__(self, client: redis.Redis, key_prefix: str = "", timeout: float = 0.2):
        self.client = client
        self.key_prefix = key_prefix
        self.timeout = timeout
        self._window_script = client.register_script(FIXED_WINDOW_SCRIPT)

    @classmethod
    def from_url(cls, redis_url: str, key_prefix: str = "", timeout: float = 0.2,
                 max_connections: int = 20) -> "RedisCacheStore":
        pool = redis.ConnectionPool.from_url(
            redis_url,
            max_connections=max_connections,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=1,
            health_check_interval=30,
        )
        return cls(redis.Redis(connection_pool=pool), key_prefix=key_prefix, timeout=timeout)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def _timeout_wrapper(self, operation_name: str, awaitable: Awaitable[Any]) -> Any:
        """Bound a Redis call by the configured timeout."""
        start_time = time.perf_counter()
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            elapsed = time.perf_counter() - start_time
            logger.warning(f"Redis {operation_name} timed out after {elapsed:.3f}s")
            raise TransientStoreError(f"Redis {operation_name} timed out", operation=operation_name) from e
        except (RedisError, OSError) as e:
            logger.error(f"Redis {operation_name} failed: {e}")
            raise TransientStoreError(f"Redis {operation_name} failed: {e}", operation=operation_name) from e

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._timeout_wrapper("get", self.client.get(self._key(key)))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        encoded = json.dumps(value, default=str)
        await self._timeout_wrapper("set", self.client.set(self._key(key), encoded, ex=ttl))

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        await self._timeout_wrapper("delete", self.client.delete(*(self._key(k) for k in keys)))

    async def consume_fixed_window(
        self, key: str, max_requests: int, window_seconds: int, now: int
    ) -> Tuple[bool, RateLimitWindow]:
        allowed, count, reset_at, first = await self._timeout_wrapper(
            "consume_fixed_window",
            self._window_script(keys=[self._key(key)], args=[int(now), max_requests, window_seconds]),
        )
        return bool(allowed), RateLimitWindow(key, int(count), int(reset_at), int(first))

    async def ping(self) -> bool:
        try:
            return bool(await self._timeout_wrapper("ping", self.client.ping()))
        except TransientStoreError:
            return False

    async def close(self) -> None:
        await self.client.aclose()


def create_cache_store(settings) -> CacheStore:
    """Redis when REDIS_URL is configured, otherwise the in-process store."""
    if settings.redis_url:
        logger.info("Cache store: Redis backend enabled")
        return RedisCacheStore.from_url(
            settings.redis_url,
            key_prefix=settings.cache_key_prefix,
            timeout=settings.redis_timeout_seconds,
            max_connections=settings.redis_max_connections,
        )
    logger.info("Cache store: no Redis URL configured, using in-memory backend")
    return MemoryCacheStore()
