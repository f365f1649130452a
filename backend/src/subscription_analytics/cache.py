"""Metric cache backends.

Holds memoised metric values keyed by (metric, user, date range) with a TTL.
Both backends expose the same capability (get / set / delete / increment /
invalidate_pattern) so the metrics service and the rate limiter can be given
either one.
"""
import fnmatch
import json
import time
from datetime import datetime
from typing import Any, Callable, Optional, Protocol
import structlog

import redis.asyncio as redis

from subscription_analytics.config import settings
from subscription_analytics.schemas.metrics import DateRange

logger = structlog.get_logger(__name__)

ALL_TIME = "all"
GLOB_SPECIAL = frozenset("*?[]\\")

KeyFilter = Callable[[str], bool]


class MetricsCacheBackend(Protocol):
    """Capability the metrics service needs from a cache."""

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def increment(self, key: str, ttl: int, amount: int = 1) -> Optional[int]: ...

    async def invalidate_pattern(self, pattern: str, key_filter: Optional[KeyFilter] = None) -> int: ...


class RedisCache:
    """Redis-based caching layer.

    Reads and writes fail open: a Redis outage turns every lookup into a miss
    so metrics are recomputed instead of the dashboard going down.
    """

    def __init__(self, url: Optional[str] = None):
        """Initialize Redis connection settings."""
        self.url = url or str(settings.redis_url)
        self.redis_client: Optional[redis.Redis] = None
        self._initialized = False

    async def _ensure_connection(self) -> redis.Redis:
        """
        Ensure Redis connection is established.

        Returns:
            Redis client instance
        """
        if not self._initialized or self.redis_client is None:
            try:
                self.redis_client = redis.from_url(
                    self.url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                )
                await self.redis_client.ping()
                self._initialized = True
                logger.info("redis_connected", url=self.url)
            except Exception as e:
                logger.error("redis_connection_failed", error=str(e))
                raise

        return self.redis_client

    async def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        Args:
            key: Cache key

        Returns:
            Cached value or None if not found, expired or Redis is unavailable
        """
        try:
            client = await self._ensure_connection()
            value = await client.get(key)

            if value is None:
                logger.debug("cache_miss", key=key)
                return None

            logger.debug("cache_hit", key=key)

            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value

        except Exception as e:
            logger.warning("cache_get_failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: Value to cache (JSON serialized if dict/list)
            ttl: Time-to-live in seconds (default: metrics cache TTL)

        Returns:
            True if successful, False otherwise
        """
        if ttl is None:
            ttl = settings.metrics_cache_ttl_seconds

        try:
            client = await self._ensure_connection()

            if isinstance(value, (dict, list)):
                value = json.dumps(value)

            await client.setex(key, ttl, value)

            logger.debug("cache_set", key=key, ttl=ttl)
            return True

        except Exception as e:
            logger.warning("cache_set_failed", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        """
        Delete key from cache.

        Args:
            key: Cache key

        Returns:
            True if deleted, False otherwise
        """
        try:
            client = await self._ensure_connection()
            result = await client.delete(key)

            logger.debug("cache_delete", key=key, deleted=bool(result))
            return bool(result)

        except Exception as e:
            logger.warning("cache_delete_failed", key=key, error=str(e))
            return False

    async def increment(self, key: str, ttl: int, amount: int = 1) -> Optional[int]:
        """
        Increment a counter, starting its TTL on the first increment.

        Args:
            key: Cache key
            ttl: Time-to-live in seconds for a new counter
            amount: Amount to increment by

        Returns:
            New value or None if failed
        """
        try:
            client = await self._ensure_connection()
            result = await client.incrby(key, amount)
            if result == amount:
                await client.expire(key, ttl)
            return result

        except Exception as e:
            logger.warning("cache_increment_failed", key=key, error=str(e))
            return None

    async def invalidate_pattern(self, pattern: str, key_filter: Optional[KeyFilter] = None) -> int:
        """
        Delete all keys matching a pattern in a single DEL.

        Unlike reads, failures propagate so the caller can report them.

        Args:
            pattern: Redis MATCH pattern (e.g., "*:user-1:*")
            key_filter: Optional exact check applied to every matched key

        Returns:
            Number of keys deleted
        """
        try:
            client = await self._ensure_connection()

            keys = [key async for key in client.scan_iter(match=pattern, count=500)]
            if key_filter is not None:
                keys = [key for key in keys if key_filter(key)]
            deleted = await client.delete(*keys) if keys else 0

            logger.info("cache_pattern_invalidated", pattern=pattern, count=deleted)
            return deleted

        except Exception as e:
            logger.warning("cache_pattern_invalidation_failed", pattern=pattern, error=str(e))
            raise

    async def close(self):
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
            self._initialized = False
            logger.info("redis_closed")


class InMemoryCache:
    """Process-local cache with the same interface as RedisCache.

    Used by the test-suite and by single-process deployments without Redis.
    Expired entries are swept on every write.
    """

    def __init__(self, default_ttl: Optional[int] = None, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl or settings.metrics_cache_ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}

    def _live(self, key: str) -> Optional[tuple[Any, float]]:
        entry = self._entries.get(key)
        if entry is not None and entry[1] <= self._clock():
            del self._entries[key]
            logger.debug("cache_expired", key=key)
            return None
        return entry

    def _sweep(self) -> None:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]

    async def get(self, key: str) -> Optional[Any]:
        entry = self._live(key)
        if entry is None:
            logger.debug("cache_miss", key=key)
            return None

        logger.debug("cache_hit", key=key)
        return entry[0]

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        self._sweep()
        self._entries[key] = (value, self._clock() + (ttl or self.default_ttl))
        return True

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def increment(self, key: str, ttl: int, amount: int = 1) -> Optional[int]:
        entry = self._live(key)
        if entry is None:
            self._sweep()
            self._entries[key] = (amount, self._clock() + ttl)
            return amount

        value, expires_at = entry
        self._entries[key] = (int(value) + amount, expires_at)
        return int(value) + amount

    async def invalidate_pattern(self, pattern: str, key_filter: Optional[KeyFilter] = None) -> int:
        """Delete keys matching a Redis-style pattern, backslash escapes included."""
        glob = _redis_pattern_to_fnmatch(pattern)
        keys = [
            key
            for key in self._entries
            if fnmatch.fnmatchcase(key, glob) and (key_filter is None or key_filter(key))
        ]
        for key in keys:
            del self._entries[key]
        logger.info("cache_pattern_invalidated", pattern=pattern, count=len(keys))
        return len(keys)

    def __len__(self) -> int:
        return len(self._entries)


def _redis_pattern_to_fnmatch(pattern: str) -> str:
    # fnmatch has no escape character; a one-character class matches the literal
    parts = []
    chars = iter(pattern)
    for char in chars:
        if char == "\\":
            literal = next(chars, "\\")
            parts.append(f"[{literal}]")
        else:
            parts.append(char)
    return "".join(parts)


# Global cache instance
cache = RedisCache()


def _key_timestamp(moment: datetime) -> str:
    # ISO 8601 basic format keeps colons out of the key
    stamp = moment.strftime("%Y%m%dT%H%M%S")
    if moment.microsecond:
        stamp += f".{moment.microsecond:06d}"
    return stamp


def date_range_descriptor(date_range: Optional[DateRange]) -> str:
    """
    Render a date range as the ``{start}:{end}`` part of a cache key.

    Bounds use the ISO 8601 basic format (``20240101T103000``) so the
    descriptor contains exactly one colon.

    Args:
        date_range: Range to render, or None for all time

    Returns:
        ISO start and end joined by ``:``, or ``all:all``
    """
    if date_range is None:
        return f"{ALL_TIME}:{ALL_TIME}"
    return f"{_key_timestamp(date_range.start)}:{_key_timestamp(date_range.end)}"


def metric_cache_key(metric: str, user_id: str, date_range: Optional[DateRange] = None) -> str:
    """
    Generate the cache key for one metric value.

    Args:
        metric: Metric name (mrr, churn, ltv, ...)
        user_id: Owning dashboard user
        date_range: Optional range the value was computed for

    Returns:
        Cache key string
    """
    return f"{metric}:{user_id}:{date_range_descriptor(date_range)}"


def escape_pattern(value: str) -> str:
    """Backslash-escape the Redis glob characters ``* ? [ ] \\`` in a literal."""
    return "".join(f"\\{char}" if char in GLOB_SPECIAL else char for char in value)


def user_cache_pattern(user_id: str) -> str:
    """Pattern matching every cached metric of a user."""
    return f"*:{escape_pattern(user_id)}:*"


def cache_key_user(key: str) -> Optional[str]:
    """
    User segment of a metric cache key.

    Metric names and range descriptors are colon-free apart from the single
    ``start:end`` separator, so the user id is everything between the first
    colon and the second to last one, even when it contains colons itself.
    """
    metric, _, rest = key.partition(":")
    parts = rest.rsplit(":", 2)
    if not metric or len(parts) != 3:
        return None
    return parts[0]


def owned_by(user_id: str) -> KeyFilter:
    """Key filter accepting only the metric keys of ``user_id``."""
    return lambda key: cache_key_user(key) == user_id
