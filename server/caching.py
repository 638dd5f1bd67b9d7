"""Suggestion cache for contextdocs.

Short-lived results keyed by subject and context fingerprint, the live
context snapshot of each subject, and feedback records. Redis is used
when configured; otherwise (or when Redis errors) values live in a
bounded in-process LRU.
"""

import json
import hashlib
import time
import logging
from collections import OrderedDict
from typing import Dict, Optional, Any, Tuple

import redis.asyncio as aioredis

from observability.prometheus_metrics import cache_requests, error_count
from services.shared.models import ContextEvent

logger = logging.getLogger(__name__)

FINGERPRINT_LENGTH = 32


def fingerprint(event: ContextEvent) -> str:
    """Stable digest of an event's content.

    The occurrence time is left out so a repeated observation of the same
    context maps to the same cache entry.
    """
    canonical = json.dumps(event.payload(include_time=False), sort_keys=True,
                           separators=(',', ':'), default=str)
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()[:FINGERPRINT_LENGTH]


class CacheKey:
    """Key layout shared by every cache backend."""

    @staticmethod
    def suggestions(subject_id: str, fp: str) -> str:
        return f"suggestions:{subject_id}:{fp}"

    @staticmethod
    def live_context(subject_id: str) -> str:
        return f"user_context:{subject_id}"

    @staticmethod
    def feedback(suggestion_id: str) -> str:
        return f"feedback:{suggestion_id}"


class MemoryCache:
    """In-memory LRU cache with per-entry expiry."""

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self.cache: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()

    def get(self, key: str) -> Optional[Any]:
        entry = self.cache.get(key)
        if entry is None:
            return None
        value, expiry_time = entry
        if expiry_time < time.time():
            del self.cache[key]
            return None
        self.cache.move_to_end(key)
        return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expiry_time = time.time() + ttl if ttl else float('inf')
        if key in self.cache:
            self.cache.move_to_end(key)
        elif len(self.cache) >= self.max_size:
            self.cache.popitem(last=False)
        self.cache[key] = (value, expiry_time)

    def delete(self, key: str) -> bool:
        return self.cache.pop(key, None) is not None

    def clear(self) -> None:
        self.cache.clear()

    def cleanup_expired(self) -> int:
        """Remove expired entries and return count."""
        now = time.time()
        expired_keys = [key for key, (_, expiry_time) in self.cache.items() if expiry_time < now]
        for key in expired_keys:
            del self.cache[key]
        return len(expired_keys)

    def size(self) -> int:
        return len(self.cache)

    def stats(self) -> Dict[str, Any]:
        return {
            'size': len(self.cache),
            'max_size': self.max_size,
            'utilization': len(self.cache) / self.max_size if self.max_size > 0 else 0
        }


class CacheManager:
    """JSON key/value cache over Redis with an in-memory fallback."""

    def __init__(self, redis_url: str = "", max_memory_cache_size: int = 1000,
                 redis_client: Optional[aioredis.Redis] = None):
        self.redis_url = redis_url
        self.memory_cache = MemoryCache(max_memory_cache_size)
        self.redis_client = redis_client
        if self.redis_client is None and redis_url:
            self.redis_client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )

    async def initialize(self) -> None:
        """Check Redis connectivity; drop to memory-only if it is unreachable."""
        if self.redis_client is None:
            logger.info("Redis not configured, suggestion cache is in-memory")
            return
        try:
            await self.redis_client.ping()
            logger.info("Redis cache initialized successfully")
        except Exception as e:
            logger.warning(f"Failed to initialize Redis: {e}. Using memory cache.")
            error_count.labels(error_type="redis_connect", component="cache").inc()
            self.redis_client = None

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()

    @property
    def backend(self) -> str:
        return "redis" if self.redis_client is not None else "memory"

    async def get(self, key: str) -> Optional[Any]:
        if self.redis_client is not None:
            try:
                data = await self.redis_client.get(key)
                if data is not None:
                    return json.loads(data)
            except Exception as e:
                logger.warning(f"Redis get error for key {key}: {e}")
                error_count.labels(error_type="redis_get", component="cache").inc()
        return self.memory_cache.get(key)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self.memory_cache.set(key, value, ttl)
        if self.redis_client is not None:
            try:
                await self.redis_client.setex(key, ttl, json.dumps(value, default=str))
            except Exception as e:
                logger.warning(f"Redis set error for key {key}: {e}")
                error_count.labels(error_type="redis_set", component="cache").inc()

    async def delete(self, key: str) -> bool:
        deleted = self.memory_cache.delete(key)
        if self.redis_client is not None:
            try:
                deleted = bool(await self.redis_client.delete(key)) or deleted
            except Exception as e:
                logger.warning(f"Redis delete error for key {key}: {e}")
        return deleted

    def cleanup_expired(self) -> int:
        """Sweep the in-memory tier; Redis expires keys itself."""
        removed = self.memory_cache.cleanup_expired()
        if removed:
            logger.debug(f"Removed {removed} expired cache entries")
        return removed

    def stats(self) -> Dict[str, Any]:
        return {'backend': self.backend, 'memory': self.memory_cache.stats()}


class SuggestionCache:
    """Domain operations on top of :class:`CacheManager`."""

    def __init__(self, manager: CacheManager, suggestion_ttl: int = 300,
                 live_context_ttl: int = 300, feedback_ttl: int = 86400):
        self.manager = manager
        self.suggestion_ttl = suggestion_ttl
        self.live_context_ttl = live_context_ttl
        self.feedback_ttl = feedback_ttl

    async def get(self, subject_id: str, fp: str) -> Optional[Dict[str, Any]]:
        payload = await self.manager.get(CacheKey.suggestions(subject_id, fp))
        cache_requests.labels(result="hit" if payload is not None else "miss").inc()
        return payload

    async def put(self, subject_id: str, fp: str, payload: Dict[str, Any],
                  ttl: Optional[int] = None) -> None:
        await self.manager.set(CacheKey.suggestions(subject_id, fp), payload, ttl or self.suggestion_ttl)

    async def set_live_context(self, subject_id: str, context: Dict[str, Any]) -> None:
        await self.manager.set(CacheKey.live_context(subject_id), context, self.live_context_ttl)

    async def get_live_context(self, subject_id: str) -> Optional[Dict[str, Any]]:
        return await self.manager.get(CacheKey.live_context(subject_id))

    async def store_feedback(self, suggestion_id: str, record: Dict[str, Any]) -> None:
        await self.manager.set(CacheKey.feedback(suggestion_id), record, self.feedback_ttl)

    async def get_feedback(self, suggestion_id: str) -> Optional[Dict[str, Any]]:
        return await self.manager.get(CacheKey.feedback(suggestion_id))
