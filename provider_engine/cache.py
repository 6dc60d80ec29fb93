"""
Cache-aside layer for provider list endpoints.

Values are stored as JSON in Redis under the caller's key with a TTL. Without
Redis (or when it errors) an in-process LRU with per-entry expiry is used.
Concurrent misses for the same key in one process share a single load.
"""
import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from cachetools import LRUCache
from redis.exceptions import RedisError

from .interfaces import Cache

logger = logging.getLogger(__name__)


class CacheAside(Cache):
    """Read-through cache: return the cached value or load, store and return it"""

    def __init__(self, redis_url: Optional[str] = None, local_maxsize: int = 1024, key_prefix: str = ""):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.redis: Optional[redis.Redis] = None
        self._connected = False
        self._local: LRUCache = LRUCache(maxsize=local_maxsize)
        self._inflight: Dict[str, asyncio.Future] = {}

    async def _ensure_connection(self) -> bool:
        if not self.redis_url:
            return False
        if not self._connected:
            try:
                self.redis = redis.from_url(self.redis_url, decode_responses=True)
                await self.redis.ping()
                self._connected = True
                logger.info("Redis cache connected successfully")
            except (RedisError, OSError) as e:
                logger.warning(f"Redis cache connection failed, using in-process cache: {e}")
                return False
        return True

    async def _read(self, key: str) -> Tuple[bool, Any]:
        if await self._ensure_connection():
            try:
                raw = await self.redis.get(key)
                if raw is not None:
                    return True, json.loads(raw)
                return False, None
            except (RedisError, OSError) as e:
                logger.warning(f"Redis cache read failed for {key}: {e}")
                self._connected = False

        entry = self._local.get(key)
        if entry is None:
            return False, None
        expires_at, value = entry
        if time.monotonic() >= expires_at:
            self._local.pop(key, None)
            return False, None
        return True, value

    async def _write(self, key: str, value: Any, ttl_seconds: int) -> None:
        if await self._ensure_connection():
            try:
                await self.redis.set(key, json.dumps(value, default=str), ex=ttl_seconds)
                return
            except (RedisError, OSError) as e:
                logger.warning(f"Redis cache write failed for {key}: {e}")
                self._connected = False
        self._local[key] = (time.monotonic() + ttl_seconds, value)

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]], ttl_seconds: int) -> Any:
        full_key = f"{self.key_prefix}{key}"
        hit, value = await self._read(full_key)
        if hit:
            logger.debug(f"Cache hit: {full_key}")
            return value

        pending = self._inflight.get(full_key)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._inflight[full_key] = future
        try:
            value = await loader()
            await self._write(full_key, value, ttl_seconds)
            future.set_result(value)
            return value
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unobserved failure is not reported at GC
            future.exception()
            raise
        finally:
            self._inflight.pop(full_key, None)

    async def bust(self, key: str) -> None:
        """Administrative invalidation of one key"""
        full_key = f"{self.key_prefix}{key}"
        self._local.pop(full_key, None)
        if await self._ensure_connection():
            try:
                await self.redis.delete(full_key)
            except (RedisError, OSError) as e:
                logger.error(f"Cache bust failed for {full_key}: {e}")

    async def close(self):
        if self.redis:
            try:
                await self.redis.aclose()
            except (RedisError, OSError) as e:
                logger.warning(f"Error closing Redis cache connection: {e}")
            finally:
                self._connected = False
                self.redis = None
