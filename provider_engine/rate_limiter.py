"""
Distributed per-provider rate limiter.

Implements a "next available slot" schedule in Redis so that every worker
process spaces its calls to a provider by at least the provider's minimum
interval. The reservation is a single Lua script, so two callers can never
receive the same slot.

Falls back to a process-local schedule when Redis is not configured or is
unreachable (fallback_mode="local"), or skips spacing entirely
(fallback_mode="degraded").
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from .interfaces import RateLimiter

logger = logging.getLogger(__name__)

# Returns the reserved slot start (ms since epoch)
RESERVE_SLOT_SCRIPT = """
local key = KEYS[1]
local interval = tonumber(ARGV[1])
local now = tonumber(ARGV[2])

local scheduled = tonumber(redis.call('get', key) or 0)
if scheduled < now then
    scheduled = now
end

redis.call('set', key, scheduled + interval, 'PX', 60000)
return scheduled
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


class DistributedRateLimiter(RateLimiter):
    """
    Redis-backed slot reservation shared across worker processes.

    Args:
        redis_url: Redis connection URL, or None for process-local scheduling
        fallback_mode: Behavior when Redis is unavailable ("local", "degraded")
        key_prefix: Optional namespace for keys
    """

    def __init__(self, redis_url: Optional[str] = None, fallback_mode: str = "local", key_prefix: str = ""):
        if fallback_mode not in ("local", "degraded"):
            raise ValueError(f"Unsupported fallback_mode: {fallback_mode}")
        self.redis_url = redis_url
        self.fallback_mode = fallback_mode
        self.key_prefix = key_prefix
        self.redis: Optional[redis.Redis] = None
        self._script = None
        self._connected = False

        self._local_schedule: Dict[str, int] = {}
        self._local_lock = asyncio.Lock()

    def key_for(self, provider_id: str) -> str:
        return f"{self.key_prefix}ratelimit:provider:{provider_id}"

    async def _ensure_connection(self) -> bool:
        """Ensure Redis connection is established."""
        if not self.redis_url:
            return False
        if not self._connected:
            try:
                self.redis = redis.from_url(self.redis_url, decode_responses=True)
                await self.redis.ping()
                self._script = self.redis.register_script(RESERVE_SLOT_SCRIPT)
                self._connected = True
                logger.info("Redis rate limiter connected successfully")
            except (RedisError, OSError) as e:
                logger.warning(f"Redis rate limiter connection failed: {e}")
                self._connected = False
                return False
        return True

    async def _reserve_local(self, key: str, min_interval_ms: int, now: int) -> int:
        """Process-local schedule; only spaces calls made from this process."""
        async with self._local_lock:
            scheduled = max(self._local_schedule.get(key, 0), now)
            self._local_schedule[key] = scheduled + min_interval_ms
            return scheduled

    async def reserve_slot(self, provider_id: str, min_interval_ms: int) -> int:
        """
        Reserve the next request slot for a provider.

        Returns:
            Milliseconds to wait before the reserved slot begins (0 = go now)
        """
        if min_interval_ms <= 0:
            return 0

        key = self.key_for(provider_id)
        now = _now_ms()

        if await self._ensure_connection():
            try:
                scheduled = int(await self._script(keys=[key], args=[min_interval_ms, now]))
                return max(0, scheduled - now)
            except (RedisError, OSError) as e:
                logger.warning(f"Redis slot reservation failed for {provider_id}, using {self.fallback_mode} fallback: {e}")
                self._connected = False

        if self.fallback_mode == "degraded":
            return 0
        scheduled = await self._reserve_local(key, min_interval_ms, now)
        return max(0, scheduled - now)

    @asynccontextmanager
    async def slot(self, provider_id: str, min_interval_ms: int):
        """Reserve a slot, wait for it to begin, then run the body"""
        wait_ms = await self.reserve_slot(provider_id, min_interval_ms)
        if wait_ms > 0:
            logger.debug(f"Rate limit: waiting {wait_ms}ms for {provider_id}")
            await asyncio.sleep(wait_ms / 1000)
        yield wait_ms

    async def reset(self, provider_id: str) -> None:
        key = self.key_for(provider_id)
        async with self._local_lock:
            self._local_schedule.pop(key, None)
        if await self._ensure_connection():
            try:
                await self.redis.delete(key)
            except (RedisError, OSError) as e:
                logger.error(f"Error resetting rate limit for {provider_id}: {e}")

    async def close(self):
        """Close Redis connection."""
        if self.redis:
            try:
                await self.redis.aclose()
                logger.info("Redis rate limiter connection closed")
            except (RedisError, OSError) as e:
                logger.warning(f"Error closing Redis connection: {e}")
            finally:
                self._connected = False
                self.redis = None
