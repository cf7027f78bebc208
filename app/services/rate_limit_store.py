# app/services/rate_limit_store.py
"""
Rate limit 計數器的儲存層（fixed window）。

- InMemoryRateLimitStore：單一 process 用，要靠 sweep() 定期清掉過期的 window
- RedisRateLimitStore：多個 instance 共用計數，過期交給 Redis TTL
"""
import logging
import math
from dataclasses import dataclass
from typing import Dict, Optional

import redis.asyncio as redis

from app.config import settings

logger = logging.getLogger(__name__)


@dataclass
class WindowCounter:
    count: int
    reset_at: float     # Unix timestamp（秒）


class InMemoryRateLimitStore:

    def __init__(self):
        # hit / sweep 裡沒有 await，在同一個 event loop 裡就是 atomic
        self._windows: Dict[str, WindowCounter] = {}

    async def hit(self, key: str, now: float, window_seconds: float) -> WindowCounter:
        counter = self._windows.get(key)
        # 第一次 / 上一個 window 已經結束 → 開新的 window
        if counter is None or now > counter.reset_at:
            counter = WindowCounter(count=1, reset_at=now + window_seconds)
            self._windows[key] = counter
        else:
            counter.count += 1
        return WindowCounter(counter.count, counter.reset_at)

    async def sweep(self, now: float) -> int:
        expired = [k for k, c in self._windows.items() if now > c.reset_at]
        for k in expired:
            del self._windows[k]
        return len(expired)

    async def close(self) -> None:
        self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)


class RedisRateLimitStore:

    def __init__(self, client: Optional[redis.Redis] = None, prefix: str = "ratelimit"):
        self.prefix = prefix
        self.redis = client or self.get_redis_client()

    # --------------------------
    # Redis Client
    # --------------------------
    @staticmethod
    def get_redis_client() -> redis.Redis:
        return redis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            password=settings.REDIS_PASSWORD,
            decode_responses=True
        )

    async def hit(self, key: str, now: float, window_seconds: float) -> WindowCounter:
        redis_key = f"{self.prefix}:{key}"
        window_ms = int(window_seconds * 1000)

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.incr(redis_key)
            pipe.pttl(redis_key)
            count, ttl_ms = await pipe.execute()

        # 新的 key（或沒設到 TTL）→ window 從現在開始
        if ttl_ms is None or ttl_ms < 0:
            await self.redis.pexpire(redis_key, window_ms)
            ttl_ms = window_ms

        return WindowCounter(count=int(count), reset_at=now + ttl_ms / 1000)

    async def sweep(self, now: float) -> int:
        # Redis 自己會依 TTL 清掉
        return 0

    async def close(self) -> None:
        await self.redis.aclose()


def create_rate_limit_store(backend: str = None):
    backend = backend or settings.RATE_LIMIT_BACKEND
    if backend == "redis":
        logger.info(f"Rate limit store: redis at {settings.REDIS_HOST}:{settings.REDIS_PORT}")
        return RedisRateLimitStore()
    if backend != "memory":
        logger.warning(f"Unknown RATE_LIMIT_BACKEND '{backend}', falling back to memory")
    return InMemoryRateLimitStore()


def seconds_until(reset_at: float, now: float) -> int:
    return max(0, math.ceil(reset_at - now))
