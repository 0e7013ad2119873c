from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from redis.asyncio import Redis

from channelplane.core.config import get_settings
from channelplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_coordination_redis() -> Redis | None:
    # Reuse one Redis client per event loop; local coordination mode never touches Redis.
    settings = get_settings()
    if settings.coordination_mode == "local":
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("coordination_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


def reset_coordination_redis() -> None:
    # Drop the cached client so tests can swap coordination modes between cases.
    global _redis_pool, _redis_loop
    _redis_pool = None
    _redis_loop = None


def _calculate_tokens(
    *,
    tokens: float | None,
    last_ms: int | None,
    now_ms: int,
    rate: float,
    burst: int,
) -> float:
    # Refill tokens based on elapsed time while enforcing burst capacity.
    if tokens is None:
        tokens = float(burst)
    if last_ms is None:
        last_ms = now_ms
    if now_ms < last_ms:
        last_ms = now_ms
    delta_s = (now_ms - last_ms) / 1000.0
    return min(float(burst), tokens + (delta_s * rate))


class TokenBucket:
    # In-process token bucket shared by all workers of one pool.

    def __init__(
        self,
        *,
        rate: float,
        burst: int,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        name: str = "token_bucket",
    ) -> None:
        self.rate = float(rate)
        self.burst = max(1, int(burst))
        self.name = name
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._tokens: float | None = None
        self._last_ms: int | None = None
        self._lock = asyncio.Lock()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def try_acquire(self, cost: float = 1.0) -> float:
        # Take tokens when available and return 0, otherwise return seconds until enough refill.
        now_ms = self._now_ms()
        tokens = _calculate_tokens(
            tokens=self._tokens, last_ms=self._last_ms, now_ms=now_ms, rate=self.rate, burst=self.burst
        )
        self._last_ms = now_ms
        if tokens >= cost:
            self._tokens = tokens - cost
            return 0.0
        self._tokens = tokens
        if self.rate <= 0:
            return 1.0
        return (cost - tokens) / self.rate

    async def acquire(self, cost: float = 1.0) -> None:
        # Serialize waiters so throughput never exceeds the configured rate.
        async with self._lock:
            while True:
                wait_s = self.try_acquire(cost)
                if wait_s <= 0:
                    return
                increment_counter(f"{self.name}_throttled_total")
                await self._sleep(wait_s)
