"""Fixed-window per-IP rate limiting for the HTTP API."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
import time
from typing import Callable, Dict, Protocol, Tuple

from redis import Redis
from redis.exceptions import RedisError

from src.core.config import get_settings
from src.core.logger import get_logger
from src.storage.redis_client import get_client


REDIS_KEY_PREFIX = "openpolicy:ratelimit:ip"

logger = get_logger("openpolicy.rate_limit")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class IPRateLimiter(Protocol):
    def check(self, *, ip: str) -> RateLimitDecision:
        """Count one request for ``ip`` and decide whether it may proceed."""


class _FixedWindowLimiter:
    def __init__(
        self,
        *,
        requests_per_window: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if requests_per_window <= 0:
            raise ValueError("requests_per_window must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._limit = requests_per_window
        self._window = window_seconds
        self._clock = clock

    def _current_window(self) -> Tuple[int, int]:
        now = int(self._clock())
        return now // self._window, self._window - (now % self._window)

    def _decide(self, count: int, reset_seconds: int) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=count <= self._limit,
            limit=self._limit,
            remaining=max(self._limit - count, 0),
            reset_seconds=reset_seconds,
        )


class InMemoryIPRateLimiter(_FixedWindowLimiter):
    """Process-local counters; used outside production."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._lock = Lock()
        self._counts: Dict[Tuple[str, int], int] = {}

    def check(self, *, ip: str) -> RateLimitDecision:
        window_id, reset_seconds = self._current_window()
        with self._lock:
            for stale in [key for key in self._counts if key[1] < window_id]:
                del self._counts[stale]
            count = self._counts.get((ip, window_id), 0) + 1
            self._counts[(ip, window_id)] = count
        return self._decide(count, reset_seconds)


class RedisIPRateLimiter(_FixedWindowLimiter):
    """Counters shared across API replicas. Fails open when Redis is unreachable."""

    def __init__(self, *, redis_client: Redis, **kwargs) -> None:
        super().__init__(**kwargs)
        self._redis = redis_client

    def check(self, *, ip: str) -> RateLimitDecision:
        window_id, reset_seconds = self._current_window()
        key = f"{REDIS_KEY_PREFIX}:{ip}:{window_id}"
        try:
            pipeline = self._redis.pipeline()
            pipeline.incr(key)
            pipeline.expire(key, self._window + 1)
            count = int(pipeline.execute()[0])
        except (RedisError, OSError) as exc:
            logger.warning("rate_limit_backend_unavailable", error_type=type(exc).__name__)
            return RateLimitDecision(
                allowed=True,
                limit=self._limit,
                remaining=self._limit,
                reset_seconds=reset_seconds,
            )
        return self._decide(count, reset_seconds)


@lru_cache(maxsize=1)
def get_ip_rate_limiter() -> IPRateLimiter:
    settings = get_settings()
    options = {
        "requests_per_window": settings.ip_rate_limit_requests_per_window,
        "window_seconds": settings.ip_rate_limit_window_seconds,
    }
    if settings.is_production:
        return RedisIPRateLimiter(redis_client=get_client(), **options)
    return InMemoryIPRateLimiter(**options)


def reset_rate_limiter_cache() -> None:
    get_ip_rate_limiter.cache_clear()
