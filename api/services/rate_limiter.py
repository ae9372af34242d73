"""
Sliding-window rate limiting keyed by client IP.

The limiter owns two things: deriving a stable client identifier from the
forwarded-IP headers, and turning a counting decision into response headers.
Counting itself is delegated to a store. `RedisSlidingWindowStore` is used in
deployments (shared across processes); `InMemorySlidingWindowStore` serves a
single local process and the tests.
"""
import logging
import math
import re
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import redis.asyncio as redis

from core.config import Settings

logger = logging.getLogger(__name__)

LOOPBACK_IDENTIFIER = "127.0.0.1"

# Checked in order after x-forwarded-for
CLIENT_IP_HEADERS = (
    "x-real-ip",
    "cf-connecting-ip",
    "x-client-ip",
    "fastly-client-ip",
    "fly-client-ip",
    "true-client-ip",
)

DEFAULT_WINDOW = "1 m"
WINDOW_UNITS_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
}
WINDOW_PATTERN = re.compile(r"^(\d+)\s*(ms|s|m|h|d)$")


@dataclass
class RateLimitDecision:
    """Outcome of one admission check"""

    success: bool
    limit: int
    remaining: int
    reset: int  # epoch milliseconds when the oldest counted request leaves the window


def get_client_identifier(headers: Mapping[str, str]) -> str:
    """Derive the rate-limit identity of a caller from proxy headers."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    for header in CLIENT_IP_HEADERS:
        value = headers.get(header)
        if value:
            return value

    return LOOPBACK_IDENTIFIER


def parse_window(value: Optional[str]) -> int:
    """Parse a window such as "1 m", "30s" or "500 ms" into milliseconds.

    Unrecognised values fall back to one minute.
    """
    if not value:
        value = DEFAULT_WINDOW
    match = WINDOW_PATTERN.match(value.strip())
    if not match:
        logger.warning(f"Invalid rate limit window {value!r}, using {DEFAULT_WINDOW!r}")
        match = WINDOW_PATTERN.match(DEFAULT_WINDOW)
    amount, unit = match.groups()
    return int(amount) * WINDOW_UNITS_MS[unit]


def retry_after_seconds(decision: RateLimitDecision, now_ms: int) -> int:
    return max(0, math.ceil((decision.reset - now_ms) / 1000))


def rate_limit_headers(decision: RateLimitDecision) -> Dict[str, str]:
    """Headers advertising the limiter state on both success and rejection."""
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(max(0, decision.remaining)),
        "X-RateLimit-Reset": str(decision.reset // 1000),
    }


def rejection_headers(decision: RateLimitDecision, now_ms: int) -> Dict[str, str]:
    return {"Retry-After": str(retry_after_seconds(decision, now_ms)), **rate_limit_headers(decision)}


class InMemorySlidingWindowStore:
    """Per-process request log; fine for one worker, not shared between workers.

    Keys whose newest request has left the window are swept at most once per
    window, so clients that stop calling do not stay in memory.
    """

    def __init__(self):
        self.requests: Dict[str, List[int]] = {}
        self._last_sweep_ms = 0

    def _sweep(self, cutoff: int):
        expired = [key for key, timestamps in self.requests.items() if not timestamps or timestamps[-1] <= cutoff]
        for key in expired:
            del self.requests[key]

    async def record(self, key: str, now_ms: int, window_ms: int, limit: int) -> Tuple[bool, int, int]:
        """Count a request. Returns (admitted, requests in window, oldest timestamp)."""
        cutoff = now_ms - window_ms
        if now_ms - self._last_sweep_ms >= window_ms:
            self._sweep(cutoff)
            self._last_sweep_ms = now_ms

        timestamps = [ts for ts in self.requests.get(key, []) if ts > cutoff]

        admitted = len(timestamps) < limit
        if admitted:
            timestamps.append(now_ms)
        if timestamps:
            self.requests[key] = timestamps
        else:
            self.requests.pop(key, None)

        oldest = timestamps[0] if timestamps else now_ms
        return admitted, len(timestamps), oldest

    async def close(self):
        self.requests.clear()


class RedisSlidingWindowStore:
    """Sorted-set request log in Redis.

    Trim, insert and count run in a single MULTI/EXEC transaction, so two
    concurrent requests always observe distinct counts. A rejected request's
    entry is removed again by a separate ZREM after the transaction. Until that
    runs, a concurrent request for the same key can count it and be rejected
    one slot early.
    """

    def __init__(self, client: "redis.Redis"):
        self.redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisSlidingWindowStore":
        return cls(redis.from_url(url, decode_responses=True))

    async def record(self, key: str, now_ms: int, window_ms: int, limit: int) -> Tuple[bool, int, int]:
        member = f"{now_ms}-{uuid.uuid4().hex[:12]}"

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, now_ms - window_ms)
            pipe.zadd(key, {member: now_ms})
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
            pipe.pexpire(key, window_ms)
            _, _, count, oldest, _ = await pipe.execute()

        admitted = count <= limit
        if not admitted:
            await self.redis.zrem(key, member)
            count -= 1

        oldest_ms = int(oldest[0][1]) if oldest else now_ms
        return admitted, count, oldest_ms

    async def close(self):
        await self.redis.aclose()


class SlidingWindowRateLimiter:
    """Admit at most `limit` requests per identifier in any trailing window"""

    def __init__(
        self,
        store,
        limit: int = 10,
        window_ms: int = 60 * 1000,
        prefix: str = "img",
        clock: Optional[Callable[[], int]] = None,
    ):
        self.store = store
        self.max_requests = limit
        self.window_ms = window_ms
        self.prefix = prefix
        self.clock = clock or (lambda: int(time.time() * 1000))

    def now_ms(self) -> int:
        return self.clock()

    async def limit(self, identifier: str) -> RateLimitDecision:
        key = f"{self.prefix}:{identifier}"
        now_ms = self.now_ms()

        admitted, count, oldest_ms = await self.store.record(key, now_ms, self.window_ms, self.max_requests)
        decision = RateLimitDecision(
            success=admitted,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset=oldest_ms + self.window_ms,
        )

        if not admitted:
            logger.warning(f"Rate limit exceeded for {key} ({count}/{self.max_requests})")
        return decision

    async def close(self):
        await self.store.close()


def create_rate_limiter(config: Settings) -> SlidingWindowRateLimiter:
    """Build the limiter described by the settings."""
    if config.redis_url:
        store = RedisSlidingWindowStore.from_url(config.redis_url)
        logger.info("Rate limiter using Redis store")
    else:
        store = InMemorySlidingWindowStore()
        logger.warning("REDIS_URL not set - rate limiter counts in process memory only")

    window_ms = parse_window(config.rate_limit_window)
    logger.info(f"Rate limit: {config.rate_limit_max} requests per {window_ms}ms")
    return SlidingWindowRateLimiter(
        store,
        limit=config.rate_limit_max,
        window_ms=window_ms,
        prefix=config.rate_limit_prefix,
    )
