"""Tiered token-bucket rate limiter for the swap aggregator API.

Each rate-limit plan is plain data (TierConfig). Plans with an isolated
price bucket get two buckets, one for generic calls (quotes, swap builds)
and one for high-frequency price lookups; otherwise both aliases resolve
to the same bucket.

Refill is lazy: tokens are recomputed from elapsed time whenever a bucket
is touched. Calls that find no token wait in a per-bucket FIFO queue that
is drained only when a token actually exists. Repeated rate-limit
responses put the affected bucket into a cooldown during which calls
fail fast without reaching the network.

All times are in milliseconds.
"""

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from swapshield.errors import (
    ErrorCategory,
    RateLimitCooldownError,
    RetriesExhaustedError,
    classify_error,
    is_rate_limit_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BUCKET = "default"
PRICE_BUCKET = "price"

# Consecutive rate-limit hits that switch a bucket into cooldown
COOLDOWN_THRESHOLD = 3
MAX_COOLDOWN_MULTIPLIER = 10
MIN_BACKOFF_MS = 500.0
JITTER_FRACTION = 0.2


@dataclass(frozen=True)
class TierConfig:
    """Published limits of one aggregator plan."""

    name: str
    requests_per_minute: int
    capacity: int
    refill_period_ms: int
    separate_price_bucket: bool
    keyed: bool


RATE_LIMIT_TIERS: dict[str, TierConfig] = {
    "free": TierConfig("free", 60, 60, 60_000, separate_price_bucket=False, keyed=False),
    "pro_i": TierConfig("pro_i", 600, 100, 10_000, separate_price_bucket=True, keyed=True),
    "pro_ii": TierConfig("pro_ii", 3_000, 500, 10_000, separate_price_bucket=True, keyed=True),
    "pro_iii": TierConfig("pro_iii", 6_000, 1_000, 10_000, separate_price_bucket=True, keyed=True),
    "pro_iv": TierConfig("pro_iv", 30_000, 5_000, 10_000, separate_price_bucket=True, keyed=True),
}


class TokenBucket:
    """Capped, lazily refilled quota of permits."""

    def __init__(self, name: str, capacity: int, refill_period_ms: float, now: float):
        self.name = name
        self.capacity = capacity
        self.refill_period_ms = refill_period_ms
        self.tokens = float(capacity)
        self.last_refill = now
        self.consecutive_rate_limits = 0
        self.rate_limited_until = 0.0

    @property
    def refill_rate(self) -> float:
        """Tokens per millisecond."""
        return self.capacity / self.refill_period_ms

    def refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed <= 0:
            return
        self.tokens = min(
            float(self.capacity),
            self.tokens + elapsed * self.capacity / self.refill_period_ms,
        )
        self.last_refill = now

    def try_consume(self, now: float) -> bool:
        self.refill(now)
        if self.tokens >= 1:
            self.tokens -= 1
            return True
        return False

    def time_until_next_token(self, now: float) -> float:
        self.refill(now)
        if self.tokens >= 1:
            return 0.0
        wait = (1 - self.tokens) * self.refill_period_ms / self.capacity
        # last_refill is in the future while a cooldown is pending
        return wait + max(0.0, self.last_refill - now)

    def is_cooling_down(self, now: float) -> bool:
        return now < self.rate_limited_until

    def cooldown_remaining(self, now: float) -> float:
        return max(0.0, self.rate_limited_until - now)

    def expire_cooldown(self, now: float) -> None:
        """Reset the rate-limit streak once a cooldown has run out."""
        if self.rate_limited_until and now >= self.rate_limited_until:
            self.rate_limited_until = 0.0
            self.consecutive_rate_limits = 0

    def enter_cooldown(self, now: float) -> None:
        multiplier = min(self.consecutive_rate_limits, MAX_COOLDOWN_MULTIPLIER)
        self.rate_limited_until = now + self.refill_period_ms * multiplier
        self.tokens = 0.0
        # No refill accrues until the cooldown has passed
        self.last_refill = self.rate_limited_until

    def reset(self, now: float) -> None:
        self.tokens = float(self.capacity)
        self.last_refill = now
        self.consecutive_rate_limits = 0
        self.rate_limited_until = 0.0

    def status(self, now: float) -> dict:
        self.refill(now)
        return {
            "tokens": round(self.tokens, 3),
            "capacity": self.capacity,
            "percent_full": round(100 * self.tokens / self.capacity, 1),
            "consecutive_rate_limits": self.consecutive_rate_limits,
            "cooling_down": self.is_cooling_down(now),
            "reset_in_ms": round(self.cooldown_remaining(now)),
        }


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class AdaptiveRateLimiter:
    """Token-bucket guard in front of aggregator API calls.

    Example:
        limiter = AdaptiveRateLimiter(tier="free")
        quote = await limiter.execute(lambda: client.get_quote(...))
        price = await limiter.execute(lambda: client.get_price(...), high_frequency=True)
    """

    def __init__(
        self,
        tier: str = "free",
        max_concurrent: int = 2,
        base_backoff_ms: float = 1_000,
        max_backoff_ms: float = 30_000,
        backoff_multiplier: float = 2.0,
        max_retries: int = 3,
        clock: Callable[[], float] = _monotonic_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Optional[Callable[[], float]] = None,
        tiers: Optional[dict[str, TierConfig]] = None,
    ):
        """Initialize the limiter.

        Args:
            tier: Name of the active plan in ``tiers``
            max_concurrent: Operations allowed to run at the same time
            base_backoff_ms: First backoff after a rate-limit response
            max_backoff_ms: Backoff ceiling
            backoff_multiplier: Backoff growth per consecutive hit
            max_retries: Retries per call on rate-limit responses, and
                separately on network errors
            clock: Time source in milliseconds
            sleep: Awaitable sleep taking seconds
            jitter: Returns a fraction in [-0.2, 0.2] applied to each backoff
            tiers: Plan table (defaults to RATE_LIMIT_TIERS)
        """
        self.tiers = tiers or RATE_LIMIT_TIERS
        self.max_concurrent = max_concurrent
        self.base_backoff_ms = base_backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self.backoff_multiplier = backoff_multiplier
        self.max_retries = max_retries
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter or (lambda: random.uniform(-JITTER_FRACTION, JITTER_FRACTION))

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._queues: dict[str, deque] = {DEFAULT_BUCKET: deque(), PRICE_BUCKET: deque()}
        self._drain_tasks: dict[str, asyncio.Task] = {}
        self._active = 0

        self.tier_config = self._tier(tier)
        self._buckets = self._build_buckets(self.tier_config)

    def _tier(self, name: str) -> TierConfig:
        config = self.tiers.get(name)
        if config is None:
            raise ValueError(
                f"Unknown rate-limit tier '{name}'. Valid tiers: {', '.join(self.tiers)}"
            )
        return config

    def _build_buckets(self, config: TierConfig) -> dict[str, TokenBucket]:
        now = self._clock()
        default = TokenBucket(DEFAULT_BUCKET, config.capacity, config.refill_period_ms, now)
        if config.separate_price_bucket:
            price = TokenBucket(PRICE_BUCKET, config.capacity, config.refill_period_ms, now)
        else:
            price = default
        return {DEFAULT_BUCKET: default, PRICE_BUCKET: price}

    @property
    def tier(self) -> str:
        return self.tier_config.name

    def bucket(self, high_frequency: bool = False) -> TokenBucket:
        return self._buckets[PRICE_BUCKET if high_frequency else DEFAULT_BUCKET]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        high_frequency: bool = False,
    ) -> T:
        """Run ``operation`` once a token is available.

        Args:
            operation: Zero-argument coroutine factory making one API call
            high_frequency: Charge the price bucket instead of the default one

        Raises:
            RateLimitCooldownError: the bucket is cooling down (no call made)
            RetriesExhaustedError: rate-limited or unreachable on every retry
        """
        self._raise_if_cooling(high_frequency)
        await self._acquire(high_frequency)

        async with self._semaphore:
            self._active += 1
            try:
                return await self._run_with_retries(operation, high_frequency)
            finally:
                self._active -= 1

    def _raise_if_cooling(self, high_frequency: bool) -> None:
        bucket = self.bucket(high_frequency)
        now = self._clock()
        bucket.expire_cooldown(now)
        if bucket.is_cooling_down(now):
            raise RateLimitCooldownError(bucket.name, bucket.cooldown_remaining(now))

    async def _acquire(self, high_frequency: bool) -> None:
        bucket = self.bucket(high_frequency)
        queue = self._queues[bucket.name]

        # Only jump ahead when nobody is already waiting
        if not queue and bucket.try_consume(self._clock()):
            return

        future = asyncio.get_running_loop().create_future()
        queue.append(future)
        logger.debug(f"Rate limiter: queued call on '{bucket.name}' ({len(queue)} waiting)")
        self._ensure_drain(bucket.name)
        await future

    def _ensure_drain(self, name: str) -> None:
        task = self._drain_tasks.get(name)
        if task is None or task.done():
            self._drain_tasks[name] = asyncio.create_task(self._drain(name))

    async def _drain(self, name: str) -> None:
        queue = self._queues[name]
        while queue:
            future = queue[0]
            if future.done():
                queue.popleft()
                continue

            bucket = self._buckets.get(name, self._buckets[DEFAULT_BUCKET])
            now = self._clock()
            bucket.expire_cooldown(now)
            if bucket.is_cooling_down(now):
                queue.popleft()
                future.set_exception(
                    RateLimitCooldownError(bucket.name, bucket.cooldown_remaining(now))
                )
                continue

            if bucket.try_consume(now):
                queue.popleft()
                future.set_result(None)
                continue

            # Head stays queued until a token exists
            wait_ms = bucket.time_until_next_token(now)
            await self._sleep(wait_ms / 1000)

    async def _run_with_retries(
        self,
        operation: Callable[[], Awaitable[T]],
        high_frequency: bool,
    ) -> T:
        attempt = 0
        network_attempt = 0
        while True:
            try:
                result = await operation()
            except Exception as e:
                if not is_rate_limit_error(e):
                    if classify_error(e) != ErrorCategory.TRANSIENT_NETWORK:
                        raise
                    network_attempt += 1
                    if network_attempt > self.max_retries:
                        raise RetriesExhaustedError(
                            f"Aggregator still unreachable after {self.max_retries} retries: {e}",
                            last_error=e,
                            source=self.bucket(high_frequency).name,
                        ) from e
                    delay_ms = self.network_backoff_ms(network_attempt)
                    logger.warning(
                        f"Network error: {e}. "
                        f"Retry {network_attempt}/{self.max_retries} in {delay_ms:.0f}ms"
                    )
                    await self._sleep(delay_ms / 1000)
                    continue

                attempt += 1
                bucket = self.bucket(high_frequency)
                if self.record_rate_limit(high_frequency):
                    raise RateLimitCooldownError(
                        bucket.name, bucket.cooldown_remaining(self._clock())
                    ) from e
                if attempt > self.max_retries:
                    raise RetriesExhaustedError(
                        f"Aggregator still rate limited after {self.max_retries} retries",
                        last_error=e,
                        source=bucket.name,
                    ) from e

                delay_ms = self.backoff_ms(bucket.consecutive_rate_limits)
                logger.warning(
                    f"Rate limited on '{bucket.name}' "
                    f"(streak {bucket.consecutive_rate_limits}), "
                    f"retry {attempt}/{self.max_retries} in {delay_ms:.0f}ms"
                )
                await self._sleep(delay_ms / 1000)
                continue

            self.bucket(high_frequency).consecutive_rate_limits = 0
            return result

    def backoff_ms(self, consecutive: int) -> float:
        """Exponential backoff with +-20% jitter, floored at 500ms."""
        exponent = max(consecutive, 1) - 1
        base = min(self.max_backoff_ms, self.base_backoff_ms * self.backoff_multiplier ** exponent)
        return max(MIN_BACKOFF_MS, base * (1 + self._jitter()))

    def network_backoff_ms(self, attempt: int) -> float:
        """Linear backoff for network errors, never below the base delay."""
        base = min(self.max_backoff_ms, self.base_backoff_ms * attempt)
        return base * (1 + abs(self._jitter()))

    def record_rate_limit(self, high_frequency: bool = False) -> bool:
        """Count a rate-limit response against a bucket.

        Returns:
            True if the bucket entered cooldown
        """
        bucket = self.bucket(high_frequency)
        now = self._clock()
        bucket.refill(now)
        bucket.consecutive_rate_limits += 1
        if bucket.consecutive_rate_limits >= COOLDOWN_THRESHOLD:
            bucket.enter_cooldown(now)
            logger.error(
                f"Bucket '{bucket.name}' entered cooldown after "
                f"{bucket.consecutive_rate_limits} consecutive rate limits "
                f"({bucket.cooldown_remaining(now):.0f}ms)"
            )
            return True
        return False

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def update_tier(self, tier: str) -> None:
        """Switch plans, replacing both buckets at once."""
        config = self._tier(tier)
        self._buckets = self._build_buckets(config)
        self.tier_config = config
        logger.info(
            f"Rate limiter tier set to {config.name} "
            f"({config.requests_per_minute} req/min, capacity {config.capacity})"
        )
        for name, queue in self._queues.items():
            if queue:
                self._ensure_drain(name)

    def clear_rate_limit(self) -> None:
        """Refill every bucket and drop any cooldown."""
        now = self._clock()
        for bucket in {id(b): b for b in self._buckets.values()}.values():
            bucket.reset(now)
        logger.info("Rate limiter state cleared")

    def get_status(self) -> dict:
        now = self._clock()
        default = self._buckets[DEFAULT_BUCKET]
        price = self._buckets[PRICE_BUCKET]
        cooling = [b for b in (default, price) if b.is_cooling_down(now)]
        return {
            "tier": self.tier,
            "requests_per_minute": self.tier_config.requests_per_minute,
            "separate_price_bucket": price is not default,
            "buckets": {
                DEFAULT_BUCKET: default.status(now),
                PRICE_BUCKET: price.status(now),
            },
            "active_requests": self._active,
            "queued": sum(len(queue) for queue in self._queues.values()),
            "is_rate_limited": bool(cooling),
            "reset_in_ms": round(max((b.cooldown_remaining(now) for b in cooling), default=0)),
        }
