"""Tests for the tiered token-bucket rate limiter."""

import asyncio

import pytest

from swapshield.errors import (
    ErrorCategory,
    RateLimitCooldownError,
    RateLimitError,
    RetriesExhaustedError,
    TransientNetworkError,
)
from swapshield.ratelimit import RATE_LIMIT_TIERS, AdaptiveRateLimiter, TokenBucket


def make_limiter(clock, **kwargs):
    return AdaptiveRateLimiter(clock=clock, sleep=clock.sleep, jitter=lambda: 0.0, **kwargs)


class TestTokenBucket:
    """Tests for the bucket arithmetic."""

    def test_starts_full(self):
        """Test a new bucket holds its full capacity."""
        bucket = TokenBucket("default", 60, 60_000, now=0.0)
        assert bucket.tokens == 60

    def test_refill_capped_at_capacity(self):
        """Test tokens never exceed capacity."""
        bucket = TokenBucket("default", 60, 60_000, now=0.0)
        bucket.try_consume(0.0)

        bucket.refill(10_000_000.0)

        assert bucket.tokens == 60

    def test_never_negative(self):
        """Test consumption stops at zero."""
        bucket = TokenBucket("default", 3, 60_000, now=0.0)
        results = [bucket.try_consume(0.0) for _ in range(5)]

        assert results == [True, True, True, False, False]
        assert bucket.tokens == 0

    def test_refill_monotonic(self):
        """Test tokens only grow while nothing is consumed."""
        bucket = TokenBucket("default", 60, 60_000, now=0.0)
        for _ in range(60):
            bucket.try_consume(0.0)

        levels = []
        for now in (0.0, 250.0, 500.0, 10_000.0, 70_000.0):
            bucket.refill(now)
            levels.append(bucket.tokens)

        assert levels == sorted(levels)
        assert 0 <= min(levels) and max(levels) <= 60

    def test_time_until_next_token(self):
        """Test the wait for one token on an empty free-tier bucket."""
        bucket = TokenBucket("default", 60, 60_000, now=0.0)
        for _ in range(60):
            bucket.try_consume(0.0)

        assert bucket.time_until_next_token(0.0) == pytest.approx(1_000.0)
        assert bucket.time_until_next_token(400.0) == pytest.approx(600.0)

    def test_cooldown_blocks_refill(self):
        """Test no tokens accrue before a cooldown ends."""
        bucket = TokenBucket("price", 100, 10_000, now=0.0)
        bucket.consecutive_rate_limits = 3
        bucket.enter_cooldown(0.0)

        assert bucket.rate_limited_until == 30_000.0
        bucket.refill(20_000.0)
        assert bucket.tokens == 0
        assert bucket.time_until_next_token(20_000.0) == pytest.approx(10_100.0)


class TestTiers:
    """Tests for tier configuration."""

    def test_published_limits(self):
        """Test the plan table."""
        assert RATE_LIMIT_TIERS["free"].capacity == 60
        assert RATE_LIMIT_TIERS["free"].refill_period_ms == 60_000
        assert not RATE_LIMIT_TIERS["free"].separate_price_bucket
        assert RATE_LIMIT_TIERS["pro_i"].capacity == 100
        assert RATE_LIMIT_TIERS["pro_iv"].capacity == 5_000
        assert all(RATE_LIMIT_TIERS[name].refill_period_ms == 10_000 for name in
                   ("pro_i", "pro_ii", "pro_iii", "pro_iv"))

    def test_free_tier_shares_bucket(self, limiter):
        """Test price lookups share the bucket on the free tier."""
        assert limiter.bucket(high_frequency=True) is limiter.bucket()

    def test_pro_tier_separate_bucket(self, ms_clock):
        """Test pro tiers isolate price lookups."""
        limiter = make_limiter(ms_clock, tier="pro_i")
        assert limiter.bucket(high_frequency=True) is not limiter.bucket()

    def test_unknown_tier_rejected(self, ms_clock):
        """Test an unknown tier name fails at construction."""
        with pytest.raises(ValueError):
            make_limiter(ms_clock, tier="platinum")

    def test_update_tier(self, limiter):
        """Test switching plans replaces both buckets."""
        limiter.update_tier("pro_ii")

        assert limiter.tier == "pro_ii"
        assert limiter.bucket().capacity == 500
        assert limiter.bucket(high_frequency=True) is not limiter.bucket()

    def test_update_unknown_tier(self, limiter):
        """Test switching to an unknown plan leaves the limiter unchanged."""
        with pytest.raises(ValueError):
            limiter.update_tier("enterprise")
        assert limiter.tier == "free"


class TestExecute:
    """Tests for execute()."""

    @pytest.mark.asyncio
    async def test_free_tier_sixty_one_calls(self, limiter, ms_clock):
        """Test the 61st call in a minute waits for a refilled token."""
        calls = []

        async def op():
            calls.append(ms_clock.now)
            return "ok"

        for _ in range(60):
            assert await limiter.execute(op) == "ok"
        assert ms_clock.sleeps == []

        started = ms_clock.now
        assert await limiter.execute(op) == "ok"

        assert len(calls) == 61
        assert ms_clock.now - started >= 1_000

    @pytest.mark.asyncio
    async def test_queue_is_fifo(self, limiter, ms_clock):
        """Test waiting calls run in arrival order."""
        for _ in range(60):
            limiter.bucket().try_consume(ms_clock.now)
        order = []

        def op_for(index):
            async def op():
                order.append(index)
            return op

        tasks = [asyncio.create_task(limiter.execute(op_for(i))) for i in range(3)]
        await asyncio.gather(*tasks)

        assert order == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_concurrency_cap(self, limiter):
        """Test at most max_concurrent operations run at once."""
        running = 0
        peak = 0
        release = asyncio.Event()

        async def op():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await release.wait()
            running -= 1

        tasks = [asyncio.create_task(limiter.execute(op)) for _ in range(4)]
        for _ in range(5):
            await asyncio.sleep(0)

        assert peak == 2
        assert limiter.get_status()["active_requests"] == 2

        release.set()
        await asyncio.gather(*tasks)
        assert peak == 2

    @pytest.mark.asyncio
    async def test_retries_rate_limit_then_succeeds(self, limiter, ms_clock):
        """Test rate-limit responses are retried with exponential backoff."""
        responses = [RateLimitError("HTTP 429"), RateLimitError("HTTP 429"), "quote"]

        async def op():
            response = responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response

        assert await limiter.execute(op) == "quote"
        assert ms_clock.sleeps == [1.0, 2.0]
        assert limiter.bucket().consecutive_rate_limits == 0

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, ms_clock):
        """Test giving up after max_retries rate-limit responses."""
        limiter = make_limiter(ms_clock, max_retries=1)

        async def op():
            raise RateLimitError("Too Many Requests")

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await limiter.execute(op)

        assert exc_info.value.category == ErrorCategory.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_network_error_retried(self, limiter, ms_clock):
        """Test a 503 is retried with linear backoff on the same token."""
        responses = [TransientNetworkError("jupiter returned HTTP 503"), "quote"]

        async def op():
            response = responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response

        assert await limiter.execute(op) == "quote"
        assert ms_clock.sleeps == [1.0]
        assert limiter.bucket().tokens == 59
        assert limiter.bucket().consecutive_rate_limits == 0

    @pytest.mark.asyncio
    async def test_network_retries_exhausted(self, ms_clock):
        """Test network errors surface only once retries run out."""
        limiter = make_limiter(ms_clock, max_retries=2)
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            raise TransientNetworkError("connection reset")

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await limiter.execute(op)

        assert calls == 3
        assert ms_clock.sleeps == [1.0, 2.0]
        assert exc_info.value.category == ErrorCategory.TRANSIENT_NETWORK

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self, limiter, ms_clock):
        """Test errors that are neither rate limits nor network faults propagate at once."""
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            raise ValueError("bad amount")

        with pytest.raises(ValueError):
            await limiter.execute(op)

        assert calls == 1
        assert ms_clock.sleeps == []

    def test_network_backoff_is_linear(self, ms_clock):
        """Test network backoff grows linearly up to the ceiling."""
        limiter = make_limiter(ms_clock, max_backoff_ms=2_500)

        assert limiter.network_backoff_ms(1) == 1_000
        assert limiter.network_backoff_ms(2) == 2_000
        assert limiter.network_backoff_ms(3) == 2_500

    @pytest.mark.asyncio
    async def test_price_bucket_cooldown_fails_fast(self, ms_clock):
        """Test three rate limits cool the price bucket down without further calls."""
        limiter = make_limiter(ms_clock, tier="pro_i")
        calls = 0

        async def price_lookup():
            nonlocal calls
            calls += 1
            raise RateLimitError("429 rate limit exceeded")

        with pytest.raises(RateLimitCooldownError):
            await limiter.execute(price_lookup, high_frequency=True)
        assert calls == 3

        with pytest.raises(RateLimitCooldownError) as exc_info:
            await limiter.execute(price_lookup, high_frequency=True)
        assert calls == 3
        assert exc_info.value.reset_in_ms == pytest.approx(30_000)

        async def quote():
            return "quote"

        assert await limiter.execute(quote) == "quote"

    @pytest.mark.asyncio
    async def test_cooldown_expires(self, ms_clock):
        """Test calls go through again once the cooldown has passed."""
        limiter = make_limiter(ms_clock, tier="pro_i")

        async def limited():
            raise RateLimitError("429")

        async def price():
            return 1.5

        with pytest.raises(RateLimitCooldownError):
            await limiter.execute(limited, high_frequency=True)

        bucket = limiter.bucket(high_frequency=True)
        ms_clock.advance(bucket.cooldown_remaining(ms_clock.now))

        assert await limiter.execute(price, high_frequency=True) == 1.5
        assert bucket.consecutive_rate_limits == 0
        assert not bucket.is_cooling_down(ms_clock.now)

    def test_backoff_floor_and_ceiling(self, ms_clock):
        """Test backoff stays within [500ms, max_backoff_ms]."""
        limiter = make_limiter(ms_clock, base_backoff_ms=100, max_backoff_ms=5_000)

        assert limiter.backoff_ms(1) == 500
        assert limiter.backoff_ms(4) == 800
        assert limiter.backoff_ms(20) == 5_000

    def test_backoff_jitter_bounds(self, ms_clock):
        """Test default jitter stays within +-20%."""
        limiter = AdaptiveRateLimiter(clock=ms_clock, sleep=ms_clock.sleep)

        for _ in range(50):
            assert 800 <= limiter.backoff_ms(1) <= 1_200


class TestManagement:
    """Tests for status and reset."""

    def test_get_status(self, limiter):
        """Test the status snapshot of a fresh limiter."""
        status = limiter.get_status()

        assert status["tier"] == "free"
        assert status["requests_per_minute"] == 60
        assert status["separate_price_bucket"] is False
        assert status["buckets"]["default"]["tokens"] == 60
        assert status["buckets"]["default"]["percent_full"] == 100.0
        assert status["is_rate_limited"] is False
        assert status["queued"] == 0

    def test_status_reports_cooldown(self, limiter, ms_clock):
        """Test cooldowns surface in the status."""
        for _ in range(3):
            limiter.record_rate_limit()

        status = limiter.get_status()

        assert status["is_rate_limited"] is True
        assert status["reset_in_ms"] == 180_000
        assert status["buckets"]["default"]["consecutive_rate_limits"] == 3

    def test_clear_rate_limit(self, limiter, ms_clock):
        """Test clearing refills buckets and drops cooldowns."""
        for _ in range(3):
            limiter.record_rate_limit()

        limiter.clear_rate_limit()

        bucket = limiter.bucket()
        assert bucket.tokens == bucket.capacity
        assert not bucket.is_cooling_down(ms_clock.now)
        assert bucket.consecutive_rate_limits == 0
