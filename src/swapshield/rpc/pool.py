"""RPC endpoint pool with health monitoring and rotation.

The pool owns the candidate endpoints, probes them periodically and keeps
exactly one of them "current". Request outcomes reported by callers feed
the same state: authorization failures get the longest cool-down, rate
limits a medium one, and network errors trigger immediate rotation plus a
re-probe of the failing endpoint. A repeat failure inside an active
cool-down doubles what remains of it. Cool-downs always expire; no
endpoint is ever blacklisted for good.

Load is spread across viable endpoints: the current one is rotated away
from once it has served too many requests in the last minute, or has been
current for longer than the rotation interval.

State mutations (rotation, counters, health flags) never await, so under
cooperative scheduling each one is applied atomically. Probes of the same
endpoint are serialized with a per-endpoint lock.
"""

import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Union

from swapshield.errors import ErrorCategory, classify_error
from swapshield.rpc.connection import Connection, HttpConnection

logger = logging.getLogger(__name__)

RESPONSE_WINDOW = 10

# Sliding window (seconds) for per-endpoint request counts
REQUEST_WINDOW = 60.0

# URL fragments identifying premium (tier 3) and foundation (tier 2) providers
PREMIUM_MARKERS = ("quiknode", "quicknode", "helius", "alchemy", "api-key", "apikey")
FOUNDATION_MARKERS = ("genesysgo", "project-serum", "serum", "solana.com")


class RotationStrategy(str, Enum):
    """How the pool picks its current endpoint."""
    HEALTH_FIRST = "health-first"
    PERFORMANCE_FIRST = "performance-first"
    ROUND_ROBIN = "round-robin"


def determine_tier(url: str) -> int:
    """Rank an endpoint by expected reliability (3 = premium, 1 = unknown)."""
    lowered = url.lower()
    if any(marker in lowered for marker in PREMIUM_MARKERS):
        return 3
    if any(marker in lowered for marker in FOUNDATION_MARKERS):
        return 2
    return 1


@dataclass
class EndpointState:
    """Health and performance bookkeeping for one RPC endpoint."""

    url: str
    tier: int = 1
    healthy: bool = True
    response_times: deque = field(default_factory=lambda: deque(maxlen=RESPONSE_WINDOW))
    request_times: deque = field(default_factory=deque)
    success_count: int = 0
    error_count: int = 0
    total_requests: int = 0
    rate_limited_until: float = 0.0
    cooldown_until: float = 0.0
    unhealthy_since: Optional[float] = None
    last_health_check: Optional[float] = None

    @property
    def average_response_time(self) -> float:
        """Mean of the recent samples in ms (inf when never measured)."""
        if not self.response_times:
            return math.inf
        return sum(self.response_times) / len(self.response_times)

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 1.0
        return self.success_count / self.total_requests

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.error_count / self.total_requests

    def requests_in_window(self, now: float) -> int:
        """Requests handed to this endpoint in the last REQUEST_WINDOW seconds."""
        while self.request_times and now - self.request_times[0] >= REQUEST_WINDOW:
            self.request_times.popleft()
        return len(self.request_times)

    def is_rate_limited(self, now: float) -> bool:
        return now < self.rate_limited_until

    def is_viable(self, now: float) -> bool:
        """Healthy, not rate-limited and out of any cool-down."""
        return self.healthy and not self.is_rate_limited(now) and now >= self.cooldown_until

    def mark_unhealthy(self, now: float) -> None:
        self.healthy = False
        if self.unhealthy_since is None:
            self.unhealthy_since = now

    def mark_healthy(self) -> None:
        self.healthy = True
        self.unhealthy_since = None


ConnectionFactory = Callable[[str], Connection]


class EndpointPool:
    """Pool of RPC endpoints exposing a single current connection."""

    def __init__(
        self,
        urls: list[str],
        connection_factory: Optional[ConnectionFactory] = None,
        strategy: Union[RotationStrategy, str] = RotationStrategy.PERFORMANCE_FIRST,
        health_check_interval: float = 60.0,
        health_check_timeout: float = 5.0,
        failed_retry_delay: float = 300.0,
        auth_cooldown: float = 3600.0,
        rate_limit_cooldown: float = 600.0,
        probe_rate_limit_cooldown: float = 600.0,
        max_cooldown: float = 3600.0,
        max_requests_per_minute: int = 30,
        rotation_interval: float = 180.0,
        clock: Callable[[], float] = time.monotonic,
        tiers: Optional[dict[str, int]] = None,
    ):
        """Initialize the pool.

        Args:
            urls: Candidate endpoint URLs (duplicates are ignored)
            connection_factory: Builds a Connection for a URL
            strategy: Selection strategy used by select_best()
            health_check_interval: Seconds between background sweeps
            health_check_timeout: Upper bound for a single probe
            failed_retry_delay: Seconds before an unhealthy endpoint is re-probed
            auth_cooldown: Cool-down after an authorization failure
            rate_limit_cooldown: Cool-down after a rate-limited request
            probe_rate_limit_cooldown: Cool-down after a rate-limited probe
            max_cooldown: Ceiling for a cool-down escalated by repeat failures
            max_requests_per_minute: Requests on one endpoint before load moves
                to the next one (0 disables)
            rotation_interval: Seconds on one endpoint before load moves to
                the next one (0 disables)
            clock: Time source in seconds
            tiers: Explicit tier overrides per URL
        """
        if not urls:
            raise ValueError("EndpointPool needs at least one endpoint")

        self.strategy = RotationStrategy(strategy)
        self.health_check_interval = health_check_interval
        self.health_check_timeout = health_check_timeout
        self.failed_retry_delay = failed_retry_delay
        self.auth_cooldown = auth_cooldown
        self.rate_limit_cooldown = rate_limit_cooldown
        self.probe_rate_limit_cooldown = probe_rate_limit_cooldown
        self.max_cooldown = max_cooldown
        self.max_requests_per_minute = max_requests_per_minute
        self.rotation_interval = rotation_interval
        self._clock = clock
        self._connection_factory = connection_factory or HttpConnection
        self._tiers = tiers or {}

        self._endpoints: list[EndpointState] = []
        self._connections: dict[str, Connection] = {}
        self._probe_locks: dict[str, asyncio.Lock] = {}
        self._current_index = 0
        self._monitor_task: Optional[asyncio.Task] = None
        self._current_since = clock()
        self.rotations = 0

        for url in urls:
            if not self._find(url):
                self._endpoints.append(self._new_state(url))

        self.select_best()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _new_state(self, url: str, tier: Optional[int] = None) -> EndpointState:
        if tier is None:
            tier = self._tiers.get(url, determine_tier(url))
        self._probe_locks[url] = asyncio.Lock()
        return EndpointState(url=url, tier=tier)

    def _find(self, url: str) -> Optional[EndpointState]:
        for state in self._endpoints:
            if state.url == url:
                return state
        return None

    def _resolve(self, endpoint: Union[EndpointState, str, None]) -> Optional[EndpointState]:
        """State for an endpoint; None once it has been removed from the pool."""
        if endpoint is None:
            return self.current
        if isinstance(endpoint, EndpointState):
            return endpoint if any(s is endpoint for s in self._endpoints) else None
        state = self._find(endpoint)
        if state is None:
            logger.debug(f"Ignoring outcome for endpoint no longer in pool: {endpoint}")
        return state

    def _connection_for(self, state: EndpointState) -> Connection:
        connection = self._connections.get(state.url)
        if connection is None:
            connection = self._connection_factory(state.url)
            self._connections[state.url] = connection
        return connection

    @property
    def endpoints(self) -> list[EndpointState]:
        return list(self._endpoints)

    @property
    def current(self) -> EndpointState:
        return self._endpoints[self._current_index]

    def select_current(self) -> Connection:
        """Connection bound to the current endpoint.

        Callers must call this at point of use; rotation may happen while
        another request is in flight. Each call counts as one request
        towards the current endpoint's load.
        """
        now = self._clock()
        self._spread_load(now)
        state = self.current
        state.request_times.append(now)
        return self._connection_for(state)

    def _available_at(self, state: EndpointState) -> float:
        """When an endpoint's failure cool-down expires."""
        available = max(state.rate_limited_until, state.cooldown_until)
        if not state.healthy and state.unhealthy_since is not None:
            available = max(available, state.unhealthy_since + self.failed_retry_delay)
        return available

    def _cooldown_end(self, now: float, until: float, duration: float) -> float:
        """End of a new cool-down; a repeat inside an active one doubles what remains."""
        remaining = until - now
        if remaining > 0:
            duration = max(duration, min(remaining * 2, self.max_cooldown))
        return now + duration

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _set_current(self, index: int, reason: str) -> EndpointState:
        previous = self.current
        self._current_index = index
        if previous is not self.current:
            self._current_since = self._clock()
            logger.info(f"RPC endpoint switched ({reason}): {previous.url} -> {self.current.url}")
        return self.current

    def _last_resort_index(self) -> int:
        """Endpoint whose cool-down expires soonest, nearest in rotation order."""
        n = len(self._endpoints)
        return min(
            range(n),
            key=lambda i: (
                self._available_at(self._endpoints[i]),
                (i - self._current_index - 1) % n,
            ),
        )

    def rotate(self, reason: str = "rotation") -> EndpointState:
        """Advance to the next viable endpoint, scanning circularly.

        Falls back to any healthy endpoint, then to the endpoint whose
        cool-down expires soonest. Never refuses to return an endpoint.
        """
        now = self._clock()
        n = len(self._endpoints)
        self.rotations += 1

        for offset in range(1, n + 1):
            index = (self._current_index + offset) % n
            if self._endpoints[index].is_viable(now):
                return self._set_current(index, reason)

        for offset in range(1, n + 1):
            index = (self._current_index + offset) % n
            if self._endpoints[index].healthy:
                logger.warning("No viable RPC endpoint, falling back to a healthy one")
                return self._set_current(index, f"{reason} to healthy fallback")

        logger.error("No healthy RPC endpoint, using the one that recovers soonest")
        return self._set_current(self._last_resort_index(), f"{reason} to last resort")

    def _spread_load(self, now: float) -> None:
        """Rotate off a busy or long-serving current endpoint.

        Only happens when another endpoint is viable.
        """
        current = self.current
        count = current.requests_in_window(now)
        if self.max_requests_per_minute and count >= self.max_requests_per_minute:
            reason = f"load: {count} requests in the last minute"
        elif self.rotation_interval and now - self._current_since >= self.rotation_interval:
            reason = f"load: current for {now - self._current_since:.0f}s"
        else:
            return

        if not any(state.is_viable(now) for state in self._endpoints if state is not current):
            return
        self.rotate(reason)

    def select_best(self) -> EndpointState:
        """Re-pick the current endpoint according to the active strategy."""
        now = self._clock()
        viable = [i for i, state in enumerate(self._endpoints) if state.is_viable(now)]

        if not viable:
            healthy = [i for i, state in enumerate(self._endpoints) if state.healthy]
            if healthy:
                return self._set_current(healthy[0], "no viable endpoint")
            return self._set_current(self._last_resort_index(), "no healthy endpoint")

        if self.strategy == RotationStrategy.HEALTH_FIRST:
            best = min(viable, key=lambda i: self._endpoints[i].error_count)
        elif self.strategy == RotationStrategy.PERFORMANCE_FIRST:
            best = min(
                viable,
                key=lambda i: (
                    -self._endpoints[i].tier,
                    self._endpoints[i].average_response_time,
                ),
            )
        else:
            if self._current_index in viable:
                best = self._current_index
            else:
                n = len(self._endpoints)
                best = min(viable, key=lambda i: (i - self._current_index) % n)

        return self._set_current(best, self.strategy.value)

    # ------------------------------------------------------------------
    # Health checks
    # ------------------------------------------------------------------

    async def check_health(self, endpoint: Union[EndpointState, str]) -> bool:
        """Probe one endpoint with a bounded timeout.

        Never raises: probe errors (including timeouts) become state updates.
        """
        state = self._resolve(endpoint)
        if state is None:
            return False
        async with self._probe_locks[state.url]:
            connection = self._connection_for(state)
            started = time.perf_counter()
            try:
                await asyncio.wait_for(
                    connection.get_latest_blockhash("finalized"),
                    timeout=self.health_check_timeout,
                )
            except Exception as e:
                self._record_probe_failure(state, e)
                return False

            elapsed_ms = (time.perf_counter() - started) * 1000
            state.last_health_check = self._clock()
            state.response_times.append(elapsed_ms)
            state.cooldown_until = 0.0
            if not state.healthy:
                logger.info(f"RPC endpoint recovered: {state.url} ({elapsed_ms:.0f}ms)")
            state.mark_healthy()
            return True

    def _record_probe_failure(self, state: EndpointState, error: Exception) -> None:
        now = self._clock()
        category = classify_error(error)
        state.last_health_check = now
        state.error_count += 1
        state.mark_unhealthy(now)

        if category == ErrorCategory.AUTHORIZATION:
            state.cooldown_until = self._cooldown_end(now, state.cooldown_until, self.auth_cooldown)
        elif category == ErrorCategory.RATE_LIMITED:
            state.rate_limited_until = self._cooldown_end(
                now, state.rate_limited_until, self.probe_rate_limit_cooldown
            )

        logger.warning(
            f"Health check failed for {state.url} ({category.value}): "
            f"{type(error).__name__}: {error}"
        )
        if state is self.current:
            self.rotate()

    async def check_all(self) -> dict:
        """Probe every endpoint that is due, then re-select the current one.

        Healthy endpoints checked within half an interval are skipped, as
        are unhealthy ones still inside their cool-down window.

        Returns:
            Dict with ``healthy`` and ``total`` counts
        """
        now = self._clock()
        due = []
        for state in self._endpoints:
            if state.last_health_check is not None:
                if state.healthy and now - state.last_health_check < self.health_check_interval / 2:
                    continue
                if not state.healthy and now < self._available_at(state):
                    continue
            due.append(state)

        if due:
            await asyncio.gather(*(self.check_health(state) for state in due))

        self.select_best()
        healthy = sum(1 for state in self._endpoints if state.healthy)
        logger.debug(f"RPC health sweep: {healthy}/{len(self._endpoints)} healthy")
        return {"healthy": healthy, "total": len(self._endpoints)}

    # ------------------------------------------------------------------
    # Request outcomes
    # ------------------------------------------------------------------

    def record_success(self, response_time_ms: float, url: Optional[str] = None) -> None:
        """Record a successful request on the endpoint that served it."""
        state = self._resolve(url)
        if state is None:
            return
        state.success_count += 1
        state.total_requests += 1
        state.response_times.append(response_time_ms)
        if not state.healthy:
            state.mark_healthy()

    def record_rate_limit(self, duration: Optional[float] = None, url: Optional[str] = None) -> None:
        """Exclude an endpoint for ``duration`` seconds and rotate away from it."""
        state = self._resolve(url)
        if state is None:
            return
        now = self._clock()
        duration = self.rate_limit_cooldown if duration is None else duration
        state.rate_limited_until = self._cooldown_end(now, state.rate_limited_until, duration)
        logger.warning(
            f"RPC endpoint rate limited for {state.rate_limited_until - now:.0f}s: {state.url}"
        )
        if state is self.current:
            self.rotate()

    async def record_failure(self, error: BaseException, url: Optional[str] = None) -> None:
        """Classify a failed request and apply the matching cool-down.

        Outcomes reported for an endpoint removed in the meantime are ignored.

        Args:
            error: The exception raised by the request
            url: Endpoint that served the request (defaults to current)
        """
        state = self._resolve(url)
        if state is None:
            return
        now = self._clock()
        category = classify_error(error)
        state.error_count += 1
        state.total_requests += 1

        if category == ErrorCategory.AUTHORIZATION:
            state.mark_unhealthy(now)
            state.cooldown_until = self._cooldown_end(now, state.cooldown_until, self.auth_cooldown)
            logger.error(
                f"RPC authorization failure on {state.url}, "
                f"cooling down for {state.cooldown_until - now:.0f}s: {error}"
            )
            if state is self.current:
                self.rotate()

        elif category == ErrorCategory.RATE_LIMITED:
            self.record_rate_limit(getattr(error, "retry_after", None), url=state.url)

        elif category == ErrorCategory.TRANSIENT_NETWORK:
            state.mark_unhealthy(now)
            logger.warning(f"RPC network failure on {state.url}: {error}")
            if state is self.current:
                self.rotate()
            await self.check_health(state)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def add_endpoint(self, url: str, tier: Optional[int] = None) -> bool:
        """Add an endpoint and probe it immediately. Returns False for duplicates."""
        if self._find(url):
            logger.info(f"RPC endpoint already in pool: {url}")
            return False
        state = self._new_state(url, tier)
        self._endpoints.append(state)
        logger.info(f"Added RPC endpoint {url} (tier {state.tier})")
        await self.check_health(state)
        return True

    async def remove_endpoint(self, url: str) -> bool:
        """Remove an endpoint. The last remaining endpoint cannot be removed."""
        state = self._find(url)
        if state is None:
            return False
        if len(self._endpoints) == 1:
            raise ValueError("Cannot remove the last RPC endpoint")

        current = self.current
        index = self._endpoints.index(state)
        self._endpoints.pop(index)
        self._probe_locks.pop(url, None)

        if state is current:
            self._current_index = index % len(self._endpoints)
            self.select_best()
        else:
            self._current_index = self._endpoints.index(current)

        connection = self._connections.pop(url, None)
        if connection is not None:
            await connection.aclose()
        logger.info(f"Removed RPC endpoint {url}")
        return True

    # ------------------------------------------------------------------
    # Monitor lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background health monitor."""
        if self._monitor_task is None or self._monitor_task.done():
            self._monitor_task = asyncio.create_task(self._monitor_loop())
            logger.info(
                f"RPC health monitor started ({len(self._endpoints)} endpoints, "
                f"every {self.health_check_interval:.0f}s)"
            )

    async def stop(self) -> None:
        """Stop the monitor and close all connections."""
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None

        for connection in self._connections.values():
            await connection.aclose()
        self._connections.clear()

    async def _monitor_loop(self) -> None:
        while True:
            try:
                await self.check_all()
            except Exception as e:
                logger.error(f"RPC health sweep failed: {type(e).__name__}: {e}")
            await asyncio.sleep(self.health_check_interval)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        """Per-endpoint diagnostics for the status surface."""
        now = self._clock()
        endpoints = []
        for state in self._endpoints:
            avg = state.average_response_time
            endpoints.append(
                {
                    "url": state.url,
                    "tier": state.tier,
                    "healthy": state.healthy,
                    "rate_limited": state.is_rate_limited(now),
                    "rate_limited_for": max(0.0, state.rate_limited_until - now),
                    "cooldown_for": max(0.0, state.cooldown_until - now),
                    "avg_response_time_ms": None if math.isinf(avg) else round(avg, 1),
                    "error_rate": round(state.error_rate, 4),
                    "success_rate": round(state.success_rate, 4),
                    "total_requests": state.total_requests,
                    "requests_last_minute": state.requests_in_window(now),
                    "last_health_check": state.last_health_check,
                    "is_current": state is self.current,
                }
            )
        return {
            "current": self.current.url,
            "strategy": self.strategy.value,
            "rotations": self.rotations,
            "endpoints": endpoints,
        }
