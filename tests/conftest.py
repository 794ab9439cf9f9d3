"""Pytest configuration and fixtures."""

import os

import pytest
import pytest_asyncio

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "true"
os.environ.pop("WALLET_SECRET_KEY", None)

from swapshield.config import BONK_MINT, USDC_MINT, Settings
from swapshield.orchestrator import SwapOrchestrator
from swapshield.ratelimit import AdaptiveRateLimiter
from swapshield.routing.resolver import RouteResolver
from swapshield.rpc.connection import RetryingConnection
from swapshield.rpc.pool import EndpointPool
from swapshield.signing import KeypairSigner

from fakes import (
    RPC_A,
    RPC_B,
    FakeAggregator,
    FakeClock,
    FakeConnection,
    FakeDiscovery,
    FakeVenue,
)


@pytest.fixture
def clock():
    """Clock in seconds for the endpoint pool."""
    return FakeClock()


@pytest.fixture
def ms_clock():
    """Clock in milliseconds for the rate limiter."""
    return FakeClock(start=1_000_000.0, scale=1_000.0)


@pytest.fixture
def connections():
    """Fake nodes by URL; unknown URLs get a fresh node on first use."""
    return {url: FakeConnection(url) for url in (RPC_A, RPC_B)}


@pytest.fixture
def connection_factory(connections):
    return lambda url: connections.setdefault(url, FakeConnection(url))


@pytest.fixture
def pool(connection_factory, clock):
    return EndpointPool(
        [RPC_A, RPC_B],
        connection_factory=connection_factory,
        health_check_timeout=0.05,
        clock=clock,
    )


@pytest.fixture
def rpc(pool, clock):
    """Pool-backed connection with instant backoff."""
    return RetryingConnection(pool, max_retries=2, sleep=clock.sleep)


@pytest.fixture
def limiter(ms_clock):
    return AdaptiveRateLimiter(
        tier="free",
        clock=ms_clock,
        sleep=ms_clock.sleep,
        jitter=lambda: 0.0,
    )


@pytest.fixture
def settings():
    """Trading-enabled settings with two fake RPC endpoints."""
    return Settings(
        rpc_endpoints=f"{RPC_A},{RPC_B}",
        trading_enabled=True,
        intermediate_tokens=f"{USDC_MINT},{BONK_MINT}",
        venue_priority="raydium,pumpswap",
        rpc_confirm_timeout=5.0,
    )


@pytest.fixture
def signer():
    return KeypairSigner(bytes(range(32)))


@pytest.fixture
def aggregator():
    return FakeAggregator()


@pytest.fixture
def raydium(rpc):
    return FakeVenue("raydium", connection=rpc)


@pytest.fixture
def pumpswap(rpc):
    return FakeVenue("pumpswap", connection=rpc)


@pytest.fixture
def discovery():
    return FakeDiscovery()


@pytest.fixture
def results():
    """Collects every SwapResult passed to the orchestrator callback."""
    return []


@pytest_asyncio.fixture
async def orchestrator(
    settings, pool, rpc, limiter, aggregator, signer, raydium, pumpswap, discovery, results
):
    """Orchestrator wired to fakes, with results recorded."""

    async def record(result):
        results.append(result)

    resolver = RouteResolver(
        aggregator,
        routing_tokens=settings.routing_token_list,
        intermediate_tokens=settings.intermediate_token_list,
    )
    orchestrator = SwapOrchestrator(
        settings=settings,
        pool=pool,
        connection=rpc,
        limiter=limiter,
        aggregator=aggregator,
        resolver=resolver,
        signer=signer,
        venues=[raydium, pumpswap],
        discovery=discovery,
        on_result=record,
    )
    yield orchestrator
    await pool.stop()
