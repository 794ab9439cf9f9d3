"""Main entry point - wires the resilience layer and serves the diagnostics API."""

import asyncio
import logging
import signal
from typing import Optional

import uvicorn

from swapshield.api.app import create_app
from swapshield.config import Settings, get_settings
from swapshield.discovery import DexScreenerClient
from swapshield.orchestrator import SwapOrchestrator
from swapshield.ratelimit import AdaptiveRateLimiter
from swapshield.routing.aggregator import JupiterClient
from swapshield.routing.resolver import RouteResolver
from swapshield.rpc.connection import Connection, HttpConnection, RetryingConnection
from swapshield.rpc.pool import EndpointPool
from swapshield.signing import KeypairSigner, Signer
from swapshield.venues.base import VenueClient
from swapshield.venues.pumpswap import PumpSwapClient
from swapshield.venues.raydium import RaydiumClient

logger = logging.getLogger(__name__)


def build_pool(settings: Settings) -> EndpointPool:
    return EndpointPool(
        settings.rpc_endpoint_list,
        connection_factory=lambda url: HttpConnection(
            url,
            timeout=settings.rpc_request_timeout,
            commitment=settings.rpc_commitment,
        ),
        strategy=settings.rpc_rotation_strategy,
        health_check_interval=settings.rpc_health_check_interval,
        health_check_timeout=settings.rpc_health_check_timeout,
        failed_retry_delay=settings.rpc_failed_retry_delay,
        auth_cooldown=settings.rpc_auth_cooldown,
        rate_limit_cooldown=settings.rpc_rate_limit_cooldown,
        probe_rate_limit_cooldown=settings.rpc_probe_rate_limit_cooldown,
        max_cooldown=settings.rpc_max_cooldown,
        max_requests_per_minute=settings.rpc_max_requests_per_minute,
        rotation_interval=settings.rpc_rotation_interval,
    )


def build_aggregator(settings: Settings) -> JupiterClient:
    """Aggregator client behind its own rate limiter."""
    limiter = AdaptiveRateLimiter(
        tier=settings.aggregator_tier,
        max_concurrent=settings.aggregator_max_concurrent,
        base_backoff_ms=settings.aggregator_base_backoff * 1000,
        max_backoff_ms=settings.aggregator_max_backoff * 1000,
        backoff_multiplier=settings.aggregator_backoff_multiplier,
        max_retries=settings.aggregator_max_retries,
    )
    return JupiterClient(
        limiter,
        free_url=settings.aggregator_free_url,
        keyed_url=settings.aggregator_keyed_url,
        api_key=settings.aggregator_api_key,
        timeout=settings.aggregator_timeout,
    )


def build_venues(settings: Settings, connection: Connection) -> list[VenueClient]:
    return [
        RaydiumClient(
            connection,
            api_url=settings.raydium_api_url,
            pool_api_url=settings.raydium_pool_api_url,
            quote_mint=settings.base_mint,
            timeout=settings.venue_timeout,
        ),
        PumpSwapClient(
            connection,
            api_url=settings.pumpswap_api_url,
            quote_mint=settings.base_mint,
            timeout=settings.venue_timeout,
        ),
    ]


def build_discovery(settings: Settings) -> DexScreenerClient:
    return DexScreenerClient(
        base_url=settings.discovery_url,
        timeout=settings.discovery_timeout,
        cache_ttl=settings.discovery_cache_ttl,
    )


def build_orchestrator(settings: Settings, signer: Signer) -> SwapOrchestrator:
    """Construct every component once and pass references explicitly."""
    pool = build_pool(settings)
    connection = RetryingConnection(
        pool,
        max_retries=settings.rpc_max_retries,
        initial_backoff=settings.rpc_initial_backoff,
        max_backoff=settings.rpc_max_backoff,
    )
    aggregator = build_aggregator(settings)
    resolver = RouteResolver(
        aggregator,
        routing_tokens=settings.routing_token_list,
        intermediate_tokens=settings.intermediate_token_list,
        alternate_slippage_multiplier=settings.alternate_slippage_multiplier,
    )

    return SwapOrchestrator(
        settings=settings,
        pool=pool,
        connection=connection,
        limiter=aggregator.limiter,
        aggregator=aggregator,
        resolver=resolver,
        signer=signer,
        venues=build_venues(settings, connection),
        discovery=build_discovery(settings),
    )


class Application:
    """Runs the health monitor and the diagnostics API."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.orchestrator: Optional[SwapOrchestrator] = None
        self._shutdown_event = asyncio.Event()

    async def start(self):
        """Start all services."""
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        logger.info("Starting SwapShield...")
        logger.info(f"Environment: {self.settings.environment}")

        if self.settings.has_wallet:
            signer = KeypairSigner.from_base58(self.settings.wallet_secret_key)
            self.orchestrator = build_orchestrator(self.settings, signer)
            await self.orchestrator.pool.check_all()
            self.orchestrator.pool.start()
            logger.info(f"Orchestrator ready for wallet {signer.public_key}")
        else:
            logger.warning("WALLET_SECRET_KEY not set - swap orchestrator disabled")

        if not self.settings.trading_enabled:
            logger.warning("TRADING_ENABLED is false - swaps will be rejected")

        api_task = asyncio.create_task(self._run_api())
        logger.info("API task created")

        await self._shutdown_event.wait()

        api_task.cancel()
        await asyncio.gather(api_task, return_exceptions=True)
        await self._cleanup()

    async def _run_api(self):
        """Run the FastAPI server."""
        try:
            app = create_app(self.orchestrator, self.settings)
            config = uvicorn.Config(
                app,
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="debug" if self.settings.debug else "info",
            )
            server = uvicorn.Server(config)
            logger.info(f"Starting API server on {self.settings.api_host}:{self.settings.api_port}")
            await server.serve()
        except asyncio.CancelledError:
            logger.info("API server cancelled")
        except Exception as e:
            logger.error(f"API error: {e}")
            raise

    async def _cleanup(self):
        """Cleanup resources."""
        logger.info("Cleaning up...")
        if self.orchestrator is not None:
            await self.orchestrator.pool.stop()
        logger.info("Cleanup complete")

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def main():
    """Main entry point."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    app = Application()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    finally:
        loop.close()


if __name__ == "__main__":
    main()
