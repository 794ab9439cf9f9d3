"""Application configuration using pydantic-settings.

Every knob of the resilience layer (RPC pool, aggregator rate limits,
routing intermediates, venue fallback slippage) is read from the
environment or a local .env file.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
BONK_MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _split_pairs(value: str) -> dict[str, str]:
    pairs = {}
    for item in _split_csv(value):
        if "=" not in item:
            continue
        key, val = item.split("=", 1)
        pairs[key.strip()] = val.strip()
    return pairs


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # RPC Endpoint Pool
    # ======================
    rpc_endpoints: str = Field(
        default="https://api.mainnet-beta.solana.com",
        description="Comma-separated list of Solana JSON-RPC endpoint URLs",
    )
    rpc_rotation_strategy: str = Field(
        default="performance-first",
        description="Endpoint selection: health-first, performance-first or round-robin",
    )
    rpc_health_check_interval: float = Field(
        default=60.0, description="Seconds between background health sweeps"
    )
    rpc_health_check_timeout: float = Field(
        default=5.0, description="Timeout for a single health probe in seconds"
    )
    rpc_failed_retry_delay: float = Field(
        default=300.0, description="Seconds before an unhealthy endpoint is probed again"
    )
    rpc_auth_cooldown: float = Field(
        default=3600.0, description="Cool-down after an authorization failure (seconds)"
    )
    rpc_rate_limit_cooldown: float = Field(
        default=600.0, description="Cool-down after a rate-limited request (seconds)"
    )
    rpc_probe_rate_limit_cooldown: float = Field(
        default=600.0, description="Cool-down after a rate-limited health probe (seconds)"
    )
    rpc_max_cooldown: float = Field(
        default=3600.0, description="Ceiling for a cool-down escalated by repeat failures (seconds)"
    )
    rpc_max_requests_per_minute: int = Field(
        default=30, description="Requests on one endpoint per minute before rotating (0 disables)"
    )
    rpc_rotation_interval: float = Field(
        default=180.0, description="Seconds on one endpoint before rotating (0 disables)"
    )
    rpc_request_timeout: float = Field(default=30.0, description="Per-request RPC timeout")
    rpc_max_retries: int = Field(default=5, description="Retries for idempotent RPC reads")
    rpc_initial_backoff: float = Field(default=0.5, description="First RPC retry delay (seconds)")
    rpc_max_backoff: float = Field(default=10.0, description="Largest RPC retry delay (seconds)")
    rpc_commitment: str = Field(default="confirmed", description="Commitment used for reads")
    rpc_confirm_timeout: float = Field(
        default=60.0, description="How long to wait for a submitted transaction to confirm"
    )

    # ======================
    # Swap Aggregator
    # ======================
    aggregator_tier: str = Field(
        default="free", description="Rate-limit plan: free, pro_i, pro_ii, pro_iii, pro_iv"
    )
    aggregator_api_key: Optional[str] = Field(
        default=None, description="API key for keyed (paid) tiers"
    )
    aggregator_free_url: str = Field(
        default="https://lite-api.jup.ag", description="Aggregator host for the free tier"
    )
    aggregator_keyed_url: str = Field(
        default="https://api.jup.ag", description="Aggregator host for keyed tiers"
    )
    aggregator_max_concurrent: int = Field(
        default=2, description="Maximum aggregator calls in flight at once"
    )
    aggregator_base_backoff: float = Field(default=1.0, description="First rate-limit backoff (s)")
    aggregator_max_backoff: float = Field(default=30.0, description="Largest rate-limit backoff (s)")
    aggregator_backoff_multiplier: float = Field(default=2.0, description="Backoff growth factor")
    aggregator_max_retries: int = Field(default=3, description="Retries on rate-limit responses")
    aggregator_timeout: float = Field(default=30.0, description="Aggregator HTTP timeout (s)")

    # ======================
    # Routing
    # ======================
    routing_tokens: str = Field(
        default=f"{USDC_MINT},{USDT_MINT}",
        description="Intermediates the aggregator may use in the alternate-token stage",
    )
    intermediate_tokens: str = Field(
        default=f"{USDC_MINT},{BONK_MINT}",
        description="Priority list of intermediates for manually synthesized routes",
    )
    alternate_slippage_multiplier: float = Field(
        default=1.5, description="Slippage multiplier for the alternate-token stage"
    )

    # ======================
    # Trading
    # ======================
    trading_enabled: bool = Field(default=False, description="Master switch for live swaps")
    base_mint: str = Field(default=WRAPPED_SOL_MINT, description="Native (base) asset mint")
    base_decimals: int = Field(default=9, description="Decimals of the base asset")
    max_trade_size: Decimal = Field(
        default=Decimal("0.08"), description="Largest base-asset amount per swap (whole units)"
    )
    default_slippage_bps: int = Field(default=100, description="Slippage when caller passes none")
    venue_slippage_bps: str = Field(
        default="raydium=1000,pumpswap=6000",
        description="Per-venue fallback slippage as venue=bps pairs",
    )
    last_resort_slippage_bps: int = Field(
        default=6000, description="Slippage for the final aggregator attempt"
    )
    forced_venue_tokens: str = Field(
        default="", description="Tokens that must trade on one venue, as mint=venue pairs"
    )
    venue_priority: str = Field(
        default="raydium,pumpswap", description="Order in which direct venues are tried"
    )
    discovery_pinned_venues: str = Field(
        default="pumpswap",
        description="Venues that take a token straight away when they hold its deepest pool",
    )
    min_venue_liquidity_usd: float = Field(
        default=1000.0, description="Minimum pool liquidity for a venue to be eligible"
    )

    # ======================
    # Direct venues
    # ======================
    raydium_api_url: str = Field(
        default="https://transaction-v1.raydium.io", description="Raydium trade API"
    )
    raydium_pool_api_url: str = Field(
        default="https://api-v3.raydium.io", description="Raydium pool info API"
    )
    pumpswap_api_url: str = Field(default="https://api.pump.fun", description="PumpSwap API")
    venue_timeout: float = Field(default=30.0, description="Direct venue HTTP timeout (s)")

    # ======================
    # Liquidity discovery
    # ======================
    discovery_url: str = Field(
        default="https://api.dexscreener.com/latest/dex", description="Pair-data API"
    )
    discovery_timeout: float = Field(default=30.0, description="Pair-data API timeout (s)")
    discovery_cache_ttl: float = Field(default=600.0, description="Listing cache lifetime (s)")

    # ======================
    # Wallet
    # ======================
    wallet_secret_key: Optional[str] = Field(
        default=None, description="Base58-encoded 64-byte Solana secret key"
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")

    @property
    def rpc_endpoint_list(self) -> list[str]:
        """Parse RPC endpoints."""
        return _split_csv(self.rpc_endpoints)

    @property
    def routing_token_list(self) -> list[str]:
        return _split_csv(self.routing_tokens)

    @property
    def intermediate_token_list(self) -> list[str]:
        return _split_csv(self.intermediate_tokens)

    @property
    def venue_priority_list(self) -> list[str]:
        return [v.lower() for v in _split_csv(self.venue_priority)]

    @property
    def venue_slippage_map(self) -> dict[str, int]:
        """Per-venue fallback slippage in basis points."""
        return {k.lower(): int(v) for k, v in _split_pairs(self.venue_slippage_bps).items()}

    @property
    def discovery_pinned_venue_list(self) -> list[str]:
        return [v.lower() for v in _split_csv(self.discovery_pinned_venues)]

    @property
    def forced_venue_map(self) -> dict[str, str]:
        """Token mint -> venue name for tokens that skip the aggregator."""
        return {k: v.lower() for k, v in _split_pairs(self.forced_venue_tokens).items()}

    @property
    def max_trade_size_raw(self) -> int:
        """Max trade size in base-asset smallest units (lamports)."""
        return int(self.max_trade_size * (10 ** self.base_decimals))

    @property
    def has_wallet(self) -> bool:
        return bool(self.wallet_secret_key)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "trading_enabled": self.trading_enabled,
            "wallet_configured": self.has_wallet,
            "rpc": {
                "endpoints": [self.redact_url(url) for url in self.rpc_endpoint_list],
                "strategy": self.rpc_rotation_strategy,
                "health_check_interval": self.rpc_health_check_interval,
            },
            "aggregator": {
                "tier": self.aggregator_tier,
                "api_key": "***" if self.aggregator_api_key else "(not set)",
                "free_url": self.aggregator_free_url,
                "keyed_url": self.aggregator_keyed_url,
                "max_concurrent": self.aggregator_max_concurrent,
            },
            "trading": {
                "max_trade_size": str(self.max_trade_size),
                "default_slippage_bps": self.default_slippage_bps,
                "last_resort_slippage_bps": self.last_resort_slippage_bps,
                "venue_priority": self.venue_priority_list,
                "discovery_pinned_venues": self.discovery_pinned_venue_list,
                "venue_slippage_bps": self.venue_slippage_map,
            },
        }

    @staticmethod
    def redact_url(url: str) -> str:
        """Mask API keys embedded in RPC URLs (query string or path)."""
        if "?" in url:
            base, query = url.split("?", 1)
            parts = []
            for param in query.split("&"):
                key = param.split("=", 1)[0]
                if "key" in key.lower() or "token" in key.lower():
                    parts.append(f"{key}=***")
                else:
                    parts.append(param)
            url = f"{base}?{'&'.join(parts)}"
        if "/v2/" in url:
            head, _ = url.rsplit("/v2/", 1)
            url = f"{head}/v2/***"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
