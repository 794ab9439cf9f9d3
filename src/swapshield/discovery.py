"""Liquidity discovery: which venues list a pool for a token.

Listings are used only to decide fallback eligibility, never for price.
Docs: https://docs.dexscreener.com/api/reference
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from swapshield.errors import TransientNetworkError, raise_for_status

logger = logging.getLogger(__name__)

# DexScreener dexId -> venue name
VENUE_ALIASES = {
    "raydium": "raydium",
    "raydium-clmm": "raydium",
    "raydium-cp": "raydium",
    "raydium-cpmm": "raydium",
    "raydium-amm": "raydium",
    "raydium-launchlab": "raydium",
    "pumpswap": "pumpswap",
    "pump-swap": "pumpswap",
    "pump": "pumpswap",
    "pumpfun": "pumpswap",
}


def normalize_venue(dex_id: str) -> str:
    dex_id = dex_id.lower()
    return VENUE_ALIASES.get(dex_id, dex_id)


@dataclass
class VenueListing:
    """One pool for a token as reported by the pair-data API."""

    venue: str
    dex_id: str
    pair_address: str
    liquidity_usd: float
    volume_24h_usd: float = 0.0


class LiquidityDiscovery(ABC):
    """Source of venue listings for a token."""

    @abstractmethod
    async def get_listings(self, token_mint: str) -> list[VenueListing]:
        """All pools listing ``token_mint``, deepest first."""
        pass


class DexScreenerClient(LiquidityDiscovery):
    """DexScreener pair data with a small TTL cache."""

    def __init__(
        self,
        base_url: str = "https://api.dexscreener.com/latest/dex",
        chain_id: str = "solana",
        timeout: float = 30.0,
        cache_ttl: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.chain_id = chain_id
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._transport = transport
        self._cache: dict[str, tuple[float, list[VenueListing]]] = {}

    async def get_listings(self, token_mint: str) -> list[VenueListing]:
        now = self._clock()
        cached = self._cache.get(token_mint)
        if cached and now - cached[0] < self.cache_ttl:
            return cached[1]

        url = f"{self.base_url}/tokens/{token_mint}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"DexScreener timed out for {token_mint}", source="dexscreener") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(
                f"DexScreener request failed: {type(e).__name__}: {e}", source="dexscreener"
            ) from e

        raise_for_status(response, source="dexscreener")
        listings = self._parse_pairs(response.json().get("pairs") or [])
        self._cache[token_mint] = (now, listings)

        logger.info(
            f"DexScreener: {token_mint} listed on "
            f"{', '.join(sorted({l.venue for l in listings})) or 'no venues'}"
        )
        return listings

    def _parse_pairs(self, pairs: list[dict]) -> list[VenueListing]:
        listings = []
        for pair in pairs:
            if pair.get("chainId", self.chain_id) != self.chain_id:
                continue
            dex_id = pair.get("dexId", "")
            listings.append(
                VenueListing(
                    venue=normalize_venue(dex_id),
                    dex_id=dex_id,
                    pair_address=pair.get("pairAddress", ""),
                    liquidity_usd=float((pair.get("liquidity") or {}).get("usd") or 0),
                    volume_24h_usd=float((pair.get("volume") or {}).get("h24") or 0),
                )
            )
        listings.sort(key=lambda l: l.liquidity_usd, reverse=True)
        return listings
