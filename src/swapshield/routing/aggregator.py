"""Swap aggregator client (Jupiter API).

Every outbound call is gated by the AdaptiveRateLimiter. The free and
keyed plans live on different hosts; both come from configuration.
API docs: https://dev.jup.ag/docs/api
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

import httpx

from swapshield.errors import (
    SwapShieldError,
    TransientNetworkError,
    raise_for_status,
)
from swapshield.ratelimit import AdaptiveRateLimiter
from swapshield.routing.base import Hop, RouteQuote, RouteStage

logger = logging.getLogger(__name__)

# Error codes the quote API uses when there is simply no path
NO_ROUTE_MARKERS = (
    "could not find any route",
    "no routes found",
    "no_routes_found",
    "could_not_find_any_route",
    "token_not_tradable",
    "not tradable",
    "no liquidity",
)


class AggregatorClient(ABC):
    """Quote and transaction-building interface of a swap aggregator."""

    name: str = "aggregator"

    @abstractmethod
    async def get_routes(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        allowed_intermediates: Optional[list[str]] = None,
    ) -> list[RouteQuote]:
        """Request candidate routes.

        Args:
            input_mint: Mint being sold
            output_mint: Mint being bought
            amount: Raw input amount
            slippage_bps: Slippage tolerance in basis points
            allowed_intermediates: Restrict multi-hop plans to these mints

        Returns:
            Candidate routes; empty when the aggregator has no path

        Raises:
            SwapShieldError subclasses for infrastructure failures
        """
        pass

    @abstractmethod
    async def build_swap_transaction(self, route: RouteQuote, user_public_key: str) -> str:
        """Build an unsigned (base64) transaction executing ``route``."""
        pass

    @abstractmethod
    async def get_price(self, mint: str) -> Optional[Decimal]:
        """USD price of a mint, or None if unknown."""
        pass


class JupiterClient(AggregatorClient):
    """Jupiter aggregator over HTTP, throttled by the rate limiter."""

    name = "jupiter"

    def __init__(
        self,
        limiter: AdaptiveRateLimiter,
        free_url: str = "https://lite-api.jup.ag",
        keyed_url: str = "https://api.jup.ag",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            limiter: Rate limiter shared by all aggregator calls
            free_url: Host used by the free tier
            keyed_url: Host used by keyed tiers
            api_key: Key sent with keyed-tier requests
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.limiter = limiter
        self.free_url = free_url.rstrip("/")
        self.keyed_url = keyed_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    @property
    def base_url(self) -> str:
        """Host matching the limiter's active tier."""
        if self.limiter.tier_config.keyed and self.api_key:
            return self.keyed_url
        return self.free_url

    def _get_headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key and self.limiter.tier_config.keyed:
            headers["x-api-key"] = self.api_key
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                return await client.request(method, url, headers=self._get_headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Jupiter {path} timed out", source=self.name) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(
                f"Jupiter {path} failed: {type(e).__name__}: {e}", source=self.name
            ) from e

    @staticmethod
    def _is_no_route(response: httpx.Response) -> bool:
        if response.status_code not in (400, 404):
            return False
        return any(marker in response.text.lower() for marker in NO_ROUTE_MARKERS)

    async def _fetch_quote(self, params: dict) -> Optional[dict]:
        response = await self._request("GET", "/swap/v1/quote", params=params)
        if self._is_no_route(response):
            logger.debug(f"Jupiter: no route ({response.text[:120]})")
            return None
        raise_for_status(response, source=self.name)
        return response.json()

    async def get_routes(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        allowed_intermediates: Optional[list[str]] = None,
    ) -> list[RouteQuote]:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
            "onlyDirectRoutes": "false",
        }
        if allowed_intermediates:
            params["restrictIntermediateTokens"] = "true"
            params["intermediateTokens"] = ",".join(allowed_intermediates)

        data = await self.limiter.execute(lambda: self._fetch_quote(params))
        if not data or not data.get("routePlan"):
            return []

        route = self._parse_quote(data, slippage_bps)
        logger.info(
            f"Jupiter quote: {amount} {input_mint[:6]}.. -> {route.out_amount} "
            f"{output_mint[:6]}.. via {' > '.join(route.venues)} "
            f"(impact {route.price_impact_pct:.3f}%)"
        )
        return [route]

    @staticmethod
    def _parse_quote(data: dict, slippage_bps: int) -> RouteQuote:
        # API reports impact as a fraction; hops share it equally
        impact_pct = float(Decimal(str(data.get("priceImpactPct") or "0")) * 100)
        plan = data.get("routePlan", [])
        per_hop = impact_pct / len(plan) if plan else 0.0

        hops = []
        for step in plan:
            info = step.get("swapInfo", {})
            hops.append(
                Hop(
                    venue=info.get("label", "Unknown"),
                    market_id=info.get("ammKey", ""),
                    input_mint=info.get("inputMint", ""),
                    output_mint=info.get("outputMint", ""),
                    in_amount=int(info.get("inAmount", 0)),
                    out_amount=int(info.get("outAmount", 0)),
                    price_impact_pct=per_hop,
                )
            )

        return RouteQuote(
            input_mint=data["inputMint"],
            output_mint=data["outputMint"],
            in_amount=int(data.get("inAmount", 0)),
            out_amount=int(data.get("outAmount", 0)),
            hops=tuple(hops),
            price_impact_pct=impact_pct,
            slippage_bps=int(data.get("slippageBps", slippage_bps)),
            stage=RouteStage.DIRECT,
            raw=data,
        )

    async def _post_swap(self, payload: dict) -> dict:
        response = await self._request("POST", "/swap/v1/swap", json=payload)
        raise_for_status(response, source=self.name)
        return response.json()

    async def build_swap_transaction(self, route: RouteQuote, user_public_key: str) -> str:
        if route.is_synthetic:
            raise ValueError("Synthetic routes are built leg by leg")
        if not route.raw:
            raise ValueError("Route has no quote response attached")

        payload = {
            "quoteResponse": route.raw,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        data = await self.limiter.execute(lambda: self._post_swap(payload))

        swap_tx = data.get("swapTransaction")
        if not swap_tx:
            raise SwapShieldError(f"Jupiter swap response had no transaction: {data}", source=self.name)
        return swap_tx

    async def _fetch_price(self, mint: str) -> dict:
        response = await self._request("GET", "/price/v2", params={"ids": mint})
        raise_for_status(response, source=self.name)
        return response.json()

    async def get_price(self, mint: str) -> Optional[Decimal]:
        data = await self.limiter.execute(lambda: self._fetch_price(mint), high_frequency=True)
        price = (data.get("data") or {}).get(mint, {}) or {}
        if price.get("price") is None:
            return None
        return Decimal(str(price["price"]))
