"""PumpSwap direct venue client."""

import logging
from typing import TYPE_CHECKING, Optional

import httpx

from swapshield.config import WRAPPED_SOL_MINT
from swapshield.errors import SwapShieldError, raise_for_status
from swapshield.venues.base import Eligibility, PoolCheck, VenueClient, VenueQuote

if TYPE_CHECKING:
    from swapshield.rpc.connection import Connection

logger = logging.getLogger(__name__)

# Small base-asset amount used to probe for a pool (0.001 SOL)
PROBE_AMOUNT = 1_000_000

POOL_MISSING_MARKERS = ("pool not found", "no pool", "not found", "no route")


class PumpSwapClient(VenueClient):
    """PumpSwap quote/swap REST API.

    The API exposes no pool endpoint, so pool existence is probed with a
    tiny quote. Liquidity is not reported; the orchestrator fills it in
    from liquidity discovery.
    """

    def __init__(
        self,
        connection: Optional["Connection"] = None,
        api_url: str = "https://api.pump.fun",
        quote_mint: str = WRAPPED_SOL_MINT,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(connection=connection, timeout=timeout, transport=transport)
        self.api_url = api_url.rstrip("/")
        self.quote_mint = quote_mint

    @property
    def name(self) -> str:
        return "pumpswap"

    async def _fetch_quote(
        self, input_mint: str, output_mint: str, amount: int, slippage_bps: int
    ) -> dict:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippage": str(slippage_bps),
        }
        response = await self._request("GET", f"{self.api_url}/quote", params=params)
        raise_for_status(response, source=self.name)
        return response.json()

    async def check_pool(self, token_mint: str) -> PoolCheck:
        try:
            data = await self._fetch_quote(self.quote_mint, token_mint, PROBE_AMOUNT, 100)
        except Exception as e:
            logger.warning(f"[pumpswap] Pool probe failed for {token_mint}: {e}")
            return PoolCheck.unknown(f"pool probe failed: {e}")

        if data.get("success"):
            return PoolCheck(Eligibility.YES)

        error = str(data.get("error", "")).lower()
        if any(marker in error for marker in POOL_MISSING_MARKERS):
            return PoolCheck.absent("no PumpSwap pool")
        return PoolCheck.unknown(f"probe error: {error or 'unknown'}")

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> Optional[VenueQuote]:
        data = await self._fetch_quote(input_mint, output_mint, amount, slippage_bps)
        if not data.get("success"):
            logger.info(f"[pumpswap] No quote: {data.get('error', 'unknown error')}")
            return None

        return VenueQuote(
            venue=self.name,
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=int(data.get("inAmount", amount)),
            out_amount=int(data.get("outAmount", 0)),
            price_impact_pct=float(data.get("priceImpact") or 0),
            slippage_bps=slippage_bps,
            raw=data,
        )

    async def build_swap_transaction(self, quote: VenueQuote, user_public_key: str) -> str:
        payload = {
            "routes": quote.raw.get("routes"),
            "userPublicKey": user_public_key,
        }
        response = await self._request("POST", f"{self.api_url}/swap", json=payload)
        raise_for_status(response, source=self.name)
        data = response.json()

        if not data.get("success") or not data.get("encodedTransaction"):
            raise SwapShieldError(
                f"PumpSwap transaction build failed: {data.get('error', 'unknown error')}",
                source=self.name,
            )
        return data["encodedTransaction"]
