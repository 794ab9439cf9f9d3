"""Raydium direct venue client.

Uses the Raydium trade API for quotes and transactions, and the pool
info API to report pool existence and liquidity.
API docs: https://docs.raydium.io/raydium/traders/trade-api
"""

import logging
from typing import TYPE_CHECKING, Optional

import httpx

from swapshield.config import WRAPPED_SOL_MINT
from swapshield.errors import SwapShieldError, raise_for_status
from swapshield.venues.base import Eligibility, PoolCheck, VenueClient, VenueQuote

if TYPE_CHECKING:
    from swapshield.rpc.connection import Connection

logger = logging.getLogger(__name__)


class RaydiumClient(VenueClient):
    """Raydium AMM / CLMM / CPMM pools via the public trade API."""

    def __init__(
        self,
        connection: Optional["Connection"] = None,
        api_url: str = "https://transaction-v1.raydium.io",
        pool_api_url: str = "https://api-v3.raydium.io",
        quote_mint: str = WRAPPED_SOL_MINT,
        priority_fee_micro_lamports: int = 100_000,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(connection=connection, timeout=timeout, transport=transport)
        self.api_url = api_url.rstrip("/")
        self.pool_api_url = pool_api_url.rstrip("/")
        self.quote_mint = quote_mint
        self.priority_fee_micro_lamports = priority_fee_micro_lamports

    @property
    def name(self) -> str:
        return "raydium"

    async def check_pool(self, token_mint: str) -> PoolCheck:
        params = {
            "mint1": self.quote_mint,
            "mint2": token_mint,
            "poolType": "all",
            "poolSortField": "liquidity",
            "sortType": "desc",
            "pageSize": "1",
            "page": "1",
        }
        try:
            response = await self._request(
                "GET", f"{self.pool_api_url}/pools/info/mint", params=params
            )
            raise_for_status(response, source=self.name)
            data = response.json()
        except Exception as e:
            logger.warning(f"[raydium] Pool lookup failed for {token_mint}: {e}")
            return PoolCheck.unknown(f"pool lookup failed: {e}")

        if not data.get("success"):
            return PoolCheck.unknown(f"pool API error: {data.get('msg', 'unknown')}")

        pools = (data.get("data") or {}).get("data") or []
        if not pools:
            return PoolCheck.absent("no Raydium pool")

        pool = pools[0]
        tvl = pool.get("tvl")
        return PoolCheck(
            Eligibility.YES,
            liquidity_usd=float(tvl) if tvl is not None else None,
            pool_id=pool.get("id"),
        )

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> Optional[VenueQuote]:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
            "txVersion": "V0",
        }
        response = await self._request(
            "GET", f"{self.api_url}/compute/swap-base-in", params=params
        )
        raise_for_status(response, source=self.name)
        data = response.json()

        if not data.get("success"):
            logger.info(f"[raydium] No quote: {data.get('msg', 'unknown error')}")
            return None

        swap = data.get("data") or {}
        plan = swap.get("routePlan") or []
        return VenueQuote(
            venue=self.name,
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=int(swap.get("inputAmount", amount)),
            out_amount=int(swap.get("outputAmount", 0)),
            price_impact_pct=float(swap.get("priceImpactPct") or 0),
            slippage_bps=slippage_bps,
            pool_id=plan[0].get("poolId") if plan else None,
            raw=data,
        )

    async def build_swap_transaction(self, quote: VenueQuote, user_public_key: str) -> str:
        payload = {
            "computeUnitPriceMicroLamports": str(self.priority_fee_micro_lamports),
            "swapResponse": quote.raw,
            "txVersion": "V0",
            "wallet": user_public_key,
            "wrapSol": quote.input_mint == WRAPPED_SOL_MINT,
            "unwrapSol": quote.output_mint == WRAPPED_SOL_MINT,
        }
        response = await self._request(
            "POST", f"{self.api_url}/transaction/swap-base-in", json=payload
        )
        raise_for_status(response, source=self.name)
        data = response.json()

        if not data.get("success"):
            raise SwapShieldError(
                f"Raydium transaction build failed: {data.get('msg', 'unknown error')}",
                source=self.name,
            )

        transactions = data.get("data") or []
        if len(transactions) != 1:
            raise SwapShieldError(
                f"Raydium returned {len(transactions)} transactions, expected 1",
                source=self.name,
            )
        return transactions[0]["transaction"]
