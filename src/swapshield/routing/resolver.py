"""Route resolution with escalation.

A single resolution walks a fixed sequence of stages and stops at the
first one that yields a route:

1. direct: the aggregator's own best plan at the requested slippage
2. alternate_token: the aggregator restricted to configured routing
   tokens, with slippage multiplied (1.5x by default)
3. two_hop: input -> intermediate -> output, each leg quoted separately,
   for each intermediate in priority order
4. three_hop: the first working input -> intermediate leg, continued
   through a second distinct intermediate before the output

Slippage never decreases from one stage to the next. Running out of
stages is an expected outcome reported through Resolution; only
infrastructure errors raised by the aggregator propagate.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Optional

from swapshield.routing.aggregator import AggregatorClient
from swapshield.routing.base import (
    MAX_SLIPPAGE_BPS,
    RouteQuote,
    RouteStage,
    best_route,
    synthesize_route,
)

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    """Outcome of one resolution attempt."""

    route: Optional[RouteQuote]
    attempted_stages: list[RouteStage] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.route is not None

    @property
    def stage(self) -> Optional[RouteStage]:
        return self.route.stage if self.route else None


class RouteResolver:
    """Finds a route through the aggregator, synthesizing multi-hop paths if needed."""

    def __init__(
        self,
        aggregator: AggregatorClient,
        routing_tokens: Optional[list[str]] = None,
        intermediate_tokens: Optional[list[str]] = None,
        alternate_slippage_multiplier: float = 1.5,
    ):
        """Initialize the resolver.

        Args:
            aggregator: Quote source
            routing_tokens: Intermediates allowed in the alternate-token stage
            intermediate_tokens: Priority list for manually synthesized routes
            alternate_slippage_multiplier: Slippage factor from stage 2 on
        """
        self.aggregator = aggregator
        self.routing_tokens = list(routing_tokens or [])
        self.intermediate_tokens = list(intermediate_tokens or [])
        self.alternate_slippage_multiplier = alternate_slippage_multiplier

    def escalate_slippage(self, slippage_bps: int) -> int:
        raised = math.ceil(slippage_bps * self.alternate_slippage_multiplier)
        return min(MAX_SLIPPAGE_BPS, max(slippage_bps, raised))

    async def resolve(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> Resolution:
        """Resolve a route for ``amount`` of ``input_mint`` into ``output_mint``.

        Returns:
            Resolution with the route (or None) and every stage attempted
        """
        attempted: list[RouteStage] = []
        slippage = min(MAX_SLIPPAGE_BPS, slippage_bps)

        attempted.append(RouteStage.DIRECT)
        route = best_route(
            await self.aggregator.get_routes(input_mint, output_mint, amount, slippage)
        )
        if route:
            logger.info(f"Route found at stage direct ({route.out_amount} out)")
            return Resolution(replace(route, stage=RouteStage.DIRECT), attempted)

        slippage = self.escalate_slippage(slippage)
        attempted.append(RouteStage.ALTERNATE_TOKEN)
        logger.info(
            f"No direct route {input_mint[:6]}.. -> {output_mint[:6]}.., "
            f"trying routing tokens at {slippage} bps"
        )
        route = best_route(
            await self.aggregator.get_routes(
                input_mint,
                output_mint,
                amount,
                slippage,
                allowed_intermediates=self.routing_tokens or None,
            )
        )
        if route:
            logger.info(f"Route found at stage alternate_token ({route.out_amount} out)")
            return Resolution(replace(route, stage=RouteStage.ALTERNATE_TOKEN), attempted)

        intermediates = [
            mint for mint in self.intermediate_tokens if mint not in (input_mint, output_mint)
        ]

        attempted.append(RouteStage.TWO_HOP)
        first_leg: Optional[RouteQuote] = None
        for mint in intermediates:
            leg1 = await self._quote_leg(input_mint, mint, amount, slippage)
            if leg1 is None:
                continue
            leg2 = await self._quote_leg(mint, output_mint, leg1.out_amount, slippage)
            if leg2 is not None:
                route = synthesize_route([leg1, leg2], RouteStage.TWO_HOP)
                logger.info(f"Synthesized two-hop route via {mint[:6]}.. ({route.out_amount} out)")
                return Resolution(route, attempted)
            if first_leg is None:
                first_leg = leg1
            logger.debug(f"Two-hop via {mint[:6]}..: second leg has no route")

        attempted.append(RouteStage.THREE_HOP)
        if first_leg is not None:
            first = first_leg.output_mint
            for mint in intermediates:
                if mint == first:
                    continue
                leg2 = await self._quote_leg(first, mint, first_leg.out_amount, slippage)
                if leg2 is None:
                    continue
                leg3 = await self._quote_leg(mint, output_mint, leg2.out_amount, slippage)
                if leg3 is None:
                    continue
                route = synthesize_route([first_leg, leg2, leg3], RouteStage.THREE_HOP)
                logger.info(
                    f"Synthesized three-hop route via {first[:6]}.. and {mint[:6]}.. "
                    f"({route.out_amount} out)"
                )
                return Resolution(route, attempted)

        logger.warning(
            f"No route {input_mint[:6]}.. -> {output_mint[:6]}.. after stages "
            f"{', '.join(stage.value for stage in attempted)}"
        )
        return Resolution(None, attempted)

    async def _quote_leg(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> Optional[RouteQuote]:
        routes = await self.aggregator.get_routes(input_mint, output_mint, amount, slippage_bps)
        return best_route(routes)
