"""Route and quote types shared by the aggregator client and the resolver."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

MAX_SLIPPAGE_BPS = 10_000


class RouteStage(str, Enum):
    """Escalation stages of a single route resolution, in order."""
    DIRECT = "direct"
    ALTERNATE_TOKEN = "alternate_token"
    TWO_HOP = "two_hop"
    THREE_HOP = "three_hop"


@dataclass(frozen=True)
class Hop:
    """One trade leg against a specific liquidity venue."""

    venue: str  # e.g., "Raydium", "Orca", "Meteora DLMM"
    market_id: str
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact_pct: float = 0.0


@dataclass(frozen=True)
class RouteQuote:
    """A proposed trade path with its expected output.

    Amounts are raw integer units of the respective mints. Routes are
    immutable and always requested fresh for each resolution.
    """

    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    hops: tuple[Hop, ...]
    price_impact_pct: float
    slippage_bps: int
    stage: RouteStage = RouteStage.DIRECT
    legs: tuple["RouteQuote", ...] = ()
    raw: dict = field(default_factory=dict, compare=False, hash=False, repr=False)

    @property
    def is_synthetic(self) -> bool:
        """Built from independently quoted legs rather than one aggregator plan."""
        return bool(self.legs)

    @property
    def venues(self) -> list[str]:
        return [hop.venue for hop in self.hops]

    @property
    def intermediates(self) -> list[str]:
        """Mints the route passes through between input and output."""
        if self.legs:
            return [leg.output_mint for leg in self.legs[:-1]]
        return [hop.output_mint for hop in self.hops[:-1]]

    def to_dict(self) -> dict:
        """Convert to dictionary for logging and diagnostics."""
        return {
            "input_mint": self.input_mint,
            "output_mint": self.output_mint,
            "in_amount": str(self.in_amount),
            "out_amount": str(self.out_amount),
            "stage": self.stage.value,
            "venues": self.venues,
            "intermediates": self.intermediates,
            "price_impact_pct": self.price_impact_pct,
            "slippage_bps": self.slippage_bps,
            "synthetic": self.is_synthetic,
        }


def synthesize_route(legs: Sequence[RouteQuote], stage: RouteStage) -> RouteQuote:
    """Chain independently quoted legs into one multi-hop route.

    Hops are concatenated in order. Price impact is the plain sum of the
    per-leg percentages, not the compounded value. The output amount is
    the final leg's.

    Raises:
        ValueError: fewer than two legs, or legs that do not chain
    """
    if len(legs) < 2:
        raise ValueError("A synthetic route needs at least two legs")
    for first, second in zip(legs, legs[1:]):
        if first.output_mint != second.input_mint:
            raise ValueError(
                f"Legs do not chain: {first.output_mint} != {second.input_mint}"
            )

    return RouteQuote(
        input_mint=legs[0].input_mint,
        output_mint=legs[-1].output_mint,
        in_amount=legs[0].in_amount,
        out_amount=legs[-1].out_amount,
        hops=tuple(hop for leg in legs for hop in leg.hops),
        price_impact_pct=sum(leg.price_impact_pct for leg in legs),
        slippage_bps=max(leg.slippage_bps for leg in legs),
        stage=stage,
        legs=tuple(legs),
    )


def best_route(routes: Sequence[RouteQuote]) -> Optional[RouteQuote]:
    """Highest output amount wins."""
    if not routes:
        return None
    return max(routes, key=lambda r: r.out_amount)
