"""Direct DEX venue clients used as fallbacks behind the aggregator."""

from swapshield.venues.base import Eligibility, PoolCheck, VenueClient, VenueQuote
from swapshield.venues.pumpswap import PumpSwapClient
from swapshield.venues.raydium import RaydiumClient

__all__ = [
    "Eligibility",
    "PoolCheck",
    "VenueClient",
    "VenueQuote",
    "PumpSwapClient",
    "RaydiumClient",
]
