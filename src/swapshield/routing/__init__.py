"""Routing: aggregator quotes, synthetic multi-hop routes and stage escalation."""

from swapshield.routing.aggregator import AggregatorClient, JupiterClient
from swapshield.routing.base import Hop, RouteQuote, RouteStage, best_route, synthesize_route
from swapshield.routing.resolver import Resolution, RouteResolver

__all__ = [
    "AggregatorClient",
    "JupiterClient",
    "Hop",
    "RouteQuote",
    "RouteStage",
    "best_route",
    "synthesize_route",
    "Resolution",
    "RouteResolver",
]
