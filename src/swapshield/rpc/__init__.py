"""Blockchain RPC access: endpoint pool, health monitoring and connections."""

from swapshield.rpc.connection import (
    Connection,
    HttpConnection,
    RetryingConnection,
    is_ambiguous_send_error,
    submit_transaction,
)
from swapshield.rpc.pool import EndpointPool, EndpointState, RotationStrategy, determine_tier

__all__ = [
    "Connection",
    "HttpConnection",
    "RetryingConnection",
    "is_ambiguous_send_error",
    "submit_transaction",
    "EndpointPool",
    "EndpointState",
    "RotationStrategy",
    "determine_tier",
]
