"""SwapShield: resilient swap execution over flaky RPC nodes and rate-limited aggregators."""

__version__ = "0.1.0"
