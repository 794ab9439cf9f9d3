"""Error taxonomy shared by the pool, the rate limiter, routing and venues.

Every failure is classified into one of a handful of categories. The
category decides the recovery policy:

- transient_network: retried with backoff and endpoint rotation
- rate_limited: retried with exponential backoff, escalating to a cooldown
- no_route: not an infrastructure error, drives routing escalation
- authorization: long cool-down on the offending endpoint/provider
- precondition: fail fast, no retry, no network call
"""

import asyncio
from enum import Enum
from typing import Optional

import httpx


class ErrorCategory(str, Enum):
    """Failure classes with distinct recovery policies."""
    TRANSIENT_NETWORK = "transient_network"
    RATE_LIMITED = "rate_limited"
    NO_ROUTE = "no_route"
    AUTHORIZATION = "authorization"
    PRECONDITION = "precondition"
    UNKNOWN = "unknown"


RATE_LIMIT_MARKERS = ("429", "too many requests", "rate limit", "rate_limit", "ratelimit")
AUTHORIZATION_MARKERS = ("401", "403", "forbidden", "unauthorized", "invalid api key")
TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "fetch failed",
    "econnrefused",
    "econnreset",
    "enotfound",
    "connection reset",
    "connection refused",
    "502",
    "503",
    "504",
    "service unavailable",
    "bad gateway",
)


class SwapShieldError(Exception):
    """Base class for classified failures."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    # Terminal errors stop the provider fallback cascade
    terminal: bool = False

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(message)


class TransientNetworkError(SwapShieldError):
    """Timeout, connection reset or generic 5xx."""
    category = ErrorCategory.TRANSIENT_NETWORK


class RateLimitError(SwapShieldError):
    """HTTP 429 or a provider-specific rate-limit signal."""
    category = ErrorCategory.RATE_LIMITED

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, source)
        self.retry_after = retry_after


class RateLimitCooldownError(RateLimitError):
    """Raised without any network call while a token bucket is cooling down."""

    def __init__(self, bucket: str, reset_in_ms: float):
        super().__init__(
            f"Bucket '{bucket}' is cooling down for another {reset_in_ms:.0f}ms",
            source=bucket,
            retry_after=reset_in_ms / 1000,
        )
        self.bucket = bucket
        self.reset_in_ms = reset_in_ms


class AuthorizationError(SwapShieldError):
    """Invalid API key, forbidden endpoint or similar configuration error."""
    category = ErrorCategory.AUTHORIZATION


class NoRouteError(SwapShieldError):
    """Every routing stage and every fallback provider came up empty."""
    category = ErrorCategory.NO_ROUTE

    def __init__(self, message: str, attempted: Optional[list[str]] = None):
        super().__init__(message)
        self.attempted = attempted or []


class PreconditionError(SwapShieldError):
    """A local check failed before any network call was made."""
    category = ErrorCategory.PRECONDITION


class TradingDisabledError(PreconditionError):
    def __init__(self):
        super().__init__("Trading is disabled (TRADING_ENABLED=false)")


class InsufficientBalanceError(PreconditionError):
    def __init__(self, mint: str, required: int, available: int):
        self.mint = mint
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance of {mint}: need {required}, have {available}"
        )


class TransactionFailedError(SwapShieldError):
    """The transaction landed on-chain but its execution failed."""


class SubmissionUnconfirmedError(SwapShieldError):
    """A transaction was submitted but never confirmed within the deadline.

    The outcome is ambiguous, so no other provider may be tried afterwards.
    """
    category = ErrorCategory.TRANSIENT_NETWORK
    terminal = True

    def __init__(self, tx_id: str, timeout: float):
        self.tx_id = tx_id
        super().__init__(f"Transaction {tx_id} not confirmed within {timeout:.0f}s")


class PartialExecutionError(SwapShieldError):
    """A multi-leg route stopped after some legs had already executed.

    The wallet now holds an intermediate asset, so the original swap cannot
    be retried elsewhere.
    """
    terminal = True

    def __init__(self, message: str, tx_ids: list[str], held_mint: str):
        super().__init__(message)
        self.tx_ids = tx_ids
        self.held_mint = held_mint


class RetriesExhaustedError(SwapShieldError):
    """A retry loop gave up; carries the category of the last failure."""

    def __init__(self, message: str, last_error: BaseException, source: Optional[str] = None):
        super().__init__(message, source)
        self.last_error = last_error
        self.category = classify_error(last_error)


class RpcError(SwapShieldError):
    """JSON-RPC error payload returned by a node."""

    def __init__(self, message: str, code: Optional[int] = None, source: Optional[str] = None):
        super().__init__(message, source)
        self.code = code
        self.category = classify_message(message)


def classify_status(status_code: int) -> ErrorCategory:
    """Map an HTTP status code onto the taxonomy."""
    if status_code == 429:
        return ErrorCategory.RATE_LIMITED
    if status_code in (401, 403):
        return ErrorCategory.AUTHORIZATION
    if status_code >= 500:
        return ErrorCategory.TRANSIENT_NETWORK
    return ErrorCategory.UNKNOWN


def classify_message(message: str) -> ErrorCategory:
    """Best-effort classification of a free-form error message."""
    text = message.lower()
    if any(marker in text for marker in RATE_LIMIT_MARKERS):
        return ErrorCategory.RATE_LIMITED
    if any(marker in text for marker in AUTHORIZATION_MARKERS):
        return ErrorCategory.AUTHORIZATION
    if any(marker in text for marker in TRANSIENT_MARKERS):
        return ErrorCategory.TRANSIENT_NETWORK
    return ErrorCategory.UNKNOWN


def classify_error(error: BaseException) -> ErrorCategory:
    """Classify any exception raised by a collaborator."""
    if isinstance(error, SwapShieldError):
        return error.category
    if isinstance(error, httpx.HTTPStatusError):
        return classify_status(error.response.status_code)
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
        return ErrorCategory.TRANSIENT_NETWORK
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return ErrorCategory.TRANSIENT_NETWORK
    return classify_message(str(error))


def is_rate_limit_error(error: BaseException) -> bool:
    return classify_error(error) == ErrorCategory.RATE_LIMITED


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def raise_for_status(response: httpx.Response, source: str) -> None:
    """Convert a non-2xx response into a classified exception.

    Args:
        response: Response from an outbound call
        source: Human-readable name of the remote service (for messages)

    Raises:
        RateLimitError, AuthorizationError, TransientNetworkError or
        SwapShieldError depending on the status code
    """
    if response.is_success:
        return

    status = response.status_code
    detail = response.text[:200]
    message = f"{source} returned HTTP {status}: {detail}"

    category = classify_status(status)
    if category == ErrorCategory.RATE_LIMITED:
        raise RateLimitError(message, source=source, retry_after=_parse_retry_after(response))
    if category == ErrorCategory.AUTHORIZATION:
        raise AuthorizationError(message, source=source)
    if category == ErrorCategory.TRANSIENT_NETWORK:
        raise TransientNetworkError(message, source=source)
    raise SwapShieldError(message, source=source)
