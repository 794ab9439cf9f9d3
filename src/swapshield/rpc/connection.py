"""Narrow JSON-RPC connection interface used by the swap path.

Only the handful of Solana RPC methods the resilience layer needs are
exposed. HttpConnection talks to one endpoint; RetryingConnection wraps
the endpoint pool and always dispatches to whichever endpoint is current
at the moment of the call.
"""

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, TypeVar

import httpx

from swapshield.errors import (
    AuthorizationError,
    ErrorCategory,
    RateLimitError,
    RetriesExhaustedError,
    RpcError,
    SwapShieldError,
    TransactionFailedError,
    TransientNetworkError,
    classify_error,
    raise_for_status,
)
from swapshield.signing import transaction_signature

if TYPE_CHECKING:
    from swapshield.rpc.pool import EndpointPool

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Node-side error codes that mean "try another node"
TRANSIENT_RPC_CODES = {-32004, -32005, -32007, -32014, -32603}

RETRYABLE_CATEGORIES = {ErrorCategory.TRANSIENT_NETWORK, ErrorCategory.RATE_LIMITED}

# Failures that are the endpoint's fault (as opposed to a bad transaction)
ENDPOINT_FAULT_CATEGORIES = RETRYABLE_CATEGORIES | {ErrorCategory.AUTHORIZATION}


class Connection(ABC):
    """Blockchain RPC methods consumed by the swap path."""

    url: str

    @abstractmethod
    async def get_latest_blockhash(self, commitment: str = "finalized") -> dict:
        """Fetch the latest block reference.

        Also used as the lightweight health probe.

        Returns:
            Dict with ``blockhash`` and ``lastValidBlockHeight``
        """
        pass

    @abstractmethod
    async def get_balance(self, pubkey: str) -> int:
        """Native balance of an account in lamports."""
        pass

    @abstractmethod
    async def get_token_accounts_by_owner(self, owner: str, mint: str) -> list[dict]:
        """Parsed SPL token accounts of ``owner`` for ``mint``."""
        pass

    @abstractmethod
    async def send_raw_transaction(self, signed_tx_base64: str) -> str:
        """Submit a signed transaction; returns its signature."""
        pass

    @abstractmethod
    async def confirm_transaction(self, signature: str, timeout: float) -> bool:
        """Wait for a signature to reach the configured commitment.

        Returns:
            True if confirmed, False if the deadline passed first

        Raises:
            TransactionFailedError: the transaction landed with an error
        """
        pass

    async def get_token_balance(self, owner: str, mint: str) -> int:
        """Sum of raw token amounts held by ``owner`` for ``mint``."""
        accounts = await self.get_token_accounts_by_owner(owner, mint)
        total = 0
        for account in accounts:
            info = (
                account.get("account", {})
                .get("data", {})
                .get("parsed", {})
                .get("info", {})
            )
            total += int(info.get("tokenAmount", {}).get("amount", 0))
        return total

    async def aclose(self) -> None:
        pass


def rpc_error_from_payload(error: Any, source: str) -> Exception:
    """Turn a JSON-RPC ``error`` object into a classified exception."""
    if isinstance(error, dict):
        code = error.get("code")
        message = str(error.get("message", error))
    else:
        code = None
        message = str(error)

    if code == 429:
        return RateLimitError(f"{source}: {message}", source=source)
    if code in (401, 403):
        return AuthorizationError(f"{source}: {message}", source=source)
    if code in TRANSIENT_RPC_CODES:
        return TransientNetworkError(f"{source}: {message}", source=source)
    return RpcError(f"{source}: {message}", code=code, source=source)


class HttpConnection(Connection):
    """JSON-RPC over HTTPS to a single endpoint."""

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        commitment: str = "confirmed",
        client: Optional[httpx.AsyncClient] = None,
        poll_interval: float = 1.0,
    ):
        self.url = url
        self.timeout = timeout
        self.commitment = commitment
        self.poll_interval = poll_interval
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._request_id = 0

    async def _rpc(self, method: str, params: Optional[list] = None) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} timed out on {self.url}", source=self.url) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(
                f"{method} failed on {self.url}: {type(e).__name__}: {e}", source=self.url
            ) from e

        raise_for_status(response, source=self.url)

        data = response.json()
        if data.get("error"):
            raise rpc_error_from_payload(data["error"], self.url)
        return data.get("result")

    async def get_latest_blockhash(self, commitment: str = "finalized") -> dict:
        result = await self._rpc("getLatestBlockhash", [{"commitment": commitment}])
        return result.get("value", {}) if result else {}

    async def get_balance(self, pubkey: str) -> int:
        result = await self._rpc("getBalance", [pubkey, {"commitment": self.commitment}])
        return int(result.get("value", 0)) if result else 0

    async def get_token_accounts_by_owner(self, owner: str, mint: str) -> list[dict]:
        result = await self._rpc(
            "getTokenAccountsByOwner",
            [
                owner,
                {"mint": mint},
                {"encoding": "jsonParsed", "commitment": self.commitment},
            ],
        )
        return result.get("value", []) if result else []

    async def send_raw_transaction(self, signed_tx_base64: str) -> str:
        return await self._rpc(
            "sendTransaction",
            [
                signed_tx_base64,
                {
                    "encoding": "base64",
                    "skipPreflight": False,
                    "preflightCommitment": self.commitment,
                    "maxRetries": 0,
                },
            ],
        )

    async def confirm_transaction(self, signature: str, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        wanted = ("confirmed", "finalized") if self.commitment != "finalized" else ("finalized",)

        while True:
            result = await self._rpc(
                "getSignatureStatuses",
                [[signature], {"searchTransactionHistory": False}],
            )
            statuses = (result or {}).get("value") or [None]
            status = statuses[0]
            if status:
                if status.get("err"):
                    raise TransactionFailedError(
                        f"Transaction {signature} failed: {status['err']}", source=self.url
                    )
                if status.get("confirmationStatus") in wanted:
                    return True

            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(self.poll_interval)

    async def aclose(self) -> None:
        await self._client.aclose()

    def __repr__(self) -> str:
        return f"HttpConnection({self.url})"


class RetryingConnection(Connection):
    """Connection that always uses the pool's current endpoint.

    Idempotent reads are retried with exponential backoff plus jitter,
    rotating the endpoint between attempts. Submission is never retried
    here: a failed send is recorded on the pool (which rotates once) and
    re-raised so the caller decides whether to resend.
    """

    def __init__(
        self,
        pool: "EndpointPool",
        max_retries: int = 5,
        initial_backoff: float = 0.5,
        max_backoff: float = 10.0,
        jitter: float = 0.3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.pool = pool
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.jitter = jitter
        self._sleep = sleep

    @property
    def url(self) -> str:
        return self.pool.current.url

    async def _call(self, name: str, operation: Callable[[Connection], Awaitable[T]]) -> T:
        delay = self.initial_backoff
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_retries + 1):
            connection = self.pool.select_current()
            started = time.perf_counter()
            try:
                result = await operation(connection)
            except Exception as e:
                category = classify_error(e)
                if category not in ENDPOINT_FAULT_CATEGORIES:
                    raise
                await self.pool.record_failure(e, url=connection.url)
                if category not in RETRYABLE_CATEGORIES:
                    raise
                last_error = e
                if attempt == self.max_retries:
                    break
                wait = min(delay, self.max_backoff) * (1 + random.random() * self.jitter)
                logger.warning(
                    f"{name} failed on {connection.url} ({category.value}): {e}. "
                    f"Retry {attempt + 1}/{self.max_retries} in {wait:.2f}s"
                )
                await self._sleep(wait)
                delay = min(delay * 2, self.max_backoff)
                continue

            self.pool.record_success((time.perf_counter() - started) * 1000, url=connection.url)
            return result

        raise RetriesExhaustedError(
            f"{name} failed after {self.max_retries + 1} attempts: {last_error}",
            last_error=last_error,
        )

    async def get_latest_blockhash(self, commitment: str = "finalized") -> dict:
        return await self._call("getLatestBlockhash", lambda c: c.get_latest_blockhash(commitment))

    async def get_balance(self, pubkey: str) -> int:
        return await self._call("getBalance", lambda c: c.get_balance(pubkey))

    async def get_token_accounts_by_owner(self, owner: str, mint: str) -> list[dict]:
        return await self._call(
            "getTokenAccountsByOwner", lambda c: c.get_token_accounts_by_owner(owner, mint)
        )

    async def confirm_transaction(self, signature: str, timeout: float) -> bool:
        return await self._call(
            "confirmTransaction", lambda c: c.confirm_transaction(signature, timeout)
        )

    async def send_raw_transaction(self, signed_tx_base64: str) -> str:
        connection = self.pool.select_current()
        started = time.perf_counter()
        try:
            signature = await connection.send_raw_transaction(signed_tx_base64)
        except Exception as e:
            logger.warning(f"sendTransaction failed on {connection.url}: {e}")
            if classify_error(e) in ENDPOINT_FAULT_CATEGORIES:
                await self.pool.record_failure(e, url=connection.url)
            raise
        self.pool.record_success((time.perf_counter() - started) * 1000, url=connection.url)
        return signature


def is_ambiguous_send_error(error: BaseException) -> bool:
    """Whether a failed send may still have reached the cluster.

    Timeouts and dropped connections say nothing about the transaction.
    A classified node reply (preflight failure, rate limit, auth) means it
    was not accepted.
    """
    category = classify_error(error)
    if category == ErrorCategory.TRANSIENT_NETWORK:
        return True
    return category == ErrorCategory.UNKNOWN and not isinstance(error, SwapShieldError)


async def submit_transaction(connection: Connection, signed_tx_base64: str) -> str:
    """Send a signed transaction, resending once after an endpoint fault.

    The signature is derived from the payload before anything is sent, so
    it is known even when no endpoint answers. If any send attempt ended
    ambiguously the signature is returned anyway and the caller must
    confirm it before trying anything else.

    Returns:
        Transaction signature

    Raises:
        Exception: the send definitively failed on every attempt
    """
    tx_id = transaction_signature(signed_tx_base64)
    ambiguous = False
    for attempt in range(2):
        try:
            await connection.send_raw_transaction(signed_tx_base64)
            return tx_id
        except Exception as e:
            ambiguous = ambiguous or is_ambiguous_send_error(e)
            category = classify_error(e)
            if attempt == 0 and category in ENDPOINT_FAULT_CATEGORIES:
                logger.warning(
                    f"Submission of {tx_id} failed ({category.value}), resending on {connection.url}"
                )
                continue
            if ambiguous:
                logger.warning(f"Submission of {tx_id} outcome unknown ({e}), awaiting confirmation")
                return tx_id
            raise
    return tx_id
