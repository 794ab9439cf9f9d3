"""Abstract interface for direct DEX venue clients.

A venue is tried only after the aggregator path is exhausted (or when a
token is pinned to it). Each venue reports whether it has a pool for a
token through PoolCheck; an Unknown answer means "do not attempt".
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

import httpx

from swapshield.errors import TransientNetworkError
from swapshield.rpc.connection import submit_transaction

if TYPE_CHECKING:
    from swapshield.rpc.connection import Connection
    from swapshield.signing import Signer

logger = logging.getLogger(__name__)


class Eligibility(str, Enum):
    """Whether a venue can be used for a token."""
    YES = "yes"
    NO = "no"
    UNKNOWN = "unknown"


@dataclass
class PoolCheck:
    """Pool existence and liquidity as reported for one venue."""

    status: Eligibility
    liquidity_usd: Optional[float] = None
    pool_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def eligible(self) -> bool:
        return self.status == Eligibility.YES

    @classmethod
    def unknown(cls, reason: str) -> "PoolCheck":
        return cls(Eligibility.UNKNOWN, reason=reason)

    @classmethod
    def absent(cls, reason: str) -> "PoolCheck":
        return cls(Eligibility.NO, reason=reason)


@dataclass
class VenueQuote:
    """A quote from a single venue."""

    venue: str
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact_pct: float
    slippage_bps: int
    pool_id: Optional[str] = None
    raw: dict = field(default_factory=dict, repr=False)


class VenueClient(ABC):
    """Base class for direct venue clients."""

    def __init__(
        self,
        connection: Optional["Connection"] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the venue client.

        Args:
            connection: RPC connection used to submit signed transactions
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.connection = connection
        self.timeout = timeout
        self._transport = transport

    @property
    @abstractmethod
    def name(self) -> str:
        """Venue identifier, e.g. "raydium"."""
        pass

    @abstractmethod
    async def check_pool(self, token_mint: str) -> PoolCheck:
        """Report pool existence and liquidity for ``token_mint``.

        Must not raise: failures to find out become Eligibility.UNKNOWN.
        """
        pass

    @abstractmethod
    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> Optional[VenueQuote]:
        """Get a quote, or None if the venue cannot fill the trade."""
        pass

    @abstractmethod
    async def build_swap_transaction(self, quote: VenueQuote, user_public_key: str) -> str:
        """Build an unsigned (base64) swap transaction for ``quote``."""
        pass

    async def execute(self, transaction: str, signer: "Signer") -> str:
        """Sign and submit a transaction built by this venue.

        A send whose outcome is unknown still returns the signature; the
        caller confirms it before trying another venue.

        Returns:
            Transaction signature
        """
        if self.connection is None:
            raise RuntimeError(f"{self.name} has no RPC connection to submit with")
        signed = signer.sign_transaction(transaction)
        signature = await submit_transaction(self.connection, signed)
        logger.info(f"[{self.name}] Submitted swap transaction {signature}")
        return signature

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{self.name} request timed out: {url}", source=self.name) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(
                f"{self.name} request failed: {type(e).__name__}: {e}", source=self.name
            ) from e

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name})"
