"""Provider fallback orchestrator.

Top-level swap policy:

1. Preconditions: trading gate, max trade size (clamped), wallet balance.
   A failed precondition returns a failed result before any quote.
2. Tokens pinned to a venue skip the aggregator: the pinned venue is
   tried first, then the remaining venues.
3. Otherwise the aggregator path: resolve a route (with escalation) and
   execute it. A submission failure on the RPC side rotates the endpoint
   once and re-sends the same signed transaction.
4. Direct venues in priority order, each only if eligible, at
   venue-specific (higher) slippage.
5. One last aggregator attempt at maximal slippage.

Expected failures never raise out of swap()/sell(); they come back as a
SwapResult carrying the error category and the full attempt trail.
"""

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from swapshield.config import Settings
from swapshield.discovery import LiquidityDiscovery, VenueListing
from swapshield.errors import (
    ErrorCategory,
    InsufficientBalanceError,
    NoRouteError,
    PartialExecutionError,
    PreconditionError,
    SubmissionUnconfirmedError,
    TradingDisabledError,
    TransactionFailedError,
    classify_error,
)
from swapshield.fallback import Attempt, FallbackStep, StepSkipped, run_fallback_chain
from swapshield.ratelimit import AdaptiveRateLimiter
from swapshield.routing.aggregator import AggregatorClient
from swapshield.routing.base import RouteQuote
from swapshield.routing.resolver import RouteResolver
from swapshield.rpc.connection import Connection, submit_transaction
from swapshield.rpc.pool import EndpointPool
from swapshield.signing import Signer
from swapshield.venues.base import Eligibility, PoolCheck, VenueClient

logger = logging.getLogger(__name__)

DEFAULT_VENUE_SLIPPAGE_BPS = 1000


@dataclass
class Execution:
    """What a successful cascade step executed."""

    tx_ids: list[str]
    in_amount: int
    out_amount: int
    slippage_bps: int
    stage: Optional[str] = None


@dataclass
class SwapResult:
    """Terminal outcome of one swap() / sell() call."""

    success: bool
    input_mint: str
    output_mint: str
    in_amount: int
    provider: Optional[str] = None
    out_amount: Optional[int] = None
    tx_id: Optional[str] = None
    tx_ids: list[str] = field(default_factory=list)
    stage: Optional[str] = None
    slippage_bps: Optional[int] = None
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    attempts: list[Attempt] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    @property
    def attempted_providers(self) -> list[str]:
        return [a.provider for a in self.attempts if not a.skipped]

    def to_dict(self) -> dict:
        """Convert to dictionary for the trade ledger."""
        return {
            "success": self.success,
            "provider": self.provider,
            "input_mint": self.input_mint,
            "output_mint": self.output_mint,
            "in_amount": str(self.in_amount),
            "out_amount": str(self.out_amount) if self.out_amount is not None else None,
            "tx_id": self.tx_id,
            "tx_ids": self.tx_ids,
            "stage": self.stage,
            "slippage_bps": self.slippage_bps,
            "error": self.error,
            "error_category": self.error_category.value if self.error_category else None,
            "attempts": [a.to_dict() for a in self.attempts],
            "timestamp": self.timestamp,
        }


class SwapOrchestrator:
    """Runs swaps through the aggregator and direct venues with fallback."""

    def __init__(
        self,
        settings: Settings,
        pool: EndpointPool,
        connection: Connection,
        limiter: AdaptiveRateLimiter,
        aggregator: AggregatorClient,
        resolver: RouteResolver,
        signer: Signer,
        venues: Optional[list[VenueClient]] = None,
        discovery: Optional[LiquidityDiscovery] = None,
        on_result: Optional[Callable[[SwapResult], Any]] = None,
    ):
        """Initialize the orchestrator.

        Args:
            settings: Trading knobs (gate, size cap, slippage, venues)
            pool: RPC endpoint pool
            connection: Pool-backed connection (RetryingConnection)
            limiter: Aggregator rate limiter (for status reporting)
            aggregator: Aggregator client used to build transactions
            resolver: Route resolver over the same aggregator
            signer: Wallet signer
            venues: Direct venue clients
            discovery: Liquidity discovery used for venue eligibility
            on_result: Called with every SwapResult (sync or async)
        """
        self.settings = settings
        self.pool = pool
        self.connection = connection
        self.limiter = limiter
        self.aggregator = aggregator
        self.resolver = resolver
        self.signer = signer
        self.venues = {venue.name: venue for venue in venues or []}
        self.discovery = discovery
        self.on_result = on_result
        self._forced_venues: dict[str, str] = dict(settings.forced_venue_map)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def swap(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: Optional[int] = None,
    ) -> SwapResult:
        """Swap ``amount`` raw units of ``input_mint`` into ``output_mint``."""
        slippage = self.settings.default_slippage_bps if slippage_bps is None else slippage_bps

        try:
            amount = self._validate_amount(input_mint, amount)
            await self._check_balance(input_mint, amount)
        except PreconditionError as e:
            logger.warning(f"Swap rejected: {e}")
            return await self._finish(
                SwapResult(
                    success=False,
                    input_mint=input_mint,
                    output_mint=output_mint,
                    in_amount=amount,
                    error=str(e),
                    error_category=e.category,
                )
            )
        except Exception as e:
            logger.error(f"Balance check failed: {e}")
            return await self._finish(
                SwapResult(
                    success=False,
                    input_mint=input_mint,
                    output_mint=output_mint,
                    in_amount=amount,
                    error=f"Balance check failed: {e}",
                    error_category=classify_error(e),
                )
            )

        logger.info(
            f"Swap {amount} {input_mint[:6]}.. -> {output_mint[:6]}.. at {slippage} bps"
        )
        steps = await self.build_steps(input_mint, output_mint, amount, slippage)
        outcome = await run_fallback_chain(steps)

        if outcome.succeeded:
            execution: Execution = outcome.value
            result = SwapResult(
                success=True,
                input_mint=input_mint,
                output_mint=output_mint,
                in_amount=execution.in_amount,
                provider=outcome.provider,
                out_amount=execution.out_amount,
                tx_id=execution.tx_ids[-1],
                tx_ids=execution.tx_ids,
                stage=execution.stage,
                slippage_bps=execution.slippage_bps,
                attempts=outcome.attempts,
            )
            logger.info(f"Swap executed via {result.provider} ({result.tx_id})")
        else:
            error = outcome.last_error
            if error is None:
                error = NoRouteError(
                    "No provider could execute the swap",
                    attempted=[a.step for a in outcome.attempts],
                )
            tx_ids = list(getattr(error, "tx_ids", None) or [])
            tx_id = getattr(error, "tx_id", None)
            if tx_id and tx_id not in tx_ids:
                tx_ids.append(tx_id)
            result = SwapResult(
                success=False,
                input_mint=input_mint,
                output_mint=output_mint,
                in_amount=amount,
                tx_id=tx_ids[-1] if tx_ids else None,
                tx_ids=tx_ids,
                error=self._failure_message(error, outcome.attempts),
                error_category=classify_error(error),
                attempts=outcome.attempts,
            )
            logger.error(
                f"Swap failed after {len(outcome.attempts)} step(s): {result.error}"
            )

        return await self._finish(result)

    async def sell(
        self,
        token_mint: str,
        amount: Optional[int] = None,
        slippage_bps: Optional[int] = None,
    ) -> SwapResult:
        """Swap a token back into the base asset (whole balance if amount is None)."""
        if amount is None:
            try:
                amount = await self.connection.get_token_balance(self.signer.public_key, token_mint)
            except Exception as e:
                return await self._finish(
                    SwapResult(
                        success=False,
                        input_mint=token_mint,
                        output_mint=self.settings.base_mint,
                        in_amount=0,
                        error=f"Could not read token balance: {e}",
                        error_category=classify_error(e),
                    )
                )
        return await self.swap(token_mint, self.settings.base_mint, amount, slippage_bps)

    def force_venue(self, token_mint: str, venue: str) -> None:
        """Pin a token to one venue, bypassing the aggregator."""
        if venue not in self.venues:
            raise ValueError(f"Unknown venue '{venue}'")
        self._forced_venues[token_mint] = venue
        logger.info(f"Token {token_mint} pinned to {venue}")

    def get_status(self) -> dict:
        """Diagnostics: current endpoint, bucket fill levels, cooldowns."""
        return {
            "trading_enabled": self.settings.trading_enabled,
            "wallet": self.signer.public_key,
            "current_endpoint": self.pool.current.url,
            "rpc": self.pool.get_stats(),
            "rate_limiter": self.limiter.get_status(),
            "venues": self._venue_order(),
            "forced_venues": dict(self._forced_venues),
        }

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    def _validate_amount(self, input_mint: str, amount: int) -> int:
        if not self.settings.trading_enabled:
            raise TradingDisabledError()
        if amount <= 0:
            raise PreconditionError(f"Swap amount must be positive, got {amount}")

        if input_mint == self.settings.base_mint:
            cap = self.settings.max_trade_size_raw
            if amount > cap:
                logger.info(f"Clamping trade size {amount} to max {cap}")
                return cap
        return amount

    async def _check_balance(self, input_mint: str, amount: int) -> None:
        owner = self.signer.public_key
        if input_mint == self.settings.base_mint:
            available = await self.connection.get_balance(owner)
        else:
            available = await self.connection.get_token_balance(owner, input_mint)
        if available < amount:
            raise InsufficientBalanceError(input_mint, amount, available)

    # ------------------------------------------------------------------
    # Cascade
    # ------------------------------------------------------------------

    def _venue_order(self) -> list[str]:
        priority = [name for name in self.settings.venue_priority_list if name in self.venues]
        return priority + [name for name in self.venues if name not in priority]

    def _venue_slippage(self, venue: str, requested: int) -> int:
        configured = self.settings.venue_slippage_map.get(venue, DEFAULT_VENUE_SLIPPAGE_BPS)
        return max(configured, requested)

    async def build_steps(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> list[FallbackStep]:
        """The ordered cascade for one swap.

        A token pinned to a venue (by configuration, force_venue() or a
        deepest discovery listing on a pin-worthy venue) skips the aggregator.
        """
        token = output_mint if input_mint == self.settings.base_mint else input_mint
        listings = _ListingCache(self.discovery, token)
        steps: list[FallbackStep] = []

        def venue_step(name: str) -> FallbackStep:
            venue = self.venues[name]
            slippage = self._venue_slippage(name, slippage_bps)
            return FallbackStep(
                name=f"venue:{name}",
                provider=name,
                attempt=lambda: self._attempt_venue(
                    venue, token, input_mint, output_mint, amount, slippage, listings
                ),
            )

        forced = self._forced_venues.get(token)
        if not (forced and forced in self.venues):
            forced = await self._discovery_pin(listings)
        if forced and forced in self.venues:
            logger.info(f"Token {token[:6]}.. is pinned to {forced}, skipping aggregator")
            steps.append(venue_step(forced))
            steps.extend(venue_step(name) for name in self._venue_order() if name != forced)
            return steps

        steps.append(
            FallbackStep(
                name="aggregator",
                provider=self.aggregator.name,
                attempt=lambda: self._attempt_aggregator(
                    input_mint, output_mint, amount, slippage_bps
                ),
            )
        )
        steps.extend(venue_step(name) for name in self._venue_order())

        last_resort = max(slippage_bps, self.settings.last_resort_slippage_bps)
        steps.append(
            FallbackStep(
                name="aggregator_last_resort",
                provider=self.aggregator.name,
                attempt=lambda: self._attempt_aggregator(
                    input_mint, output_mint, amount, last_resort
                ),
            )
        )
        return steps

    async def _discovery_pin(self, listings: "_ListingCache") -> Optional[str]:
        """Venue holding the token's deepest pool, if it only trades there."""
        pinnable = self.settings.discovery_pinned_venue_list
        if not pinnable:
            return None
        found = await listings.get()
        if not found:
            return None
        deepest = found[0]
        if deepest.venue in pinnable and deepest.venue in self.venues:
            logger.info(
                f"Deepest pool for {listings.token[:6]}.. is on {deepest.venue} "
                f"(${deepest.liquidity_usd:,.0f})"
            )
            return deepest.venue
        return None

    async def _attempt_aggregator(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> Execution:
        resolution = await self.resolver.resolve(input_mint, output_mint, amount, slippage_bps)
        if not resolution.found:
            raise NoRouteError(
                f"Aggregator found no route at {slippage_bps} bps",
                attempted=[stage.value for stage in resolution.attempted_stages],
            )

        route = resolution.route
        tx_ids = await self._execute_route(route)
        return Execution(
            tx_ids=tx_ids,
            in_amount=route.in_amount,
            out_amount=route.out_amount,
            slippage_bps=route.slippage_bps,
            stage=route.stage.value,
        )

    async def _execute_route(self, route: RouteQuote) -> list[str]:
        """Build, sign and submit each leg of a route in order."""
        legs = route.legs or (route,)
        tx_ids: list[str] = []
        for index, leg in enumerate(legs):
            try:
                unsigned = await self.aggregator.build_swap_transaction(leg, self.signer.public_key)
                signed = self.signer.sign_transaction(unsigned)
                tx_ids.append(await self._submit(signed))
            except Exception as e:
                if tx_ids and not getattr(e, "terminal", False):
                    raise PartialExecutionError(
                        f"Leg {index + 1}/{len(legs)} failed after {len(tx_ids)} executed leg(s); "
                        f"wallet holds {leg.input_mint}: {e}",
                        tx_ids=tx_ids,
                        held_mint=leg.input_mint,
                    ) from e
                raise
        return tx_ids

    async def _submit(self, signed_tx: str) -> str:
        """Send a signed transaction and wait for confirmation.

        An RPC-side send failure has already rotated the pool once (inside
        the connection); the identical signed payload is sent once more on
        the new current endpoint. A send that may have landed is confirmed
        rather than abandoned.
        """
        tx_id = await submit_transaction(self.connection, signed_tx)
        await self._confirm(tx_id)
        return tx_id

    async def _confirm(self, tx_id: str) -> None:
        timeout = self.settings.rpc_confirm_timeout
        try:
            confirmed = await self.connection.confirm_transaction(tx_id, timeout)
        except TransactionFailedError:
            raise
        except Exception as e:
            logger.error(f"Could not confirm {tx_id}: {e}")
            raise SubmissionUnconfirmedError(tx_id, timeout) from e
        if not confirmed:
            raise SubmissionUnconfirmedError(tx_id, timeout)
        logger.info(f"Transaction confirmed: {tx_id}")

    async def _attempt_venue(
        self,
        venue: VenueClient,
        token: str,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        listings: "_ListingCache",
    ) -> Execution:
        check = await self.check_venue(venue, token, listings)
        if not check.eligible:
            raise StepSkipped(f"{venue.name} not eligible ({check.status.value}): {check.reason}")

        quote = await venue.get_quote(input_mint, output_mint, amount, slippage_bps)
        if quote is None:
            raise NoRouteError(f"{venue.name} returned no quote")

        unsigned = await venue.build_swap_transaction(quote, self.signer.public_key)
        tx_id = await venue.execute(unsigned, self.signer)
        await self._confirm(tx_id)
        return Execution(
            tx_ids=[tx_id],
            in_amount=quote.in_amount,
            out_amount=quote.out_amount,
            slippage_bps=slippage_bps,
        )

    async def check_venue(
        self,
        venue: VenueClient,
        token: str,
        listings: Optional["_ListingCache"] = None,
    ) -> PoolCheck:
        """Combine the venue's own pool check with discovery liquidity.

        Unknown stays unknown; a pool below the liquidity floor is a No.
        """
        check = await venue.check_pool(token)
        if check.status != Eligibility.YES:
            return check

        liquidity = check.liquidity_usd
        if liquidity is None:
            listing = await (listings or _ListingCache(self.discovery, token)).best(venue.name)
            if listing is None:
                return PoolCheck.unknown("pool liquidity not reported")
            liquidity = listing.liquidity_usd

        minimum = self.settings.min_venue_liquidity_usd
        if liquidity < minimum:
            return PoolCheck.absent(f"liquidity ${liquidity:,.0f} below ${minimum:,.0f}")
        return PoolCheck(Eligibility.YES, liquidity_usd=liquidity, pool_id=check.pool_id)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @staticmethod
    def _failure_message(error: BaseException, attempts: list[Attempt]) -> str:
        tried = ", ".join(a.step for a in attempts) or "none"
        return f"{error} (tried: {tried})"

    async def _finish(self, result: SwapResult) -> SwapResult:
        if self.on_result is not None:
            try:
                outcome = self.on_result(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Result callback failed: {type(e).__name__}: {e}")
        return result


class _ListingCache:
    """Liquidity discovery consulted at most once per swap."""

    def __init__(self, discovery: Optional[LiquidityDiscovery], token: str):
        self.discovery = discovery
        self.token = token
        self._listings: Optional[list[VenueListing]] = None
        self._loaded = False

    async def get(self) -> list[VenueListing]:
        if not self._loaded:
            self._loaded = True
            if self.discovery is not None:
                try:
                    self._listings = await self.discovery.get_listings(self.token)
                except Exception as e:
                    logger.warning(f"Liquidity discovery failed for {self.token}: {e}")
        return self._listings or []

    async def best(self, venue: str) -> Optional[VenueListing]:
        for listing in await self.get():
            if listing.venue == venue:
                return listing
        return None
