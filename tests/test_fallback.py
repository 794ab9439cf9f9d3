"""Tests for the ordered provider fallback helper."""

import pytest

from swapshield.errors import (
    ErrorCategory,
    NoRouteError,
    SubmissionUnconfirmedError,
    TransientNetworkError,
)
from swapshield.fallback import FallbackStep, StepSkipped, run_fallback_chain


def step(name, provider, result=None, error=None, log=None):
    async def attempt():
        if log is not None:
            log.append(name)
        if error is not None:
            raise error
        return result

    return FallbackStep(name=name, provider=provider, attempt=attempt)


class TestRunFallbackChain:
    """Tests for run_fallback_chain()."""

    @pytest.mark.asyncio
    async def test_first_success_wins(self):
        """Test the chain stops at the first successful step."""
        log = []
        outcome = await run_fallback_chain([
            step("aggregator", "jupiter", error=NoRouteError("no route"), log=log),
            step("venue:raydium", "raydium", result="tx-1", log=log),
            step("venue:pumpswap", "pumpswap", result="tx-2", log=log),
        ])

        assert outcome.succeeded
        assert outcome.value == "tx-1"
        assert outcome.step == "venue:raydium"
        assert outcome.provider == "raydium"
        assert log == ["aggregator", "venue:raydium"]
        assert [a.success for a in outcome.attempts] == [False, True]
        assert outcome.attempts[0].error_category == ErrorCategory.NO_ROUTE

    @pytest.mark.asyncio
    async def test_skipped_steps_recorded(self):
        """Test ineligible steps are recorded as skipped and the chain continues."""
        outcome = await run_fallback_chain([
            step("venue:raydium", "raydium", error=StepSkipped("eligibility unknown")),
            step("venue:pumpswap", "pumpswap", result="tx"),
        ])

        assert outcome.succeeded
        assert outcome.attempts[0].skipped
        assert outcome.last_error is None

    @pytest.mark.asyncio
    async def test_all_fail(self):
        """Test the last real error is reported when every step fails."""
        network = TransientNetworkError("timed out")
        outcome = await run_fallback_chain([
            step("aggregator", "jupiter", error=NoRouteError("no route")),
            step("venue:raydium", "raydium", error=network),
            step("venue:pumpswap", "pumpswap", error=StepSkipped("no pool")),
        ])

        assert not outcome.succeeded
        assert outcome.value is None
        assert outcome.last_error is network
        assert len(outcome.attempts) == 3

    @pytest.mark.asyncio
    async def test_terminal_error_stops_chain(self):
        """Test an ambiguous submission stops the cascade."""
        log = []
        outcome = await run_fallback_chain([
            step("aggregator", "jupiter", error=SubmissionUnconfirmedError("sig", 60), log=log),
            step("venue:raydium", "raydium", result="tx", log=log),
        ])

        assert not outcome.succeeded
        assert log == ["aggregator"]
        assert outcome.attempts[0].detail == {"tx_id": "sig"}

    @pytest.mark.asyncio
    async def test_attempt_detail_lists_stages(self):
        """Test routing stages tried are kept on the attempt."""
        outcome = await run_fallback_chain([
            step(
                "aggregator",
                "jupiter",
                error=NoRouteError("no route", attempted=["direct", "alternate_token"]),
            ),
        ])

        attempt = outcome.attempts[0]
        assert attempt.detail == {"attempted": ["direct", "alternate_token"]}
        assert attempt.to_dict()["error_category"] == "no_route"

    @pytest.mark.asyncio
    async def test_empty_chain(self):
        """Test an empty chain fails without attempts."""
        outcome = await run_fallback_chain([])

        assert not outcome.succeeded
        assert outcome.attempts == []
