"""Ordered provider fallback.

A cascade is a list of FallbackStep(name, provider, attempt) consumed by
run_fallback_chain(). Steps run strictly in list order until one returns
a value. Every step that ran is recorded as an Attempt, including ones
that were skipped as ineligible, so the caller always knows which path
executed and which were tried. Errors flagged terminal stop the cascade.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from swapshield.errors import ErrorCategory, NoRouteError, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StepSkipped(NoRouteError):
    """A step declined to run (e.g. venue not eligible for the token)."""


@dataclass
class Attempt:
    """Record of one step of a cascade."""

    step: str
    provider: str
    success: bool
    skipped: bool = False
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    detail: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "provider": self.provider,
            "success": self.success,
            "skipped": self.skipped,
            "error": self.error,
            "error_category": self.error_category.value if self.error_category else None,
            "detail": self.detail,
        }


@dataclass
class FallbackStep(Generic[T]):
    """One named entry of a cascade."""

    name: str
    provider: str
    attempt: Callable[[], Awaitable[T]]


@dataclass
class FallbackOutcome(Generic[T]):
    """Result of running a cascade."""

    value: Optional[T]
    attempts: list[Attempt]
    step: Optional[str] = None
    provider: Optional[str] = None
    last_error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.step is not None


def _error_detail(error: BaseException) -> dict:
    detail = {}
    attempted = getattr(error, "attempted", None)
    if attempted:
        detail["attempted"] = list(attempted)
    tx_id = getattr(error, "tx_id", None)
    if tx_id:
        detail["tx_id"] = tx_id
    tx_ids = getattr(error, "tx_ids", None)
    if tx_ids:
        detail["tx_ids"] = list(tx_ids)
    return detail


async def run_fallback_chain(steps: list[FallbackStep[T]]) -> FallbackOutcome[T]:
    """Run ``steps`` in order until one succeeds or a terminal error occurs."""
    attempts: list[Attempt] = []
    last_error: Optional[BaseException] = None

    for step in steps:
        logger.info(f"Fallback step '{step.name}' ({step.provider})")
        try:
            value = await step.attempt()
        except Exception as e:
            category = classify_error(e)
            skipped = isinstance(e, StepSkipped)
            attempts.append(
                Attempt(
                    step=step.name,
                    provider=step.provider,
                    success=False,
                    skipped=skipped,
                    error=str(e),
                    error_category=category,
                    detail=_error_detail(e),
                )
            )
            if skipped:
                logger.info(f"Step '{step.name}' skipped: {e}")
                continue

            last_error = e
            if getattr(e, "terminal", False):
                logger.error(f"Step '{step.name}' failed terminally, stopping cascade: {e}")
                break
            logger.warning(f"Step '{step.name}' failed ({category.value}): {e}")
            continue

        attempts.append(Attempt(step=step.name, provider=step.provider, success=True))
        logger.info(f"Step '{step.name}' succeeded via {step.provider}")
        return FallbackOutcome(
            value=value,
            attempts=attempts,
            step=step.name,
            provider=step.provider,
        )

    return FallbackOutcome(value=None, attempts=attempts, last_error=last_error)
