import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .interfaces import PollBudget

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollTimeout(Exception):
    """Raised when the attempt budget runs out before the predicate holds."""

    def __init__(self, attempts: int, last: object = None) -> None:
        self.attempts = attempts
        self.last = last
        super().__init__(f"condition not met after {attempts} attempts")


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    *,
    budget: PollBudget,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "poll",
) -> T:
    """Call ``fetch`` every ``budget.interval`` seconds until ``predicate`` holds.

    The interval is waited before each attempt. Exceptions raised by ``fetch``
    or ``predicate`` end the loop immediately, which is how callers abort on a
    terminal state. Returns the first value accepted by ``predicate``.
    """
    last: T | None = None
    for attempt in range(1, budget.max_attempts + 1):
        await sleep(budget.interval)
        last = await fetch()
        if predicate(last):
            logger.debug("%s satisfied on attempt %d/%d", label, attempt, budget.max_attempts)
            return last
        logger.debug("%s attempt %d/%d not ready", label, attempt, budget.max_attempts)
    raise PollTimeout(budget.max_attempts, last)
