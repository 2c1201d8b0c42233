import asyncio
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

class BackoffSchedule:
    """
    Declarative retry/poll schedule: one immediate attempt, then one attempt
    after each delay in `delays`, never past `deadline_s` (measured from the
    first attempt).
    """
    def __init__(self, delays: Sequence[float], deadline_s: Optional[float] = None):
        self.delays = [max(0.0, float(d)) for d in delays]
        self.deadline_s = deadline_s

    @property
    def max_attempts(self) -> int:
        return len(self.delays) + 1

    def __repr__(self):
        return f"BackoffSchedule(delays={self.delays}, deadline_s={self.deadline_s})"

class Attempt:
    def __init__(self, number: int, deadline: Optional[float]):
        self.number = number
        self._deadline = deadline

    @property
    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

async def backoff_attempts(schedule: BackoffSchedule, sleep=asyncio.sleep) -> AsyncIterator[Attempt]:
    started = time.monotonic()
    deadline = started + schedule.deadline_s if schedule.deadline_s is not None else None

    yield Attempt(0, deadline)
    for i, delay in enumerate(schedule.delays, start=1):
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            delay = min(delay, remaining)
        await sleep(delay)
        if deadline is not None and time.monotonic() >= deadline:
            return
        yield Attempt(i, deadline)

async def retry_call(
    fn: Callable[[], Awaitable[T]],
    schedule: BackoffSchedule,
    retry_on: Tuple[Type[BaseException], ...],
    label: str = "call",
) -> T:
    """Run `fn` until it succeeds or the schedule runs out; re-raises the last error."""
    last_error: Optional[BaseException] = None
    async for attempt in backoff_attempts(schedule):
        try:
            return await fn()
        except retry_on as e:
            last_error = e
            logger.warning(f"{label} failed (attempt {attempt.number + 1}/{schedule.max_attempts}): {e}")
    if last_error is None:
        raise asyncio.TimeoutError(f"{label}: no attempt made before deadline")
    raise last_error
