import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..errors import ErrorKind, ThrottledError, classify_error
from ..models import ModelRoster
from .limiter import AdmissionQueue

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float, ceiling: float) -> float:
    """Exponential backoff for the given 1-based attempt, capped at ``ceiling``."""
    return min(ceiling, base * (2 ** (attempt - 1)))


class RetryController:
    """Runs backend calls through the admission queue, retrying on throttling.

    Every THROTTLED failure moves the model roster one step forward (until
    the last model) and hands the new index to ``on_escalate`` before the
    next attempt, so sessions are rebound before the task is replayed. Any
    other failure propagates on the first attempt.
    """

    def __init__(
        self,
        queue: AdmissionQueue,
        roster: ModelRoster,
        *,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 16.0,
        on_escalate: Optional[Callable[[int], Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._queue = queue
        self._roster = roster
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._on_escalate = on_escalate
        self._sleep = sleep

    @property
    def roster(self) -> ModelRoster:
        return self._roster

    async def call_with_retry(
        self,
        task: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
    ) -> T:
        """Run ``task`` until it succeeds, fails with a non-throttling error,
        or has been throttled ``max_attempts`` times.

        ``task`` is called afresh on every attempt and must read the current
        session binding rather than capture a handle up front.

        Raises:
            ThrottledError: throttled on every attempt.
            Exception: the first non-throttling error, unchanged.
        """
        limit = self._max_attempts if max_attempts is None else max_attempts
        if limit < 1:
            raise ValueError("max_attempts must be >= 1")
        attempt = 0
        while True:
            try:
                return await self._queue.submit(task)
            except Exception as exc:
                if classify_error(exc) is not ErrorKind.THROTTLED:
                    raise
                attempt += 1
                logger.warning(
                    "Backend throttled on %s (attempt %d/%d): %s",
                    self._roster.current,
                    attempt,
                    limit,
                    exc,
                )
                self._escalate()
                if attempt >= limit:
                    logger.error("Giving up after %d throttled attempts", attempt)
                    if isinstance(exc, ThrottledError):
                        raise
                    raise ThrottledError(str(exc), model=self._roster.current) from exc

            delay = backoff_delay(attempt, self._backoff_base, self._backoff_max)
            logger.info("Retrying in %.2fs", delay)
            await self._sleep(delay)

    def _escalate(self) -> None:
        previous = self._roster.current
        if not self._roster.advance():
            return
        logger.warning(
            "Escalating backend model %s -> %s", previous, self._roster.current
        )
        if self._on_escalate is not None:
            self._on_escalate(self._roster.index)
