"""Admission queue that paces outbound backend calls.

Calls start strictly in submission order, at most ``concurrency`` run at a
time, and two successive starts are always at least ``min_gap`` seconds apart,
however fast the backend answers.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional, Set, TypeVar

from ..errors import CallTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PendingCall:
    """A queued backend invocation and the future its caller awaits."""

    task: Callable[[], Awaitable[Any]]
    future: "asyncio.Future[Any]"


class AdmissionQueue:
    """FIFO limiter with a start-to-start spacing and a concurrency ceiling."""

    def __init__(
        self,
        min_gap: float,
        concurrency: int = 1,
        call_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if min_gap < 0:
            raise ValueError("min_gap must be >= 0")
        self._min_gap = min_gap
        self._concurrency = concurrency
        self._call_timeout = call_timeout
        self._clock = clock
        self._sleep = sleep

        self._queue: Deque[PendingCall] = deque()
        self._active = 0
        self._last_start: Optional[float] = None
        self._slot_freed = asyncio.Event()
        self._dispatcher: Optional["asyncio.Task[None]"] = None
        self._running: Set["asyncio.Task[None]"] = set()

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def active(self) -> int:
        return self._active

    async def submit(self, task: Callable[[], Awaitable[T]]) -> T:
        """Queue ``task`` and wait for its result (or its exception)."""
        future: "asyncio.Future[T]" = asyncio.get_running_loop().create_future()
        self._queue.append(PendingCall(task=task, future=future))
        self._kick()
        return await future

    def _kick(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.ensure_future(self._dispatch())

    async def _dispatch(self) -> None:
        while self._queue:
            if self._active >= self._concurrency:
                self._slot_freed.clear()
                await self._slot_freed.wait()
                continue

            if self._last_start is not None:
                delay = self._last_start + self._min_gap - self._clock()
                if delay > 0:
                    logger.debug("Admission queue waiting %.3fs before next call", delay)
                    await self._sleep(delay)

            call = self._queue.popleft()
            if call.future.done():
                # Caller stopped waiting while the call was queued.
                continue

            self._active += 1
            self._last_start = self._clock()
            runner = asyncio.ensure_future(self._run(call))
            self._running.add(runner)
            runner.add_done_callback(self._running.discard)

    async def _run(self, call: PendingCall) -> None:
        try:
            if self._call_timeout is None:
                result = await call.task()
            else:
                try:
                    result = await asyncio.wait_for(call.task(), self._call_timeout)
                except asyncio.TimeoutError as exc:
                    raise CallTimeoutError(
                        f"backend call exceeded {self._call_timeout:g}s deadline"
                    ) from exc
        except Exception as exc:
            if not call.future.done():
                call.future.set_exception(exc)
        else:
            if not call.future.done():
                call.future.set_result(result)
        finally:
            self._active -= 1
            self._slot_freed.set()
            if self._queue:
                self._kick()
