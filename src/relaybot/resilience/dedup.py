"""Inbound message de-duplication.

The chat platform delivers at least once, so the same message id can arrive
more than once. Each filter remembers an id for a fixed window and rejects
repeats inside it.
"""

import asyncio
import logging
from typing import Any, Callable, Optional, Set

from ..services.redis import RedisCrudService

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 6 * 60 * 60

Scheduler = Callable[[float, Callable[[], None]], Any]


def loop_scheduler(delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    """Schedule ``callback`` on the running event loop after ``delay`` seconds."""
    return asyncio.get_running_loop().call_later(delay, callback)


class DedupFilter:
    """In-memory window of recently seen message ids."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self._ttl = ttl_seconds
        self._schedule = scheduler or loop_scheduler
        self._seen: Set[str] = set()

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    async def should_process_once(self, message_id: Optional[str]) -> bool:
        """Return True the first time an id is seen within the window.

        A missing id cannot be de-duplicated and is always processed.
        """
        if message_id is None:
            return True
        if message_id in self._seen:
            logger.info("Dropping duplicate delivery of message %s", message_id)
            return False
        self._seen.add(message_id)
        self._schedule(self._ttl, lambda: self._seen.discard(message_id))
        return True


class RedisDedupFilter:
    """Dedup window kept in Redis so it survives process restarts.

    Falls back to an in-memory window while Redis is unreachable.
    """

    def __init__(
        self,
        redis_crud: RedisCrudService,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        key_prefix: str = "dedup:",
        fallback: Optional[DedupFilter] = None,
    ) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds
        self._prefix = key_prefix
        self._fallback = fallback or DedupFilter(ttl_seconds)

    async def should_process_once(self, message_id: Optional[str]) -> bool:
        if message_id is None:
            return True
        written = await self._redis.set_if_absent(
            f"{self._prefix}{message_id}", "1", ttl_seconds=int(self._ttl)
        )
        if written is None:
            logger.debug("Redis dedup unavailable, using in-memory window")
            return await self._fallback.should_process_once(message_id)
        if not written:
            logger.info("Dropping duplicate delivery of message %s", message_id)
        return written
