import asyncio
import logging
from typing import Dict, Optional, Protocol, Union

from ..backend import get_chat_backend
from ..errors import BackendError, ThrottledError
from ..models import InboundMessage, ModelRoster, Role, Session, Turn
from ..resilience import AdmissionQueue, DedupFilter, RedisDedupFilter, RetryController
from ..services.redis import RedisCrudService
from ..services.sessions import SessionStore
from ..settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_SINK = object()


class MessageSink(Protocol):
    """Where replies go. Implementations log their own delivery failures."""

    async def send_message(self, conversation_id: str, text: str) -> None: ...

    async def send_typing(self, conversation_id: str) -> None: ...


class RelayService:
    """Relays inbound chat messages to the backend and replies with the result."""

    def __init__(
        self,
        store: SessionStore,
        controller: RetryController,
        dedup: Union[DedupFilter, RedisDedupFilter],
        sink: Optional[MessageSink] = None,
        busy_reply: str = "I'm getting too many requests right now. Please try again in a minute.",
        error_reply: str = "Sorry, I ran into an error. Please try again later.",
    ) -> None:
        self.store = store
        self.controller = controller
        self._dedup = dedup
        self._sink = sink
        self._busy_reply = busy_reply
        self._error_reply = error_reply
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        return self._locks.setdefault(conversation_id, asyncio.Lock())

    async def handle_message(
        self,
        message: InboundMessage,
        sink: Union[MessageSink, None, object] = DEFAULT_SINK,
    ) -> Optional[str]:
        """Process one inbound message end to end.

        ``sink`` defaults to the service's own sink; pass None to only get the
        reply back without sending anything outbound.

        Returns the reply text, or None when the message was skipped (empty, a
        /command, or a duplicate delivery).
        """
        text = (message.text or "").strip()
        if not text or text.startswith("/"):
            return None
        if not await self._dedup.should_process_once(message.message_id):
            return None

        if sink is DEFAULT_SINK:
            sink = self._sink
        session = self.store.get_or_create(message.conversation_id)

        # One exchange at a time per conversation keeps the history ordered.
        async with self._lock_for(message.conversation_id):
            if sink is not None:
                await sink.send_typing(message.conversation_id)
            reply = await self.generate_reply(session, text)

        if sink is not None:
            await sink.send_message(message.conversation_id, reply)
        return reply

    async def generate_reply(self, session: Session, text: str) -> str:
        """Append the user turn, call the backend and append the reply.

        Failures are turned into a user-facing text; the history then ends
        with the unanswered user turn.
        """
        turn = Turn(Role.USER, text)
        session.history.append(turn)
        session.pending = turn
        try:
            reply = await self.controller.call_with_retry(
                lambda: session.handle.send(self.store.replay_history(session), text)
            )
        except ThrottledError as e:
            logger.error(
                "Conversation %s: backend still throttled after retries: %s",
                session.conversation_id,
                e,
            )
            return self._busy_reply
        except BackendError as e:
            logger.exception(
                "Conversation %s: backend call failed on %s: %s",
                session.conversation_id,
                session.bound_model,
                e,
            )
            return self._error_reply
        finally:
            session.pending = None

        session.history.append(Turn(Role.MODEL, reply))
        return reply


def build_relay_service(
    settings: Settings,
    sink: Optional[MessageSink] = None,
    backend=None,
    redis_crud: Optional[RedisCrudService] = None,
) -> RelayService:
    """Wire the limiter, controller, session store and dedup filter from settings."""
    roster = ModelRoster(settings.roster_list())
    store = SessionStore(
        roster=roster,
        backend=backend or get_chat_backend(),
        persona=settings.system_prompt,
    )
    queue = AdmissionQueue(
        min_gap=settings.queue_min_gap_ms / 1000,
        concurrency=settings.queue_concurrency,
        call_timeout=settings.call_timeout_seconds,
    )
    controller = RetryController(
        queue,
        roster,
        max_attempts=settings.retry_max_attempts,
        backoff_base=settings.backoff_base_ms / 1000,
        backoff_max=settings.backoff_max_ms / 1000,
        on_escalate=store.migrate_all,
    )
    ttl = settings.dedup_ttl_ms / 1000
    if redis_crud is not None:
        dedup: Union[DedupFilter, RedisDedupFilter] = RedisDedupFilter(redis_crud, ttl)
    else:
        dedup = DedupFilter(ttl)
    return RelayService(
        store,
        controller,
        dedup,
        sink=sink,
        busy_reply=settings.busy_reply,
        error_reply=settings.error_reply,
    )
