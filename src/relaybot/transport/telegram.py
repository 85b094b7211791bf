"""Telegram Bot API transport: inbound updates and outbound replies."""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

import httpx

from ..models import InboundMessage
from ..settings import get_settings

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4096


class TelegramError(Exception):
    """Raised when the Bot API answers with ok=false."""


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """Split text into chunks Telegram accepts, preferring line breaks."""
    if len(text) <= limit:
        return [text]
    chunks: List[str] = []
    rest = text
    while len(rest) > limit:
        cut = rest.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(rest[:cut])
        rest = rest[cut:].lstrip("\n")
    if rest:
        chunks.append(rest)
    return chunks


def parse_update(update: Dict[str, Any]) -> Optional[InboundMessage]:
    """Turn a Bot API update into an InboundMessage, or None if it has no text."""
    msg = update.get("message") or update.get("edited_message")
    if not isinstance(msg, dict):
        return None
    chat = msg.get("chat") or {}
    chat_id = chat.get("id")
    text = msg.get("text")
    if chat_id is None or not isinstance(text, str):
        return None
    message_id = msg.get("message_id")
    return InboundMessage(
        conversation_id=str(chat_id),
        text=text,
        message_id=f"{chat_id}:{message_id}" if message_id is not None else None,
    )


class TelegramClient:
    """Minimal async Bot API client."""

    def __init__(
        self,
        token: str,
        api_base: str = "https://api.telegram.org",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ) -> None:
        self._base = f"{api_base.rstrip('/')}/bot{token}"
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _call(self, method: str, payload: Dict[str, Any]) -> Any:
        response = await self._client.post(f"{self._base}/{method}", json=payload)
        data = response.json()
        if not data.get("ok"):
            raise TelegramError(
                f"{method} failed ({response.status_code}): {data.get('description')}"
            )
        return data.get("result")

    async def send_message(self, conversation_id: str, text: str) -> None:
        for chunk in split_message(text):
            try:
                await self._call("sendMessage", {"chat_id": conversation_id, "text": chunk})
            except (httpx.HTTPError, TelegramError, ValueError) as e:
                logger.warning("Failed to send message to %s: %s", conversation_id, e)
                return

    async def send_typing(self, conversation_id: str) -> None:
        try:
            await self._call(
                "sendChatAction", {"chat_id": conversation_id, "action": "typing"}
            )
        except (httpx.HTTPError, TelegramError, ValueError) as e:
            logger.debug("Typing indicator for %s failed: %s", conversation_id, e)

    async def get_updates(self, offset: Optional[int], timeout: int) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        return await self._call("getUpdates", payload) or []

    async def close(self) -> None:
        await self._client.aclose()


async def poll_updates(
    telegram: TelegramClient,
    relay,
    poll_timeout: int = 30,
    error_delay: float = 5.0,
) -> None:
    """Long-poll for updates and hand each message to the relay.

    Messages are handled in their own tasks so a slow backend call never
    blocks polling; the relay's admission queue does the pacing.
    """
    offset: Optional[int] = None
    handlers: Set["asyncio.Task[Any]"] = set()
    logger.info("Telegram polling started")
    try:
        while True:
            try:
                updates = await telegram.get_updates(offset, poll_timeout)
            except (httpx.HTTPError, TelegramError, ValueError) as e:
                logger.warning("getUpdates failed: %s", e)
                await asyncio.sleep(error_delay)
                continue

            for update in updates:
                offset = int(update["update_id"]) + 1
                message = parse_update(update)
                if message is None:
                    continue
                task = asyncio.ensure_future(relay.handle_message(message))
                handlers.add(task)
                task.add_done_callback(finish_handler(handlers))
    finally:
        for task in handlers:
            task.cancel()
        logger.info("Telegram polling stopped")


def finish_handler(handlers: Set["asyncio.Task[Any]"]):
    """Done-callback that forgets a handler task and logs it if it crashed."""

    def _done(task: "asyncio.Task[Any]") -> None:
        handlers.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Message handler crashed", exc_info=task.exception()
            )

    return _done


def get_telegram_client() -> Optional[TelegramClient]:
    """Return a TelegramClient if a bot token is configured, else None."""
    settings = get_settings()
    if not settings.telegram_bot_token:
        return None
    return TelegramClient(
        settings.telegram_bot_token,
        api_base=settings.telegram_api_base,
        timeout=settings.telegram_poll_timeout_seconds + 10,
    )
