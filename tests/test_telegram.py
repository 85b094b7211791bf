import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from relaybot.models import InboundMessage
from relaybot.transport.telegram import (
    TelegramClient,
    TelegramError,
    finish_handler,
    parse_update,
    poll_updates,
    split_message,
)


def test_split_message_keeps_short_text() -> None:
    assert split_message("hello") == ["hello"]


def test_split_message_prefers_line_breaks() -> None:
    text = "a" * 6 + "\n" + "b" * 6
    assert split_message(text, limit=8) == ["aaaaaa", "bbbbbb"]


def test_split_message_hard_cuts_long_lines() -> None:
    chunks = split_message("x" * 20, limit=8)
    assert chunks == ["x" * 8, "x" * 8, "x" * 4]


def test_parse_update_text_message() -> None:
    update = {
        "update_id": 10,
        "message": {"message_id": 5, "chat": {"id": 777}, "text": "hi"},
    }
    assert parse_update(update) == InboundMessage("777", "hi", "777:5")


def test_parse_update_ignores_non_text() -> None:
    assert parse_update({"update_id": 1, "message": {"message_id": 1, "chat": {"id": 1}}}) is None
    assert parse_update({"update_id": 2, "callback_query": {}}) is None


def make_client(handler) -> TelegramClient:
    transport = httpx.MockTransport(handler)
    return TelegramClient(
        "TOKEN", api_base="https://tg.test", client=httpx.AsyncClient(transport=transport)
    )


@pytest.mark.asyncio
async def test_send_message_posts_each_chunk() -> None:
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"ok": True, "result": {}})

    client = make_client(handler)
    await client.send_message("42", "x" * 5000)
    await client.close()

    assert [path for path, _ in sent] == ["/botTOKEN/sendMessage"] * 2
    assert sent[0][1]["chat_id"] == "42"
    assert len(sent[0][1]["text"]) == 4096
    assert len(sent[1][1]["text"]) == 904


@pytest.mark.asyncio
async def test_send_failures_are_logged_not_raised() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"ok": False, "description": "chat not found"})

    client = make_client(handler)
    await client.send_message("42", "hello")
    await client.send_typing("42")
    await client.close()


@pytest.mark.asyncio
async def test_send_typing_uses_chat_action() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"ok": True, "result": True})

    client = make_client(handler)
    await client.send_typing("42")
    await client.close()

    assert seen == [("/botTOKEN/sendChatAction", {"chat_id": "42", "action": "typing"})]


@pytest.mark.asyncio
async def test_get_updates_raises_on_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"ok": False, "description": "Unauthorized"})

    client = make_client(handler)
    with pytest.raises(TelegramError):
        await client.get_updates(None, 0)
    await client.close()


@pytest.mark.asyncio
async def test_poll_updates_hands_messages_to_relay() -> None:
    """Each polled message is handled and the offset moves past it."""
    update = {"update_id": 100, "message": {"message_id": 3, "chat": {"id": 9}, "text": "hey"}}
    offsets = []

    async def get_updates(offset, timeout):
        offsets.append(offset)
        if len(offsets) == 1:
            return [update, {"update_id": 101, "callback_query": {}}]
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        raise asyncio.CancelledError

    telegram = MagicMock()
    telegram.get_updates = AsyncMock(side_effect=get_updates)
    relay = MagicMock()
    relay.handle_message = AsyncMock(return_value="ok")

    with pytest.raises(asyncio.CancelledError):
        await poll_updates(telegram, relay, poll_timeout=0)

    relay.handle_message.assert_awaited_once_with(InboundMessage("9", "hey", "9:3"))
    assert offsets == [None, 102]


@pytest.mark.asyncio
async def test_finish_handler_forgets_and_logs_crashed_task(caplog) -> None:
    async def crash():
        raise RuntimeError("boom")

    async def fine():
        return "ok"

    handlers = set()
    tasks = [asyncio.ensure_future(crash()), asyncio.ensure_future(fine())]
    for task in tasks:
        handlers.add(task)
        task.add_done_callback(finish_handler(handlers))

    with caplog.at_level("ERROR", logger="relaybot.transport.telegram"):
        await asyncio.gather(*tasks, return_exceptions=True)
        await asyncio.sleep(0)

    assert handlers == set()
    crashed = [r for r in caplog.records if r.getMessage() == "Message handler crashed"]
    assert len(crashed) == 1
    assert isinstance(crashed[0].exc_info[1], RuntimeError)
