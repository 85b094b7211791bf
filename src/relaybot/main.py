import asyncio
import json
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .backend import get_chat_backend
from .models import InboundMessage
from .relay import RelayService, build_relay_service
from .services.redis import get_redis_crud_service
from .settings import get_settings
from .transport.telegram import (
    finish_handler,
    get_telegram_client,
    parse_update,
    poll_updates,
)


def setup_server_logging() -> logging.Logger:
    """Configure the relaybot logger tree and return the server logger."""
    settings = get_settings()
    settings.log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("relaybot")
    logger = logging.getLogger("relaybot.server")
    if root.handlers:
        return logger

    root.setLevel(settings.log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    root.addHandler(ch)

    fh = RotatingFileHandler(settings.log_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


LOGGER = setup_server_logging()
settings = get_settings()
_webhook_tasks: set[asyncio.Task[Any]] = set()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the relay, optional Redis dedup and Telegram polling; tear down on exit."""
    redis_crud = get_redis_crud_service()
    if redis_crud is not None:
        try:
            await redis_crud.connect()
            LOGGER.info("Dedup window stored in Redis")
        except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
            LOGGER.warning("Redis unavailable, dedup falls back to memory: %s", e)

    telegram = get_telegram_client()
    if telegram is None:
        LOGGER.warning("No TELEGRAM_BOT_TOKEN configured; only /ws/chat is served")

    backend = get_chat_backend()
    relay = build_relay_service(
        settings, sink=telegram, backend=backend, redis_crud=redis_crud
    )
    app.state.relay = relay
    app.state.telegram = telegram
    LOGGER.info("Model roster: %s", ", ".join(relay.controller.roster.models))

    poller = None
    if telegram is not None and settings.telegram_mode == "polling":
        poller = asyncio.ensure_future(
            poll_updates(telegram, relay, settings.telegram_poll_timeout_seconds)
        )

    yield

    LOGGER.info("Shutting down...")
    if poller is not None:
        poller.cancel()
        try:
            await poller
        except asyncio.CancelledError:
            pass
    if telegram is not None:
        await telegram.close()
    await backend.close()
    if redis_crud is not None:
        await redis_crud.close()


app = FastAPI(
    title="Relay Bot",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", response_class=PlainTextResponse)
async def index() -> str:
    return "Hello! The relay bot is alive."


@app.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Health check for load balancers and monitoring.

    Returns:
        dict[str, Any]: status, the active model and the live session count.
    """
    relay: RelayService = request.app.state.relay
    roster = relay.controller.roster
    return {
        "status": "ok",
        "model": roster.current,
        "model_index": roster.index,
        "sessions": len(relay.store),
    }


@app.post("/telegram/webhook")
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: str | None = Header(default=None),
) -> dict[str, bool]:
    """Webhook delivery of Telegram updates.

    The update is acknowledged immediately and handled in the background so
    Telegram does not redeliver while the backend call is queued.
    """
    secret = settings.telegram_webhook_secret
    if secret and x_telegram_bot_api_secret_token != secret:
        raise HTTPException(status_code=403, detail="invalid secret token")

    try:
        update = await request.json()
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="invalid JSON payload")

    message = parse_update(update) if isinstance(update, dict) else None
    if message is not None:
        relay: RelayService = request.app.state.relay
        task = asyncio.ensure_future(relay.handle_message(message))
        _webhook_tasks.add(task)
        task.add_done_callback(finish_handler(_webhook_tasks))
    return {"ok": True}


@app.websocket("/ws/chat")
async def chat_ws(websocket: WebSocket) -> None:
    """WebSocket chat endpoint for local testing without Telegram.

    Expected Input (JSON):
        {
            "session_id": str - conversation identifier,
            "message": str - user text,
            "message_id": str - optional, used for de-duplication
        }

    Response Format:
        - {"type": "reply", "data": str} - the reply text
        - {"type": "skipped"} - command, empty or duplicate message
        - {"type": "done", "session_id": str, "model": str} - completion message
        - {"type": "error", "data": str} - error message if applicable
    """
    await websocket.accept()
    try:
        raw = await websocket.receive_text()
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            LOGGER.error("Invalid WS payload (not JSON): %s", e)
            await websocket.send_json({"type": "error", "data": "Invalid JSON payload"})
            await websocket.close()
            return

        session_id = str(payload.get("session_id") or "default")
        message = str(payload.get("message") or "").strip()
        message_id = payload.get("message_id")

        if not message:
            await websocket.send_json({"type": "error", "data": "Empty message"})
            await websocket.close()
            return

        LOGGER.info("WS chat start session_id=%s", session_id)
        relay: RelayService = websocket.app.state.relay
        reply = await relay.handle_message(
            InboundMessage(
                conversation_id=session_id,
                text=message,
                message_id=str(message_id) if message_id is not None else None,
            ),
            sink=None,
        )
        if reply is None:
            await websocket.send_json({"type": "skipped"})
        else:
            await websocket.send_json({"type": "reply", "data": reply})

        session = relay.store.get(session_id)
        await websocket.send_json(
            {
                "type": "done",
                "session_id": session_id,
                "model": session.bound_model if session is not None else None,
            }
        )
        await websocket.close()

    except WebSocketDisconnect:
        LOGGER.info("WS disconnect")


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
