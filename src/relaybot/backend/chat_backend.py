"""Generative-text backend reached through Gemini's OpenAI-compatible API.

Everything SDK-specific (message shapes, response parsing, exception types)
stays in this module; callers only see plain strings and ``BackendError``.
"""

import logging
from typing import Any, Dict, Optional, Sequence

import openai
from openai import AsyncOpenAI

from ..errors import BackendError, ErrorKind, ThrottledError, classify_error
from ..models import Role, Turn
from ..settings import get_settings

logger = logging.getLogger(__name__)

_ROLE_MAP = {
    Role.SYSTEM: "system",
    Role.USER: "user",
    Role.MODEL: "assistant",
}


def _to_message(turn: Turn) -> Dict[str, str]:
    return {"role": _ROLE_MAP[turn.role], "content": turn.text}


def _response_text(response: Any) -> str:
    """Pull the reply text out of a chat completion."""
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    content = choices[0].message.content
    if content is None:
        return ""
    if isinstance(content, str):
        return content.strip()
    # Some compatible endpoints return a list of content parts.
    parts = []
    for part in content:
        text = part.get("text") if isinstance(part, dict) else getattr(part, "text", None)
        if text:
            parts.append(text)
    return "".join(parts).strip()


def _normalise_error(exc: Exception, model: str) -> BackendError:
    status = getattr(exc, "status_code", None)
    if isinstance(exc, openai.RateLimitError) or classify_error(exc) is ErrorKind.THROTTLED:
        return ThrottledError(str(exc), status_code=status or 429, model=model)
    return BackendError(str(exc), status_code=status, model=model)


def _check_history(history: Sequence[Turn]) -> None:
    if not history or history[0].role is not Role.SYSTEM:
        raise ValueError("history must start with a system turn")


class ConversationHandle:
    """A dialogue bound to one model.

    The handle keeps no transcript of its own: every call carries the
    caller's history, so the session store stays the only copy.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        temperature: float = 0.7,
    ) -> None:
        self._client = client
        self.model = model
        self._temperature = temperature

    async def send(self, history: Sequence[Turn], text: str) -> str:
        """Send ``history`` followed by a new user utterance; return the reply.

        Nothing is recorded here, so a failed call can be sent again as is.
        """
        messages = [_to_message(t) for t in history]
        messages.append({"role": "user", "content": text})
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self._temperature,
            )
        except (openai.APIStatusError, openai.APIConnectionError) as e:
            raise _normalise_error(e, self.model) from e

        reply = _response_text(response)
        if not reply:
            raise BackendError("backend returned an empty reply", model=self.model)
        return reply


class ChatBackend:
    """Opens conversation handles against the configured endpoint."""

    def __init__(
        self,
        client: AsyncOpenAI,
        temperature: float = 0.7,
    ) -> None:
        self._client = client
        self._temperature = temperature

    def open_conversation(self, model: str, history: Sequence[Turn]) -> ConversationHandle:
        """Start a conversation on ``model`` for the given replayable history.

        Raises:
            ValueError: the model id is empty or the history does not start
                with a system turn.
        """
        if not model:
            raise ValueError("model id must not be empty")
        _check_history(history)
        return ConversationHandle(self._client, model, temperature=self._temperature)

    async def close(self) -> None:
        await self._client.close()


def get_chat_backend(client: Optional[AsyncOpenAI] = None) -> ChatBackend:
    """Build a ChatBackend from settings."""
    settings = get_settings()
    if client is None:
        if not settings.gemini_api_key:
            logger.warning("No GEMINI_API_KEY configured; backend calls will fail")
        client = AsyncOpenAI(
            api_key=settings.gemini_api_key or "missing",
            base_url=settings.gemini_base_url,
            max_retries=0,
        )
    return ChatBackend(client, temperature=settings.temperature)
