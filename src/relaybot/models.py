from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    MODEL = "model"


@dataclass(frozen=True)
class Turn:
    """One entry of a conversation history."""

    role: Role
    text: str


@dataclass
class Session:
    """Per-conversation state: the bound backend model and its history.

    ``history`` always starts with the persona system turn. ``pending`` holds
    the user turn whose reply is still being generated, if any.
    """

    conversation_id: str
    bound_model: str
    history: List[Turn] = field(default_factory=list)
    handle: Any = None
    pending: Optional[Turn] = None


@dataclass(frozen=True)
class InboundMessage:
    """A message delivered by the chat platform."""

    conversation_id: str
    text: str
    message_id: Optional[str] = None


class ModelRoster:
    """Ordered backend models with a cursor that only ever moves forward."""

    def __init__(self, models: Sequence[str]) -> None:
        if not models:
            raise ValueError("model roster must contain at least one model")
        self._models = tuple(models)
        self._index = 0

    @property
    def models(self) -> tuple:
        return self._models

    @property
    def index(self) -> int:
        return self._index

    @property
    def current(self) -> str:
        return self._models[self._index]

    @property
    def is_last(self) -> bool:
        return self._index == len(self._models) - 1

    def advance(self) -> bool:
        """Move to the next model. Returns False when already on the last one."""
        if self.is_last:
            return False
        self._index += 1
        return True

    def __len__(self) -> int:
        return len(self._models)
