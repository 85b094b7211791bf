import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, List, Sequence, Tuple

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from relaybot.errors import BackendError  # noqa: E402
from relaybot.models import Turn  # noqa: E402


class FakeClock:
    """Manual clock whose sleep advances time instead of waiting."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class FakeScheduler:
    """Collects scheduled callbacks and fires them when time is advanced."""

    def __init__(self) -> None:
        self.now = 0.0
        self._timers: List[Tuple[float, Callable[[], None]]] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> None:
        self._timers.append((self.now + delay, callback))

    def advance(self, seconds: float) -> None:
        self.now += seconds
        due = [t for t in self._timers if t[0] <= self.now]
        self._timers = [t for t in self._timers if t[0] > self.now]
        for _, callback in due:
            callback()


class FakeHandle:
    def __init__(self, backend: "FakeBackend", model: str, history: Sequence[Turn]) -> None:
        self.backend = backend
        self.model = model

    async def send(self, history: Sequence[Turn], text: str) -> str:
        self.backend.calls.append((self.model, text))
        self.backend.sent.append((self.model, list(history), text))
        outcome: Any = self.backend.script.pop(0) if self.backend.script else self.backend.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeBackend:
    """Backend double: replies from a script, records opens and sends."""

    def __init__(self, script: Sequence[Any] = (), default: Any = "reply text") -> None:
        self.script = list(script)
        self.default = default
        self.calls: List[Tuple[str, str]] = []
        self.opened: List[Tuple[str, List[Turn]]] = []
        self.sent: List[Tuple[str, List[Turn], str]] = []
        self.refuse: Callable[[str, Sequence[Turn]], bool] = lambda model, history: False
        self.closed = False

    def open_conversation(self, model: str, history: Sequence[Turn]) -> FakeHandle:
        if self.refuse(model, history):
            raise BackendError(f"cannot open conversation on {model}", model=model)
        self.opened.append((model, list(history)))
        return FakeHandle(self, model, history)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()
