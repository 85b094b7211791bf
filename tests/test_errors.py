import pytest

from relaybot.errors import (
    BackendError,
    CallTimeoutError,
    ErrorKind,
    ThrottledError,
    classify_error,
)


class StatusError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


@pytest.mark.parametrize(
    "message",
    [
        "429 Too Many Requests",
        "Rate limit reached for requests",
        "You exceeded your current quota",
        "RESOURCE_EXHAUSTED: try again later",
        "rate_limit_exceeded",
    ],
)
def test_rate_limit_messages_are_throttled(message: str) -> None:
    assert classify_error(RuntimeError(message)) is ErrorKind.THROTTLED


def test_status_code_429_is_throttled() -> None:
    assert classify_error(StatusError("slow down", 429)) is ErrorKind.THROTTLED


def test_other_failures_are_other() -> None:
    assert classify_error(StatusError("bad request", 400)) is ErrorKind.OTHER
    assert classify_error(ConnectionError("connection reset")) is ErrorKind.OTHER
    assert classify_error(ValueError("invalid api key")) is ErrorKind.OTHER


def test_backend_errors_report_their_own_kind() -> None:
    assert classify_error(ThrottledError("x")) is ErrorKind.THROTTLED
    assert classify_error(BackendError("quota-free failure")) is ErrorKind.OTHER
    assert classify_error(CallTimeoutError("deadline")) is ErrorKind.OTHER


def test_backend_error_carries_context() -> None:
    err = ThrottledError("limited", status_code=429, model="m1")
    assert err.status_code == 429
    assert err.model == "m1"
    assert str(err) == "limited"
