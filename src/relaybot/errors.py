import re
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    THROTTLED = "throttled"
    OTHER = "other"


class BackendError(Exception):
    """A failed backend call, normalised at the backend boundary."""

    kind = ErrorKind.OTHER

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        model: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.model = model


class ThrottledError(BackendError):
    """The backend rejected the call because of rate or quota limits."""

    kind = ErrorKind.THROTTLED


class CallTimeoutError(BackendError):
    """A backend call did not finish before its deadline."""


THROTTLE_STATUS_CODES = {429}

_THROTTLE_PATTERN = re.compile(
    r"\b429\b|rate[\s_-]?limit|quota|resource[\s_]?exhausted|too many requests",
    re.IGNORECASE,
)


def classify_error(exc: BaseException) -> ErrorKind:
    """Return THROTTLED for rate-limit / quota failures, OTHER for the rest."""
    if isinstance(exc, BackendError):
        return exc.kind
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(exc, "status", None)
    if status in THROTTLE_STATUS_CODES:
        return ErrorKind.THROTTLED
    if _THROTTLE_PATTERN.search(str(exc)):
        return ErrorKind.THROTTLED
    return ErrorKind.OTHER
