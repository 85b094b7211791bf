"""Request admission and resilience for outbound backend calls.

Three pieces, each usable on its own:

- ``DedupFilter`` / ``RedisDedupFilter``: drop re-delivered inbound messages.
- ``AdmissionQueue``: FIFO pacing with a minimum start gap and a concurrency
  ceiling.
- ``RetryController``: retries throttled calls with exponential backoff and
  escalates to the next model in the roster.
"""

from .dedup import DedupFilter, RedisDedupFilter, loop_scheduler
from .limiter import AdmissionQueue, PendingCall
from .retry import RetryController, backoff_delay

__all__ = [
    "AdmissionQueue",
    "DedupFilter",
    "PendingCall",
    "RedisDedupFilter",
    "RetryController",
    "backoff_delay",
    "loop_scheduler",
]
