"""Message relay between the chat platform and the generative backend.

The flow for each inbound message is: dedup filter, session lookup, history
append, admission queue plus retry controller, history append, reply.
"""

from .relay import DEFAULT_SINK, MessageSink, RelayService, build_relay_service

__all__ = [
    "DEFAULT_SINK",
    "MessageSink",
    "RelayService",
    "build_relay_service",
]
