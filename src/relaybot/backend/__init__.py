from .chat_backend import ChatBackend, ConversationHandle, get_chat_backend

__all__ = [
    "ChatBackend",
    "ConversationHandle",
    "get_chat_backend",
]
