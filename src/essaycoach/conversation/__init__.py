"""Conversation history, stream sessions and their persistence."""

from .models import ExchangeResult, SessionState, StreamExchange, Turn
from .persistence import InMemoryPersistence, JsonFilePersistence, PersistenceProvider
from .registry import SessionRegistry, context_id
from .session import StreamSession
from .store import ConversationStore

__all__ = [
    "ExchangeResult",
    "SessionState",
    "StreamExchange",
    "Turn",
    "InMemoryPersistence",
    "JsonFilePersistence",
    "PersistenceProvider",
    "SessionRegistry",
    "context_id",
    "StreamSession",
    "ConversationStore",
]
