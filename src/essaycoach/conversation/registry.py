"""Registry handing out one stream session per conversation context."""

from __future__ import annotations

import logging
from typing import Iterable, Iterator

from ..ai.transport import TransportProvider
from ..events import EventBus
from .session import StreamSession
from .store import ConversationStore

LOGGER = logging.getLogger(__name__)

STEPS: tuple[str, ...] = ("logic", "grammar", "scoring", "letter_logic", "letter_scoring")


def context_id(step: str, topic_id: str | int, slot_id: str | int | None = None) -> str:
    """Build the context key for a workflow step.

    ``context_id("logic", 7, 2)`` gives ``"logic_7_2"`` and
    ``context_id("scoring", 7)`` gives ``"scoring_7"``.
    """
    if not step:
        raise ValueError("step is required")
    if topic_id is None or str(topic_id) == "":
        raise ValueError("topic_id is required")
    key = f"{step}_{topic_id}"
    if slot_id is not None and str(slot_id) != "":
        key = f"{key}_{slot_id}"
    return key


class SessionRegistry:
    """Lazily creates and caches :class:`StreamSession` instances.

    All sessions share one transport, store and event bus, so a context id
    always maps to the same controller and its streaming flag.
    """

    def __init__(
        self,
        transport: TransportProvider,
        store: ConversationStore | None = None,
        *,
        event_bus: EventBus | None = None,
        idle_timeout: float | None = None,
        history_limit: int | None = None,
    ) -> None:
        self._transport = transport
        self._store = store if store is not None else ConversationStore()
        self._bus = event_bus
        self._idle_timeout = idle_timeout
        self._history_limit = history_limit
        self._sessions: dict[str, StreamSession] = {}

    @property
    def store(self) -> ConversationStore:
        return self._store

    def session(self, key: str) -> StreamSession:
        """Return the session for ``key``, creating it on first use."""
        existing = self._sessions.get(key)
        if existing is not None:
            return existing
        session = StreamSession(
            key,
            self._transport,
            self._store,
            event_bus=self._bus,
            idle_timeout=self._idle_timeout,
            history_limit=self._history_limit,
        )
        self._sessions[key] = session
        LOGGER.debug("SessionRegistry: created session for %s", key)
        return session

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def __iter__(self) -> Iterator[StreamSession]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)

    def streaming_sessions(self) -> list[StreamSession]:
        return [session for session in self._sessions.values() if session.is_streaming]

    def cancel_all(self, reason: str = "user") -> int:
        """Cancel every streaming session and return how many were cancelled."""
        return sum(1 for session in list(self._sessions.values()) if session.cancel(reason))

    async def clear_prefix(self, prefix: str) -> int:
        """Cancel and clear every context whose key starts with ``prefix``."""
        for key, session in list(self._sessions.items()):
            if key.startswith(prefix):
                session.cancel()
        return await self._store.clear_prefix(prefix)

    async def reset_topic(self, topic_id: str | int, steps: Iterable[str] = STEPS) -> int:
        """Clear the histories of every step for ``topic_id``.

        Streaming sessions of the topic are cancelled first so no exchange
        can commit into a history that was just cleared.

        Returns:
            The number of contexts cleared.
        """
        cleared = 0
        for step in steps:
            base = context_id(step, topic_id)
            for key, session in list(self._sessions.items()):
                if _belongs_to(key, base):
                    session.cancel()
            # "logic_1" must not swallow "logic_12"
            cleared += await self._clear_exact(base)
            cleared += await self._store.clear_prefix(f"{base}_")
        LOGGER.debug("SessionRegistry.reset_topic: topic=%s, cleared=%d", topic_id, cleared)
        return cleared

    async def _clear_exact(self, key: str) -> int:
        if await self._store.turn_count(key) == 0:
            return 0
        await self._store.clear(key)
        return 1


def _belongs_to(key: str, base: str) -> bool:
    return key == base or key.startswith(f"{base}_")


__all__ = ["STEPS", "SessionRegistry", "context_id"]
