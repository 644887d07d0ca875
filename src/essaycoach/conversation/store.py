"""Conversation store domain service.

Holds the ordered, committed turns of every conversation context on top of a
persistence provider. ``append`` is the only way turns are added and it takes
exactly one user/assistant pair, so a stored history never ends with an
unanswered prompt.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Sequence

from .models import Turn
from .persistence import InMemoryPersistence, PersistenceProvider

LOGGER = logging.getLogger(__name__)


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class ConversationStore:
    """Per-context ordered log of committed turns.

    Loaded histories are cached; the cache is only updated after the
    persistence provider accepted a write, so a failed save leaves the
    visible history unchanged.
    """

    def __init__(self, persistence: PersistenceProvider | None = None) -> None:
        """Initialize the store.

        Args:
            persistence: Provider used for durable storage. Defaults to an
                in-memory provider.
        """
        self._persistence = persistence if persistence is not None else InMemoryPersistence()
        self._cache: dict[str, tuple[Turn, ...]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def persistence(self) -> PersistenceProvider:
        return self._persistence

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_history(self, context_id: str) -> list[Turn]:
        """Return the ordered turns for ``context_id`` (oldest first)."""
        return list(await self._load(context_id))

    async def history_messages(self, context_id: str, *, limit: int | None = None) -> list[dict[str, str]]:
        """Return history as chat messages, keeping at most ``limit`` recent pairs."""
        turns = await self._load(context_id)
        if limit is not None:
            turns = turns[-2 * limit :] if limit > 0 else ()
        return [turn.as_message() for turn in turns]

    async def turn_count(self, context_id: str) -> int:
        return len(await self._load(context_id))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def append(self, context_id: str, user_turn: Turn, assistant_turn: Turn) -> None:
        """Atomically append one user/assistant pair.

        Raises:
            ValueError: If the turns are not a user turn followed by an
                assistant turn.
            Exception: Whatever the persistence provider raised; nothing is
                appended in that case.
        """
        if user_turn.role != "user" or assistant_turn.role != "assistant":
            raise ValueError("append expects a user turn followed by an assistant turn")

        async with self._locked(context_id):
            current = await self._load(context_id)
            updated = current + (user_turn, assistant_turn)
            await _resolve(self._persistence.save(context_id, list(updated)))
            self._cache[context_id] = updated

        LOGGER.debug("ConversationStore.append: context=%s, turns=%d", context_id, len(updated))

    async def clear(self, context_id: str) -> None:
        """Discard every turn of ``context_id``."""
        async with self._locked(context_id):
            await _resolve(self._persistence.delete(context_id))
            self._cache.pop(context_id, None)
        LOGGER.debug("ConversationStore.clear: context=%s", context_id)

    async def clear_prefix(self, prefix: str) -> int:
        """Clear every context whose id starts with ``prefix``.

        Returns:
            The number of contexts cleared.
        """
        known = set(await _resolve(self._persistence.context_ids()))
        known.update(key for key, turns in self._cache.items() if turns)
        targets = sorted(key for key in known if key.startswith(prefix))
        for context_id in targets:
            await self.clear(context_id)
        LOGGER.debug("ConversationStore.clear_prefix: prefix=%s, cleared=%d", prefix, len(targets))
        return len(targets)

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(self, context_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(context_id)
        if lock is None:
            lock = self._locks[context_id] = asyncio.Lock()
        self._lock_users[context_id] = self._lock_users.get(context_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[context_id] - 1
            if remaining:
                self._lock_users[context_id] = remaining
            else:
                del self._lock_users[context_id]
                del self._locks[context_id]

    async def _load(self, context_id: str) -> tuple[Turn, ...]:
        cached = self._cache.get(context_id)
        if cached is not None:
            return cached
        loaded: Sequence[Turn] = await _resolve(self._persistence.load(context_id))
        turns = tuple(loaded or ())
        if len(turns) % 2:
            LOGGER.warning(
                "History for %s has an odd number of turns (%d); dropping the trailing turn",
                context_id,
                len(turns),
            )
            turns = turns[:-1]
        if loaded:
            self._cache[context_id] = turns
        return turns


__all__ = ["ConversationStore"]
