"""Persistence providers for conversation turns."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from pathlib import Path
from typing import Any, Awaitable, Iterable, Mapping, Protocol, Sequence, runtime_checkable

from .models import Turn

__all__ = [
    "PersistenceProvider",
    "InMemoryPersistence",
    "JsonFilePersistence",
]

LOGGER = logging.getLogger(__name__)
_HISTORY_VERSION = 1
_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")


@runtime_checkable
class PersistenceProvider(Protocol):
    """Durable storage for ordered turn lists keyed by context id.

    Each method may return its value directly or an awaitable.
    """

    def load(self, context_id: str) -> Sequence[Turn] | Awaitable[Sequence[Turn]]:
        ...

    def save(self, context_id: str, turns: Sequence[Turn]) -> None | Awaitable[None]:
        ...

    def delete(self, context_id: str) -> None | Awaitable[None]:
        ...

    def context_ids(self) -> Iterable[str] | Awaitable[Iterable[str]]:
        ...


class InMemoryPersistence:
    """Process-local provider, used by tests and ephemeral sessions."""

    def __init__(self, initial: Mapping[str, Sequence[Turn]] | None = None) -> None:
        self._data: dict[str, tuple[Turn, ...]] = {
            key: tuple(turns) for key, turns in (initial or {}).items()
        }
        self.save_calls = 0

    def load(self, context_id: str) -> list[Turn]:
        return list(self._data.get(context_id, ()))

    def save(self, context_id: str, turns: Sequence[Turn]) -> None:
        self.save_calls += 1
        self._data[context_id] = tuple(turns)

    def delete(self, context_id: str) -> None:
        self._data.pop(context_id, None)

    def context_ids(self) -> list[str]:
        return list(self._data)


class JsonFilePersistence:
    """Provider storing one JSON document per context under ``root``."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, context_id: str) -> Path:
        safe = _SAFE_NAME_RE.sub("_", context_id).strip("._") or "context"
        digest = hashlib.sha1(context_id.encode("utf-8")).hexdigest()[:8]
        return self._root / f"{safe[:80]}-{digest}.json"

    def load(self, context_id: str) -> list[Turn]:
        payload = self._read_payload(self.path_for(context_id))
        if payload.get("context_id") not in (None, context_id):
            LOGGER.warning("History file for %s belongs to %s; ignoring", context_id, payload.get("context_id"))
            return []
        turns: list[Turn] = []
        for entry in payload.get("turns") or []:
            if not isinstance(entry, Mapping):
                continue
            try:
                turns.append(Turn.from_dict(entry))
            except ValueError as exc:
                LOGGER.warning("Skipping invalid turn in history for %s: %s", context_id, exc)
        return turns

    def save(self, context_id: str, turns: Sequence[Turn]) -> None:
        payload = {
            "version": _HISTORY_VERSION,
            "context_id": context_id,
            "turns": [turn.to_dict() for turn in turns],
        }
        body = json.dumps(payload, ensure_ascii=False, indent=2)
        path = self.path_for(context_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(path)
        LOGGER.debug("History saved to %s: %d turn(s)", path, len(turns))

    def delete(self, context_id: str) -> None:
        path = self.path_for(context_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return

    def context_ids(self) -> list[str]:
        if not self._root.exists():
            return []
        ids: list[str] = []
        for path in sorted(self._root.glob("*.json")):
            context_id = self._read_payload(path).get("context_id")
            if isinstance(context_id, str):
                ids.append(context_id)
        return ids

    def _read_payload(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("History file %s is not valid JSON: %s", path, exc)
            return {}
        if isinstance(data, Mapping):
            return dict(data)
        return {}
