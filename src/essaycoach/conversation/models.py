"""Conversation and exchange state models.

These dataclasses and enums describe committed conversation turns and the
transient state of a streaming exchange. They are used by the session
controller and the conversation store, and emitted via events.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal, Mapping

from ..ai.streaming_json import ParsedOutcome

if TYPE_CHECKING:  # pragma: no cover
    from ..ai.errors import StreamError
    from ..ai.transport import AbortSignal


def _utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


TurnRole = Literal["user", "assistant"]
_ROLES: tuple[str, ...] = ("user", "assistant")


@dataclass(slots=True, frozen=True)
class Turn:
    """One committed message of a conversation.

    Turns are immutable and only created for exchanges that completed; a
    partial or cancelled answer never becomes a turn.

    Attributes:
        role: Either ``"user"`` or ``"assistant"``.
        content: The full message text.
        created_at: When the exchange that produced the turn completed.
    """

    role: TurnRole
    content: str
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if self.role not in _ROLES:
            raise ValueError(f"Unsupported turn role: {self.role!r}")

    def to_dict(self) -> dict[str, Any]:
        """Serialize the turn for persistence."""
        return {
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }

    def as_message(self) -> dict[str, str]:
        """Render the turn as a chat-completions message."""
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Turn":
        """Rebuild a turn from :meth:`to_dict` output.

        Raises:
            ValueError: If the role, content or timestamp is invalid.
        """
        role = payload.get("role")
        content = payload.get("content")
        if not isinstance(content, str):
            raise ValueError("Turn content must be a string")
        raw_created = payload.get("created_at")
        if isinstance(raw_created, str) and raw_created:
            created_at = datetime.fromisoformat(raw_created)
        elif isinstance(raw_created, (int, float)):
            # Millisecond epoch timestamps written by older clients.
            created_at = datetime.fromtimestamp(raw_created / 1000, tz=timezone.utc)
        else:
            created_at = _utcnow()
        return cls(role=role, content=content, created_at=created_at)  # type: ignore[arg-type]


class SessionState(Enum):
    """Lifecycle states of a stream session.

    Values:
        IDLE: No exchange is outstanding.
        STREAMING: An exchange is consuming chunks.
        COMMITTED: The exchange completed and its turns were stored.
        CANCELLED: The exchange was cancelled by the user or an idle timeout.
        FAILED: The exchange ended with a transport, parse or storage error.
    """

    IDLE = "idle"
    STREAMING = "streaming"
    COMMITTED = "committed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(slots=True)
class StreamExchange:
    """In-memory state of one outstanding request. Never persisted."""

    exchange_id: str
    prompt: str
    signal: AbortSignal
    structured: bool = True
    accumulated_text: str = ""
    display_text: str = ""
    is_streaming: bool = True
    cancelled: bool = False
    cancel_reason: str | None = None
    chunk_count: int = 0
    started_at: datetime = field(default_factory=_utcnow)

    def append_chunk(self, chunk: str) -> str:
        """Append ``chunk`` to the buffer and return the new buffer."""
        self.accumulated_text += chunk
        self.chunk_count += 1
        return self.accumulated_text


@dataclass(slots=True, frozen=True)
class ExchangeResult:
    """Outcome of :meth:`StreamSession.send`.

    Attributes:
        exchange_id: Identifier of the exchange.
        status: One of the terminal states COMMITTED, CANCELLED or FAILED.
        outcome: Parsed outcome for structured exchanges that reached the parser.
        error: Typed error for FAILED results.
        text: The streamed text (commentary for display on failure).
        cancel_reason: ``"user"`` or ``"timeout"`` for cancelled exchanges.
    """

    exchange_id: str
    status: SessionState
    outcome: ParsedOutcome | None = None
    error: StreamError | None = None
    text: str = ""
    cancel_reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is SessionState.COMMITTED

    @property
    def cancelled(self) -> bool:
        return self.status is SessionState.CANCELLED

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.is_retryable

    @property
    def json(self) -> dict[str, Any] | None:
        return self.outcome.json if self.outcome is not None else None

    @property
    def display_text(self) -> str:
        if self.outcome is not None:
            return self.outcome.display_text
        return self.text


__all__ = [
    "Turn",
    "TurnRole",
    "SessionState",
    "StreamExchange",
    "ExchangeResult",
]
