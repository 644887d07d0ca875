"""Event bus infrastructure for decoupled exchange notifications.

Stream sessions publish their lifecycle here so that rendering, analytics or
history panels can follow exchanges without holding a reference to the
session that produced them.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Generic,
    TypeVar,
    TYPE_CHECKING,
)
from weakref import WeakMethod

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)

# Type variable for event types
E = TypeVar("E", bound="Event")

# Handler type: a callable that takes an event and returns None
Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all events in the system.

    Example::

        @dataclass(slots=True)
        class ExchangeStarted(Event):
            context_id: str
            exchange_id: str
            prompt: str
    """

    pass


# High-frequency event types that should not log each publish
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Exchange Events
# =============================================================================


@dataclass(slots=True)
class ExchangeStarted(Event):
    """Emitted when ``send()`` opens a new exchange.

    Attributes:
        context_id: Conversation the exchange belongs to.
        exchange_id: Unique identifier of the exchange.
        prompt: The prompt that was sent.
    """

    context_id: str
    exchange_id: str
    prompt: str


@dataclass(slots=True)
class ExchangePreview(Event):
    """Emitted for each chunk with the current commentary preview.

    The preview is not authoritative: it is never persisted and may be
    discarded if the exchange is cancelled or fails.

    Attributes:
        context_id: Conversation the exchange belongs to.
        exchange_id: Unique identifier of the exchange.
        display_text: Commentary visible so far.
        payload_pending: True once the opening JSON tag has streamed in.
    """

    context_id: str
    exchange_id: str
    display_text: str
    payload_pending: bool = False


# Register high-frequency event types (done after class definition)
_QUIET_EVENT_TYPES.add(ExchangePreview)


@dataclass(slots=True)
class ExchangeCommitted(Event):
    """Emitted after an exchange was parsed and its turns were stored.

    Attributes:
        context_id: Conversation the exchange belongs to.
        exchange_id: Unique identifier of the exchange.
        display_text: Final commentary text.
        payload: Parsed (and normalized) JSON, or None for plain chat.
    """

    context_id: str
    exchange_id: str
    display_text: str
    payload: dict[str, Any] | None = None


@dataclass(slots=True)
class ExchangeFailed(Event):
    """Emitted when an exchange ends with a retryable or fatal error.

    Attributes:
        context_id: Conversation the exchange belongs to.
        exchange_id: Unique identifier of the exchange.
        error_code: Machine-readable error code.
        message: Human-readable description.
        retryable: Whether a retry action should be offered.
        details: Serialized error payload.
    """

    context_id: str
    exchange_id: str
    error_code: str
    message: str
    retryable: bool = True
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ExchangeCanceled(Event):
    """Emitted when an exchange is cancelled by the user or by an idle timeout.

    Attributes:
        context_id: Conversation the exchange belongs to.
        exchange_id: Unique identifier of the exchange.
        reason: ``"user"`` or ``"timeout"``.
    """

    context_id: str
    exchange_id: str
    reason: str = "user"


@dataclass(slots=True)
class HistoryCleared(Event):
    """Emitted when the history of a context is cleared.

    Attributes:
        context_id: The cleared conversation.
    """

    context_id: str


# =============================================================================
# Event Bus
# =============================================================================


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus for decoupled communication.

    Handlers are stored as weak references where possible (bound methods)
    to prevent memory leaks.

    Example::

        bus = EventBus()

        def on_committed(event: ExchangeCommitted) -> None:
            print(event.payload)

        bus.subscribe(ExchangeCommitted, on_committed)

    Thread Safety:
        This implementation is NOT thread-safe. All operations should be
        performed from the event loop thread.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register a handler to receive events of the specified type.

        Args:
            event_type: The class of events to subscribe to.
            handler: A callable that will be invoked with the event.

        Note:
            Subscribing the same handler multiple times will result in
            multiple invocations when an event is published.
        """
        handler_ref = _HandlerRef.create(handler)
        self._handlers[event_type].append(handler_ref)
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove a previously registered handler.

        If the handler was registered multiple times, only the first
        occurrence is removed. Unknown handlers are ignored.
        """
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return

        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                logger.debug(
                    "Unsubscribed handler %s from event type %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
                return

    def publish(self, event: E) -> None:
        """Broadcast an event to all registered handlers.

        Handlers are invoked synchronously in registration order. A handler
        that raises is logged and the remaining handlers still run.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        is_quiet = event_type in _QUIET_EVENT_TYPES

        if handlers is None:
            if not is_quiet:
                logger.debug("No handlers for event type %s", event_type.__name__)
            return

        if not is_quiet:
            logger.debug(
                "Publishing %s to %d handler(s)",
                event_type.__name__,
                len(handlers),
            )

        dead_indices: list[int] = []

        for i, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(i)
                continue

            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

        for i in reversed(dead_indices):
            if i < len(handlers):
                handlers.pop(i)

    def clear(self) -> None:
        """Remove all registered handlers."""
        self._handlers.clear()
        logger.debug("Cleared all event handlers")

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Return the number of registered handlers, optionally for one type."""
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Wrapper holding bound methods weakly and other callables strongly."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                # Some callables can't be weakly referenced
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Handler) -> str:
    """Get a human-readable name for a handler for logging purposes."""
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        cls_name = type(handler.__self__).__name__
        return f"{cls_name}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "ExchangeStarted",
    "ExchangePreview",
    "ExchangeCommitted",
    "ExchangeFailed",
    "ExchangeCanceled",
    "HistoryCleared",
]
