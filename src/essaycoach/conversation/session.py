"""Stream session controller.

One :class:`StreamSession` owns the exchanges of one conversation context.
It drives the transport, publishes live previews while chunks arrive, parses
the final JSON block once the stream ends and commits the completed exchange
to the conversation store. It is the single source of truth for whether a
context is streaming.

States::

    IDLE -> STREAMING -> {COMMITTED, CANCELLED, FAILED} -> IDLE

Only completed exchanges reach the store. Cancelled exchanges (user, idle
timeout, or a cancelled caller) and failed exchanges leave history exactly as
it was before ``send()``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Mapping

from ..ai.errors import (
    ConcurrentSendRejected,
    ErrorCode,
    MalformedJsonError,
    MissingPayloadError,
    PayloadRejectedError,
    PersistenceError,
    StreamError,
    classify_transport_exception,
)
from ..ai.normalization import Normalizer
from ..ai.streaming_json import ParsedOutcome, extract, parse
from ..ai.transport import AbortSignal, TransportProvider
from ..events import (
    EventBus,
    ExchangeCanceled,
    ExchangeCommitted,
    ExchangeFailed,
    ExchangePreview,
    ExchangeStarted,
    HistoryCleared,
)
from .models import ExchangeResult, SessionState, StreamExchange, Turn
from .store import ConversationStore

LOGGER = logging.getLogger(__name__)

PreviewCallback = Callable[[str], None]


class _IdleTimeout(Exception):
    """No chunk arrived within the idle timeout."""


@dataclass(slots=True, frozen=True)
class _Request:
    prompt: str
    structured: bool
    normalizer: Normalizer | None
    use_history: bool


class StreamSession:
    """Per-context state machine for streaming exchanges.

    Args:
        context_id: Opaque key of the conversation.
        transport: Provider streaming text chunks for a prompt.
        store: Conversation store receiving committed turn pairs.
        event_bus: Optional bus receiving lifecycle events.
        idle_timeout: Seconds without a new chunk before the exchange is
            cancelled with reason ``"timeout"``. ``None`` disables it.
        history_limit: Maximum number of prior exchanges sent as context.
    """

    def __init__(
        self,
        context_id: str,
        transport: TransportProvider,
        store: ConversationStore,
        *,
        event_bus: EventBus | None = None,
        idle_timeout: float | None = None,
        history_limit: int | None = None,
    ) -> None:
        if not context_id:
            raise ValueError("context_id is required")
        self._context_id = context_id
        self._transport = transport
        self._store = store
        self._bus = event_bus
        self._idle_timeout = idle_timeout if idle_timeout and idle_timeout > 0 else None
        self._history_limit = history_limit
        self._state = SessionState.IDLE
        self._exchange: StreamExchange | None = None
        self._task: asyncio.Task[None] | None = None
        self._last_result: ExchangeResult | None = None
        self._last_failed_request: _Request | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def context_id(self) -> str:
        return self._context_id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_streaming(self) -> bool:
        return self._exchange is not None and self._exchange.is_streaming

    @property
    def display_text(self) -> str:
        """Live commentary preview of the current exchange ("" when idle)."""
        if self._exchange is None:
            return ""
        return self._exchange.display_text

    @property
    def current_exchange(self) -> StreamExchange | None:
        return self._exchange

    @property
    def last_result(self) -> ExchangeResult | None:
        return self._last_result

    @property
    def can_retry(self) -> bool:
        return self._last_failed_request is not None

    # ------------------------------------------------------------------
    # Exchange Lifecycle
    # ------------------------------------------------------------------

    async def send(
        self,
        prompt: str,
        *,
        structured: bool = True,
        normalizer: Normalizer | None = None,
        on_preview: PreviewCallback | None = None,
        use_history: bool = True,
    ) -> ExchangeResult:
        """Stream one exchange and commit it when it completes.

        Args:
            prompt: The prompt to send.
            structured: Parse a final JSON block at the end of the stream.
                When False the full text is committed as a plain chat answer.
            normalizer: Optional step normalizer applied to the parsed JSON.
            on_preview: Called with the commentary preview after each chunk.
            use_history: Send prior turns of this context to the transport.

        Returns:
            The exchange result. Retryable failures and cancellations are
            reported here rather than raised.

        Raises:
            ConcurrentSendRejected: If an exchange is already streaming.
            ValueError: If ``prompt`` is empty.
        """
        if self._exchange is not None:
            LOGGER.warning("StreamSession.send rejected: context=%s is streaming", self._context_id)
            raise ConcurrentSendRejected(context_id=self._context_id)
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required")

        request = _Request(prompt, structured, normalizer, use_history)
        exchange = StreamExchange(
            exchange_id=f"exchange-{uuid.uuid4().hex[:8]}",
            prompt=prompt,
            signal=AbortSignal(),
            structured=structured,
        )
        self._exchange = exchange
        self._state = SessionState.STREAMING
        LOGGER.debug(
            "StreamSession.send: context=%s, exchange=%s, prompt_length=%d, structured=%s",
            self._context_id,
            exchange.exchange_id,
            len(prompt),
            structured,
        )
        self._publish(ExchangeStarted(context_id=self._context_id, exchange_id=exchange.exchange_id, prompt=prompt))

        try:
            return await self._run(exchange, request, on_preview)
        finally:
            if self._exchange is exchange:
                self._detach()

    async def retry(self, *, on_preview: PreviewCallback | None = None) -> ExchangeResult:
        """Re-send the last failed request with the same options.

        Raises:
            RuntimeError: If no failed request is pending.
        """
        request = self._last_failed_request
        if request is None:
            raise RuntimeError("No failed exchange to retry")
        return await self.send(
            request.prompt,
            structured=request.structured,
            normalizer=request.normalizer,
            on_preview=on_preview,
            use_history=request.use_history,
        )

    def cancel(self, reason: str = "user") -> bool:
        """Cancel the streaming exchange, if any.

        Cancelling is silent: nothing is parsed or stored and no error is
        reported. Calling it when idle, twice, or after the stream already
        ended has no effect.

        Returns:
            True if an exchange was cancelled by this call.
        """
        exchange = self._exchange
        if exchange is None or not exchange.is_streaming or exchange.cancelled:
            LOGGER.debug("StreamSession.cancel: nothing to cancel for context=%s", self._context_id)
            return False

        task = self._task
        self._abort(exchange, reason)
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()
        return True

    async def get_history(self) -> list[Turn]:
        return await self._store.get_history(self._context_id)

    async def clear_history(self) -> None:
        """Discard the history of this context, cancelling any live exchange first."""
        self.cancel()
        await self._store.clear(self._context_id)
        self._last_failed_request = None
        self._publish(HistoryCleared(context_id=self._context_id))

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    async def _run(
        self,
        exchange: StreamExchange,
        request: _Request,
        on_preview: PreviewCallback | None,
    ) -> ExchangeResult:
        history: list[dict[str, str]] = []
        if request.use_history:
            history = await self._store.history_messages(self._context_id, limit=self._history_limit)
        if exchange.cancelled:
            return self._cancelled_result(exchange)

        task = asyncio.ensure_future(self._consume(exchange, history, on_preview))
        self._task = task
        try:
            await task
        except asyncio.CancelledError:
            if not exchange.cancelled:
                # send() itself was cancelled by its caller
                self._abort(exchange, "caller")
                raise
            return self._cancelled_result(exchange)
        except Exception as exc:
            if exchange.cancelled:
                LOGGER.debug("Transport error after cancel ignored: %s", exc)
                return self._cancelled_result(exchange)
            error = exc if isinstance(exc, StreamError) else classify_transport_exception(exc)
            # Partial text is discarded; only the commentary is reported for display.
            return self._fail(exchange, request, error, text=exchange.display_text)

        # The stream ended on its own; a cancel in the same tick wins.
        if exchange.cancelled:
            return self._cancelled_result(exchange)
        exchange.is_streaming = False

        text = exchange.accumulated_text
        payload: dict[str, Any] | None = None
        outcome: ParsedOutcome | None = None
        if request.structured:
            outcome = parse(text)
            error = self._parse_error(outcome)
            if error is not None:
                return self._fail(exchange, request, error, text=text, outcome=outcome)
            payload, error = self._check_payload(outcome, request.normalizer)
            if error is not None:
                return self._fail(exchange, request, error, text=text, outcome=outcome)
            outcome = ParsedOutcome(json=payload, display_text=outcome.display_text)
        elif not text.strip():
            return self._fail(exchange, request, MissingPayloadError(message="The AI returned an empty answer"), text=text)

        return await self._commit(exchange, request, text, outcome, payload)

    async def _consume(
        self,
        exchange: StreamExchange,
        history: list[dict[str, str]],
        on_preview: PreviewCallback | None,
    ) -> None:
        stream = self._transport.stream(exchange.prompt, history=history, signal=exchange.signal)
        iterator = stream.__aiter__()
        try:
            while not exchange.cancelled:
                try:
                    chunk = await self._next_chunk(iterator)
                except StopAsyncIteration:
                    break
                except _IdleTimeout:
                    LOGGER.debug(
                        "StreamSession: no chunk for %.1fs, cancelling exchange=%s",
                        self._idle_timeout or 0.0,
                        exchange.exchange_id,
                    )
                    self._abort(exchange, "timeout")
                    return
                if exchange.cancelled:
                    return
                if not chunk:
                    continue
                buffer = exchange.append_chunk(chunk)
                pending = False
                if exchange.structured:
                    segment = extract(buffer)
                    exchange.display_text = segment.display_text
                    pending = len(segment.display_text) < len(buffer)
                else:
                    exchange.display_text = buffer
                self._publish_preview(exchange, payload_pending=pending, on_preview=on_preview)
        finally:
            await _close_iterator(iterator)

    async def _next_chunk(self, iterator: AsyncIterator[str]) -> str:
        if self._idle_timeout is None:
            return await iterator.__anext__()
        try:
            return await asyncio.wait_for(iterator.__anext__(), timeout=self._idle_timeout)
        except asyncio.TimeoutError as exc:
            raise _IdleTimeout from exc

    async def _commit(
        self,
        exchange: StreamExchange,
        request: _Request,
        text: str,
        outcome: ParsedOutcome | None,
        payload: dict[str, Any] | None,
    ) -> ExchangeResult:
        user_turn = Turn(role="user", content=exchange.prompt)
        assistant_turn = Turn(role="assistant", content=text)
        self._state = SessionState.COMMITTED
        try:
            await self._store.append(self._context_id, user_turn, assistant_turn)
        except Exception as exc:
            LOGGER.warning("StreamSession: history write failed for context=%s: %s", self._context_id, exc)
            error = PersistenceError(details={"exception": type(exc).__name__, "reason": str(exc)})
            return self._fail(exchange, request, error, text=text, outcome=outcome)

        display_text = outcome.display_text if outcome is not None else text
        result = ExchangeResult(
            exchange_id=exchange.exchange_id,
            status=SessionState.COMMITTED,
            outcome=outcome,
            text=text,
        )
        LOGGER.debug(
            "StreamSession: exchange committed, context=%s, exchange=%s, chunks=%d",
            self._context_id,
            exchange.exchange_id,
            exchange.chunk_count,
        )
        self._last_failed_request = None
        self._finish(exchange, result)
        self._publish(
            ExchangeCommitted(
                context_id=self._context_id,
                exchange_id=exchange.exchange_id,
                display_text=display_text,
                payload=payload,
            )
        )
        return result

    def _parse_error(self, outcome: ParsedOutcome) -> StreamError | None:
        if outcome.parse_error is None:
            return None
        if outcome.parse_error == ErrorCode.MISSING_PAYLOAD:
            return MissingPayloadError()
        return MalformedJsonError(raw_text=outcome.raw_payload or "")

    def _check_payload(
        self,
        outcome: ParsedOutcome,
        normalizer: Normalizer | None,
    ) -> tuple[dict[str, Any] | None, StreamError | None]:
        payload = outcome.json or {}
        reported = _reported_error(payload)
        if reported is not None:
            message = reported or outcome.display_text.strip() or "The AI reported an error"
            return None, PayloadRejectedError(message=message, details={"payload": payload})
        if normalizer is None:
            return payload, None
        try:
            return normalizer(payload, outcome.display_text), None
        except Exception as exc:
            LOGGER.debug("Normalizer rejected payload: %s", exc, exc_info=True)
            return None, PayloadRejectedError(details={"reason": str(exc)})

    def _fail(
        self,
        exchange: StreamExchange,
        request: _Request,
        error: StreamError,
        *,
        text: str,
        outcome: ParsedOutcome | None = None,
    ) -> ExchangeResult:
        LOGGER.warning(
            "StreamSession: exchange failed, context=%s, exchange=%s, error=%s",
            self._context_id,
            exchange.exchange_id,
            error,
        )
        result = ExchangeResult(
            exchange_id=exchange.exchange_id,
            status=SessionState.FAILED,
            outcome=outcome,
            error=error,
            text=text,
        )
        if error.is_retryable:
            self._last_failed_request = request
        self._state = SessionState.FAILED
        self._finish(exchange, result)
        self._publish(
            ExchangeFailed(
                context_id=self._context_id,
                exchange_id=exchange.exchange_id,
                error_code=error.error_code,
                message=error.message,
                retryable=error.is_retryable,
                details=error.to_dict(),
            )
        )
        return result

    def _abort(self, exchange: StreamExchange, reason: str) -> None:
        """Single cancel path shared by user cancel, idle timeout and caller cancel."""
        exchange.cancelled = True
        exchange.cancel_reason = reason
        exchange.is_streaming = False
        exchange.signal.abort(reason)
        LOGGER.debug(
            "StreamSession: exchange cancelled, context=%s, exchange=%s, reason=%s",
            self._context_id,
            exchange.exchange_id,
            reason,
        )
        if self._exchange is exchange:
            self._state = SessionState.CANCELLED
            self._detach()
        self._publish(ExchangeCanceled(context_id=self._context_id, exchange_id=exchange.exchange_id, reason=reason))

    def _cancelled_result(self, exchange: StreamExchange) -> ExchangeResult:
        result = ExchangeResult(
            exchange_id=exchange.exchange_id,
            status=SessionState.CANCELLED,
            cancel_reason=exchange.cancel_reason,
        )
        self._last_result = result
        return result

    def _finish(self, exchange: StreamExchange, result: ExchangeResult) -> None:
        self._last_result = result
        if self._exchange is exchange:
            self._detach()

    def _detach(self) -> None:
        self._exchange = None
        self._task = None
        self._state = SessionState.IDLE

    def _publish_preview(
        self,
        exchange: StreamExchange,
        *,
        payload_pending: bool,
        on_preview: PreviewCallback | None,
    ) -> None:
        if on_preview is not None:
            try:
                on_preview(exchange.display_text)
            except Exception:  # pragma: no cover
                LOGGER.debug("Error in preview callback", exc_info=True)
        self._publish(
            ExchangePreview(
                context_id=self._context_id,
                exchange_id=exchange.exchange_id,
                display_text=exchange.display_text,
                payload_pending=payload_pending,
            )
        )

    def _publish(self, event: Any) -> None:
        if self._bus is not None:
            self._bus.publish(event)


def _reported_error(payload: Mapping[str, Any]) -> str | None:
    """Return the model-reported error message, or None when the payload is fine."""
    error = payload.get("error")
    status = payload.get("status")
    if not error and status != "error":
        return None
    for candidate in (error, payload.get("message")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return ""


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


async def _close_iterator(iterator: AsyncIterator[str]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:  # pragma: no cover - defensive guard
        LOGGER.debug("Closing transport stream failed", exc_info=True)


__all__ = ["StreamSession", "PreviewCallback"]
