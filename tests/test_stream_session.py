"""Tests for the StreamSession state machine."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable, Sequence

import pytest

from essaycoach.ai.errors import (
    ConcurrentSendRejected,
    ErrorCode,
    ModelRefusalError,
    TransportCategory,
    TransportError,
)
from essaycoach.ai.normalization import normalize_essay_grammar
from essaycoach.ai.transport import AbortSignal
from essaycoach.conversation.models import SessionState, Turn
from essaycoach.conversation.persistence import InMemoryPersistence
from essaycoach.conversation.session import StreamSession
from essaycoach.conversation.store import ConversationStore
from essaycoach.events import (
    EventBus,
    ExchangeCanceled,
    ExchangeCommitted,
    ExchangeFailed,
    ExchangePreview,
    ExchangeStarted,
    HistoryCleared,
)


RESPONSE_CHUNKS = ["Looks ", "good.\n", "<FINAL_", "JSON>", '{"score":', "8}", "</FINAL_JSON>"]


# =============================================================================
# Fixtures
# =============================================================================


class ScriptedTransport:
    """Transport yielding a fixed list of chunks, then optionally failing or stalling."""

    def __init__(
        self,
        chunks: Sequence[str] = RESPONSE_CHUNKS,
        *,
        error: Exception | None = None,
        stall: bool = False,
        on_exhausted: Callable[[], None] | None = None,
    ) -> None:
        self.chunks = list(chunks)
        self.error = error
        self.stall = stall
        self.on_exhausted = on_exhausted
        self.calls: list[dict[str, Any]] = []
        self.signals: list[AbortSignal] = []
        self.closed = False

    async def stream(
        self,
        prompt: str,
        *,
        history: Sequence[dict[str, str]] = (),
        signal: AbortSignal,
    ) -> AsyncIterator[str]:
        self.calls.append({"prompt": prompt, "history": list(history)})
        self.signals.append(signal)
        try:
            for chunk in self.chunks:
                if signal.aborted:
                    return
                await asyncio.sleep(0)
                yield chunk
            if self.on_exhausted is not None:
                self.on_exhausted()
            if self.error is not None:
                raise self.error
            if self.stall:
                await asyncio.Event().wait()
        finally:
            self.closed = True


class QueueTransport:
    """Transport whose chunks are fed by the test one at a time."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[str | None] = asyncio.Queue()
        self.closed = False
        self.signal: AbortSignal | None = None

    def feed(self, *chunks: str | None) -> None:
        for chunk in chunks:
            self.queue.put_nowait(chunk)

    async def stream(
        self,
        prompt: str,
        *,
        history: Sequence[dict[str, str]] = (),
        signal: AbortSignal,
    ) -> AsyncIterator[str]:
        self.signal = signal
        try:
            while True:
                chunk = await self.queue.get()
                if chunk is None or signal.aborted:
                    return
                yield chunk
        finally:
            self.closed = True


class FailingPersistence(InMemoryPersistence):
    def save(self, context_id: str, turns: Sequence[Turn]) -> None:
        raise OSError("disk full")


class EventRecorder:
    def __init__(self, bus: EventBus) -> None:
        self.events: list[Any] = []
        for event_type in (
            ExchangeStarted,
            ExchangePreview,
            ExchangeCommitted,
            ExchangeFailed,
            ExchangeCanceled,
            HistoryCleared,
        ):
            bus.subscribe(event_type, self.events.append)

    def of_type(self, event_type: type) -> list[Any]:
        return [event for event in self.events if isinstance(event, event_type)]


@pytest.fixture
def store() -> ConversationStore:
    return ConversationStore(InMemoryPersistence())


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(event_bus: EventBus) -> EventRecorder:
    return EventRecorder(event_bus)


def make_session(transport: Any, store: ConversationStore, event_bus: EventBus | None = None, **kwargs: Any) -> StreamSession:
    return StreamSession("logic_1_a", transport, store, event_bus=event_bus, **kwargs)


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


# =============================================================================
# Initialization
# =============================================================================


class TestInitialization:
    def test_starts_idle(self, store: ConversationStore) -> None:
        session = make_session(ScriptedTransport(), store)
        assert session.state is SessionState.IDLE
        assert session.is_streaming is False
        assert session.display_text == ""
        assert session.current_exchange is None
        assert session.last_result is None

    def test_context_id_required(self, store: ConversationStore) -> None:
        with pytest.raises(ValueError):
            StreamSession("", ScriptedTransport(), store)


# =============================================================================
# Successful Exchanges
# =============================================================================


class TestCommit:
    @pytest.mark.asyncio
    async def test_structured_exchange_commits_turn_pair(
        self, store: ConversationStore, event_bus: EventBus, recorder: EventRecorder
    ) -> None:
        session = make_session(ScriptedTransport(), store, event_bus)

        result = await session.send("Review my essay")

        assert result.ok is True
        assert result.status is SessionState.COMMITTED
        assert result.json == {"score": 8}
        assert result.display_text == "Looks good.\n"
        history = await store.get_history("logic_1_a")
        assert [turn.role for turn in history] == ["user", "assistant"]
        assert history[0].content == "Review my essay"
        assert history[1].content == "".join(RESPONSE_CHUNKS)
        assert session.state is SessionState.IDLE
        assert session.last_result is result

        committed = recorder.of_type(ExchangeCommitted)
        assert len(committed) == 1
        assert committed[0].payload == {"score": 8}
        assert committed[0].display_text == "Looks good.\n"
        assert len(recorder.of_type(ExchangeStarted)) == 1

    @pytest.mark.asyncio
    async def test_previews_follow_commentary_and_hide_payload(
        self, store: ConversationStore, event_bus: EventBus, recorder: EventRecorder
    ) -> None:
        previews: list[str] = []
        session = make_session(ScriptedTransport(), store, event_bus)

        await session.send("Review", on_preview=previews.append)

        assert previews[0] == "Looks "
        assert previews[1] == "Looks good.\n"
        assert all("score" not in text for text in previews)
        assert all("<FINAL" not in text for text in previews)
        assert previews[-1] == "Looks good.\n"
        events = recorder.of_type(ExchangePreview)
        assert [event.display_text for event in events] == previews
        assert events[-1].payload_pending is True
        assert events[0].payload_pending is False

    @pytest.mark.asyncio
    async def test_display_text_is_live_during_stream(self, store: ConversationStore) -> None:
        transport = QueueTransport()
        session = make_session(transport, store)
        task = asyncio.create_task(session.send("Review"))

        transport.feed("Partial ")
        await wait_until(lambda: session.display_text == "Partial ")
        assert session.is_streaming is True
        assert session.state is SessionState.STREAMING

        transport.feed('<FINAL_JSON>{"ok": true}</FINAL_JSON>', None)
        result = await task

        assert result.json == {"ok": True}
        assert session.display_text == ""
        assert session.is_streaming is False

    @pytest.mark.asyncio
    async def test_history_is_sent_to_transport(self, store: ConversationStore) -> None:
        transport = ScriptedTransport()
        session = make_session(transport, store)

        await session.send("first")
        await session.send("second")

        assert transport.calls[0]["history"] == []
        assert transport.calls[1]["history"] == [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "".join(RESPONSE_CHUNKS)},
        ]
        assert await store.turn_count("logic_1_a") == 4

    @pytest.mark.asyncio
    async def test_history_limit_and_opt_out(self, store: ConversationStore) -> None:
        transport = ScriptedTransport()
        session = make_session(transport, store, history_limit=1)

        await session.send("one")
        await session.send("two")
        await session.send("three")
        await session.send("four", use_history=False)

        assert [message["content"] for message in transport.calls[2]["history"]][0] == "two"
        assert len(transport.calls[2]["history"]) == 2
        assert transport.calls[3]["history"] == []

    @pytest.mark.asyncio
    async def test_chat_mode_commits_full_text(self, store: ConversationStore) -> None:
        session = make_session(ScriptedTransport(["Hello ", "there."]), store)

        result = await session.send("Hi", structured=False)

        assert result.ok is True
        assert result.json is None
        assert result.display_text == "Hello there."
        history = await store.get_history("logic_1_a")
        assert history[1].content == "Hello there."

    @pytest.mark.asyncio
    async def test_normalizer_shapes_payload(self, store: ConversationStore) -> None:
        chunks = ['Solid.<FINAL_JSON>{"score": 14, "grammar_issues": "none"}</FINAL_JSON>']
        session = make_session(ScriptedTransport(chunks), store)

        result = await session.send("Grammar check", normalizer=normalize_essay_grammar)

        assert result.ok is True
        assert result.json["score"] == 10
        assert result.json["grammar_issues"] == []
        assert result.json["comment"] == "Solid."

    @pytest.mark.asyncio
    async def test_empty_prompt_rejected(self, store: ConversationStore) -> None:
        session = make_session(ScriptedTransport(), store)
        with pytest.raises(ValueError):
            await session.send("   ")
        assert session.state is SessionState.IDLE


# =============================================================================
# Concurrency
# =============================================================================


class TestConcurrentSend:
    @pytest.mark.asyncio
    async def test_second_send_rejected_while_streaming(self, store: ConversationStore) -> None:
        transport = QueueTransport()
        session = make_session(transport, store)

        first = asyncio.create_task(session.send("first"))
        await wait_until(lambda: session.is_streaming)

        with pytest.raises(ConcurrentSendRejected) as excinfo:
            await session.send("second")
        assert excinfo.value.context_id == "logic_1_a"
        assert excinfo.value.is_retryable is False

        transport.feed('ok<FINAL_JSON>{"a": 1}</FINAL_JSON>', None)
        result = await first

        assert result.ok is True
        history = await store.get_history("logic_1_a")
        assert [turn.content for turn in history][0] == "first"
        assert len(history) == 2

    @pytest.mark.asyncio
    async def test_different_contexts_stream_independently(self, store: ConversationStore) -> None:
        first = StreamSession("logic_1_a", ScriptedTransport(), store)
        second = StreamSession("logic_1_b", ScriptedTransport(), store)

        results = await asyncio.gather(first.send("a"), second.send("b"))

        assert all(result.ok for result in results)
        assert await store.turn_count("logic_1_a") == 2
        assert await store.turn_count("logic_1_b") == 2


# =============================================================================
# Cancellation
# =============================================================================


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream_leaves_history_unchanged(
        self, store: ConversationStore, event_bus: EventBus, recorder: EventRecorder
    ) -> None:
        chunks = ["one ", "two ", "three ", "four ", '<FINAL_JSON>{"a": 1}</FINAL_JSON>']
        transport = ScriptedTransport(chunks)
        session = make_session(transport, store, event_bus)
        await session.send("before")
        before = await store.get_history("logic_1_a")

        transport.chunks = chunks
        previews: list[str] = []

        def on_preview(text: str) -> None:
            previews.append(text)
            if len(previews) == 3:
                session.cancel()

        result = await session.send("cancel me", on_preview=on_preview)

        assert result.cancelled is True
        assert result.cancel_reason == "user"
        assert result.error is None
        assert await store.get_history("logic_1_a") == before
        assert len(previews) == 3
        assert transport.signals[-1].aborted is True
        assert recorder.of_type(ExchangeFailed) == []
        canceled = recorder.of_type(ExchangeCanceled)
        assert len(canceled) == 1
        assert canceled[0].reason == "user"
        assert session.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_cancel_from_other_task_closes_transport(self, store: ConversationStore) -> None:
        transport = QueueTransport()
        session = make_session(transport, store)
        previews: list[str] = []
        task = asyncio.create_task(session.send("Review", on_preview=previews.append))

        transport.feed("partial ")
        await wait_until(lambda: previews == ["partial "])
        assert session.cancel() is True
        assert session.state is SessionState.IDLE
        transport.feed("late chunk")

        result = await task

        assert result.cancelled is True
        assert previews == ["partial "]
        assert transport.closed is True
        assert transport.signal is not None and transport.signal.aborted
        assert await store.get_history("logic_1_a") == []

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, store: ConversationStore, event_bus: EventBus, recorder: EventRecorder) -> None:
        transport = QueueTransport()
        session = make_session(transport, store, event_bus)
        assert session.cancel() is False

        task = asyncio.create_task(session.send("Review"))
        await wait_until(lambda: session.is_streaming)
        assert session.cancel() is True
        assert session.cancel() is False
        result = await task

        assert result.cancelled is True
        assert session.cancel() is False
        assert len(recorder.of_type(ExchangeCanceled)) == 1

    @pytest.mark.asyncio
    async def test_cancel_racing_completion_commits_nothing(self, store: ConversationStore) -> None:
        session: StreamSession | None = None

        def cancel_now() -> None:
            assert session is not None
            session.cancel()

        transport = ScriptedTransport(on_exhausted=cancel_now)
        session = make_session(transport, store)

        result = await session.send("Review")

        assert result.cancelled is True
        assert result.outcome is None
        assert await store.get_history("logic_1_a") == []

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_noop(self, store: ConversationStore) -> None:
        session = make_session(ScriptedTransport(), store)
        result = await session.send("Review")

        assert session.cancel() is False
        assert result.ok is True
        assert await store.turn_count("logic_1_a") == 2

    @pytest.mark.asyncio
    async def test_send_allowed_right_after_cancel(self, store: ConversationStore) -> None:
        transport = QueueTransport()
        session = make_session(transport, store)
        first = asyncio.create_task(session.send("first"))
        await wait_until(lambda: session.is_streaming)

        session.cancel()
        second_task = asyncio.create_task(session.send("second"))
        transport.feed('ok<FINAL_JSON>{"a": 1}</FINAL_JSON>', None)
        second = await second_task

        assert (await first).cancelled is True
        assert second.ok is True
        history = await store.get_history("logic_1_a")
        assert [turn.content for turn in history][0] == "second"

    @pytest.mark.asyncio
    async def test_caller_cancellation_propagates(self, store: ConversationStore) -> None:
        transport = QueueTransport()
        session = make_session(transport, store)
        task = asyncio.create_task(session.send("Review"))
        await wait_until(lambda: session.is_streaming)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert session.state is SessionState.IDLE
        assert transport.signal is not None and transport.signal.reason == "caller"
        assert await store.get_history("logic_1_a") == []

    @pytest.mark.asyncio
    async def test_idle_timeout_cancels_quietly(
        self, store: ConversationStore, event_bus: EventBus, recorder: EventRecorder
    ) -> None:
        transport = ScriptedTransport(["Thinking..."], stall=True)
        session = make_session(transport, store, event_bus, idle_timeout=0.05)

        result = await session.send("Review")

        assert result.cancelled is True
        assert result.cancel_reason == "timeout"
        assert result.error is None
        assert transport.signals[0].reason == "timeout"
        assert await store.get_history("logic_1_a") == []
        assert recorder.of_type(ExchangeCanceled)[0].reason == "timeout"
        assert recorder.of_type(ExchangeFailed) == []


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_transport_error_keeps_commentary_and_is_retryable(
        self, store: ConversationStore, event_bus: EventBus, recorder: EventRecorder
    ) -> None:
        error = TransportError(message="connection reset", category=TransportCategory.NETWORK)
        session = make_session(ScriptedTransport(["Partial ", "analysis"], error=error), store, event_bus)

        result = await session.send("Review")

        assert result.status is SessionState.FAILED
        assert result.error is error
        assert result.retryable is True
        assert result.text == "Partial analysis"
        assert await store.get_history("logic_1_a") == []
        failed = recorder.of_type(ExchangeFailed)
        assert failed[0].error_code == ErrorCode.TRANSPORT_ERROR
        assert failed[0].details["category"] == TransportCategory.NETWORK
        assert session.can_retry is True

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_classified(self, store: ConversationStore) -> None:
        session = make_session(ScriptedTransport(["x"], error=RuntimeError("429 Too Many Requests")), store)

        result = await session.send("Review")

        assert isinstance(result.error, TransportError)
        assert result.error.category == TransportCategory.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_model_refusal_is_reported_as_refusal(
        self, store: ConversationStore, event_bus: EventBus, recorder: EventRecorder
    ) -> None:
        error = ModelRefusalError(refusal="I can't grade this.")
        session = make_session(ScriptedTransport([], error=error), store, event_bus)

        result = await session.send("Review")

        assert result.status is SessionState.FAILED
        assert result.error is error
        assert result.retryable is False
        assert session.can_retry is False
        assert await store.get_history("logic_1_a") == []
        failed = recorder.of_type(ExchangeFailed)
        assert failed[0].error_code == ErrorCode.MODEL_REFUSAL
        assert failed[0].details["refusal"] == "I can't grade this."

    @pytest.mark.asyncio
    async def test_api_key_error_not_retryable(self, store: ConversationStore) -> None:
        error = TransportError(message="bad key", category=TransportCategory.API_KEY, status_code=401)
        session = make_session(ScriptedTransport([], error=error), store)

        result = await session.send("Review")

        assert result.retryable is False
        assert session.can_retry is False

    @pytest.mark.asyncio
    async def test_missing_payload(self, store: ConversationStore) -> None:
        session = make_session(ScriptedTransport(["Thinking..."]), store)

        result = await session.send("Review")

        assert result.status is SessionState.FAILED
        assert result.error.error_code == ErrorCode.MISSING_PAYLOAD
        assert result.text == "Thinking..."
        assert await store.get_history("logic_1_a") == []

    @pytest.mark.asyncio
    async def test_malformed_payload_exposes_raw_text(self, store: ConversationStore) -> None:
        session = make_session(ScriptedTransport(["Note.<FINAL_JSON>{oops}</FINAL_JSON>"]), store)

        result = await session.send("Review")

        assert result.error.error_code == ErrorCode.MALFORMED_JSON
        assert result.error.raw_text == "{oops}"
        assert result.display_text == "Note."

    @pytest.mark.asyncio
    async def test_payload_reporting_error_is_rejected(self, store: ConversationStore) -> None:
        chunks = ['<FINAL_JSON>{"status": "error", "message": "essay too short"}</FINAL_JSON>']
        session = make_session(ScriptedTransport(chunks), store)

        result = await session.send("Review")

        assert result.error.error_code == ErrorCode.PAYLOAD_REJECTED
        assert result.error.message == "essay too short"
        assert await store.get_history("logic_1_a") == []

    @pytest.mark.asyncio
    async def test_normalizer_failure_is_rejected(self, store: ConversationStore) -> None:
        def broken(payload: Any, display_text: str) -> dict[str, Any]:
            raise ValueError("missing score")

        session = make_session(ScriptedTransport(), store)

        result = await session.send("Review", normalizer=broken)

        assert result.error.error_code == ErrorCode.PAYLOAD_REJECTED
        assert result.error.details == {"reason": "missing score"}

    @pytest.mark.asyncio
    async def test_empty_chat_answer_fails(self, store: ConversationStore) -> None:
        session = make_session(ScriptedTransport(["  "]), store)

        result = await session.send("Hi", structured=False)

        assert result.error.error_code == ErrorCode.MISSING_PAYLOAD

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_history_unchanged(self) -> None:
        store = ConversationStore(FailingPersistence())
        session = make_session(ScriptedTransport(), store)

        result = await session.send("Review")

        assert result.error.error_code == ErrorCode.PERSISTENCE_ERROR
        assert result.error.details["exception"] == "OSError"
        assert await store.get_history("logic_1_a") == []
        assert session.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_retry_resends_failed_request(self, store: ConversationStore) -> None:
        transport = ScriptedTransport(["Thinking..."])
        session = make_session(transport, store)
        failed = await session.send("Review", use_history=False)
        assert failed.retryable is True

        transport.chunks = RESPONSE_CHUNKS
        result = await session.retry()

        assert result.ok is True
        assert transport.calls[-1]["prompt"] == "Review"
        assert session.can_retry is False

    @pytest.mark.asyncio
    async def test_retry_without_failure_raises(self, store: ConversationStore) -> None:
        session = make_session(ScriptedTransport(), store)
        with pytest.raises(RuntimeError):
            await session.retry()


# =============================================================================
# History
# =============================================================================


class TestHistory:
    @pytest.mark.asyncio
    async def test_clear_history(self, store: ConversationStore, event_bus: EventBus, recorder: EventRecorder) -> None:
        session = make_session(ScriptedTransport(), store, event_bus)
        await session.send("Review")
        assert len(await session.get_history()) == 2

        await session.clear_history()

        assert await session.get_history() == []
        assert recorder.of_type(HistoryCleared)[0].context_id == "logic_1_a"

    @pytest.mark.asyncio
    async def test_clear_history_cancels_live_exchange(self, store: ConversationStore) -> None:
        transport = QueueTransport()
        session = make_session(transport, store)
        task = asyncio.create_task(session.send("Review"))
        await wait_until(lambda: session.is_streaming)

        await session.clear_history()
        result = await task

        assert result.cancelled is True
        assert await session.get_history() == []
