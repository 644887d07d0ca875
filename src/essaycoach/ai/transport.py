"""Transport providers that turn a prompt into a stream of text chunks.

The session controller only depends on :class:`TransportProvider`; any
vendor adapter plugged in underneath yields plain ``str`` chunks in arrival
order and stops as soon as the supplied :class:`AbortSignal` is aborted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Mapping, Protocol, Sequence, runtime_checkable

from .client import REFUSAL_EVENT, TEXT_EVENT, AIClient
from .errors import ModelRefusalError, classify_transport_exception
from .prompts import JSON_MODE_SYSTEM_PROMPT

LOGGER = logging.getLogger(__name__)

HistoryMessages = Sequence[Mapping[str, str]]


class AbortSignal:
    """Cooperative cancellation flag shared between a session and its transport."""

    __slots__ = ("_event", "_reason", "_callbacks")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def abort(self, reason: str = "user") -> None:
        """Signal the transport to stop emitting chunks. Repeated calls are no-ops."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pragma: no cover - defensive guard
                LOGGER.debug("Abort callback raised", exc_info=True)

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on abort, immediately if already aborted."""
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    async def wait(self) -> None:
        await self._event.wait()


@runtime_checkable
class TransportProvider(Protocol):
    """Anything able to stream a model answer for a prompt."""

    def stream(
        self,
        prompt: str,
        *,
        history: HistoryMessages = (),
        signal: AbortSignal,
    ) -> AsyncIterator[str]:
        """Yield text chunks in arrival order until the answer ends or ``signal`` aborts.

        Network and HTTP failures must surface as exceptions (ideally
        :class:`~essaycoach.ai.errors.TransportError`); an abort ends the
        iteration quietly.
        """


class OpenAITransport:
    """Transport adapter streaming answer text from :class:`AIClient`.

    Refusal text is not yielded; a stream that carried any ends with
    :class:`~essaycoach.ai.errors.ModelRefusalError`.
    """

    def __init__(
        self,
        client: AIClient,
        *,
        system_prompt: str | None = None,
        json_mode: bool = False,
        request_options: Mapping[str, Any] | None = None,
    ) -> None:
        self._client = client
        self._system_prompt = system_prompt
        self._json_mode = json_mode
        self._request_options = dict(request_options or {})

    @property
    def client(self) -> AIClient:
        return self._client

    def build_messages(self, prompt: str, history: HistoryMessages = ()) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        system_prompt = self._system_prompt
        if system_prompt is None and self._json_mode:
            system_prompt = JSON_MODE_SYSTEM_PROMPT
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for entry in history:
            role = entry.get("role")
            content = entry.get("content")
            if role in {"user", "assistant"} and isinstance(content, str):
                messages.append({"role": role, "content": content})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def stream(
        self,
        prompt: str,
        *,
        history: HistoryMessages = (),
        signal: AbortSignal,
    ) -> AsyncIterator[str]:
        options = dict(self._request_options)
        if self._json_mode:
            options.setdefault("response_format", {"type": "json_object"})
        events = self._client.stream_chat(self.build_messages(prompt, history), **options)
        refusal: list[str] = []
        try:
            async for event in events:
                if signal.aborted:
                    LOGGER.debug("OpenAITransport: abort observed, closing stream")
                    return
                if event.kind == TEXT_EVENT:
                    yield event.text
                elif event.kind == REFUSAL_EVENT:
                    refusal.append(event.text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if signal.aborted:
                LOGGER.debug("OpenAITransport: stream error after abort ignored: %s", exc)
                return
            raise classify_transport_exception(exc) from exc
        finally:
            await events.aclose()
        if refusal and not signal.aborted:
            text = "".join(refusal)
            LOGGER.info("OpenAITransport: model refused the request: %s", text)
            raise ModelRefusalError(refusal=text, details={"refusal": text})


__all__ = ["AbortSignal", "HistoryMessages", "TransportProvider", "OpenAITransport"]
