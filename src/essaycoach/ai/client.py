"""Streaming chat client for OpenAI-compatible endpoints (DeepSeek by default)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Mapping, Sequence

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIStatusError, RateLimitError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

LOGGER = logging.getLogger(__name__)

TEXT_EVENT = "text"
REFUSAL_EVENT = "refusal"

_RETRYABLE_EXCEPTIONS = (
    APIConnectionError,
    APIStatusError,
    RateLimitError,
    httpx.TimeoutException,
)

# SDK stream event type -> event kind handed to the transport.
_EVENT_KINDS = {
    "content.delta": TEXT_EVENT,
    "refusal.delta": REFUSAL_EVENT,
}


@dataclass(slots=True)
class ClientSettings:
    """Connection and sampling settings for :class:`AIClient`."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    temperature: float | None = 0.7
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class AIStreamEvent:
    """A piece of streamed answer text, or of a refusal."""

    kind: str
    text: str


class AIClient:
    """Streams chat completions and retries failed connection attempts.

    A request is retried only while nothing has been yielded yet. Once text
    reached the caller a retry would repeat it, so later failures propagate
    unchanged and the caller decides what to do with the partial answer.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or _build_openai_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        messages: Sequence[Mapping[str, str]],
        **options: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        """Yield text and refusal events for ``messages``.

        ``options`` are forwarded to the completions endpoint
        (``response_format``, ``max_tokens``, ...); ``temperature`` falls back
        to the configured default and ``metadata`` is merged over it.
        """

        request = self._build_request(messages, options)
        LOGGER.debug(
            "Streaming %s with %d message(s) from %s",
            request["model"],
            len(request["messages"]),
            self._settings.base_url,
        )
        if self._settings.debug_logging:
            _log_request(request)

        emitted = False
        async for attempt in self._retrying(lambda: not emitted):
            with attempt:
                async with self._client.chat.completions.stream(**request) as stream:
                    async for sdk_event in stream:
                        event = _convert_event(sdk_event)
                        if event is not None:
                            emitted = True
                            yield event

    async def aclose(self) -> None:
        """Release the underlying HTTP connection pool."""
        await self._client.close()

    def _build_request(self, messages: Sequence[Mapping[str, str]], options: Mapping[str, Any]) -> Dict[str, Any]:
        chat_messages = [dict(message) for message in messages]
        if not chat_messages:
            raise ValueError("At least one message is required to start a chat")

        extra = dict(options)
        request: Dict[str, Any] = {"model": self._settings.model, "messages": chat_messages}
        temperature = extra.pop("temperature", None)
        if temperature is None:
            temperature = self._settings.temperature
        if temperature is not None:
            request["temperature"] = temperature
        metadata = {**(self._settings.metadata or {}), **(extra.pop("metadata", None) or {})}
        if metadata:
            request["metadata"] = metadata
        request.update((key, value) for key, value in extra.items() if value is not None)
        return request

    def _retrying(self, may_retry: Callable[[], bool]) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_EXCEPTIONS) & retry_if_exception(lambda _exc: may_retry()),
            before_sleep=_log_retry,
        )


def _build_openai_client(settings: ClientSettings) -> AsyncOpenAI:
    # Retries are handled by tenacity so they can stop once output was yielded.
    return AsyncOpenAI(
        api_key=settings.api_key,
        base_url=settings.base_url,
        organization=settings.organization,
        timeout=settings.request_timeout,
        default_headers=dict(settings.default_headers) if settings.default_headers else None,
        max_retries=0,
    )


def _convert_event(sdk_event: Any) -> AIStreamEvent | None:
    kind = _EVENT_KINDS.get(getattr(sdk_event, "type", None) or "")
    delta = getattr(sdk_event, "delta", None)
    if kind is None or not delta:
        return None
    return AIStreamEvent(kind=kind, text=str(delta))


def _log_retry(state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome is not None else None
    LOGGER.info("Chat request failed before any output (attempt %d): %s", state.attempt_number, error)


def _log_request(request: Mapping[str, Any]) -> None:
    try:
        serialized = json.dumps(request, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        LOGGER.debug("Chat request (unserializable): %s", request)
    else:
        LOGGER.debug("Chat request:\n%s", serialized)


__all__ = ["AIClient", "AIStreamEvent", "ClientSettings", "REFUSAL_EVENT", "TEXT_EVENT"]
