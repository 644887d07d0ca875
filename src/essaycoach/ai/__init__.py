"""AI client, streaming JSON parsing and transport adapters."""

from .client import AIClient, AIStreamEvent, ClientSettings
from .errors import ErrorCode, StreamError, TransportError
from .streaming_json import ParsedOutcome, SegmentResult, extract, parse
from .transport import AbortSignal, OpenAITransport, TransportProvider

__all__ = [
    "AIClient",
    "AIStreamEvent",
    "ClientSettings",
    "ErrorCode",
    "StreamError",
    "TransportError",
    "ParsedOutcome",
    "SegmentResult",
    "extract",
    "parse",
    "AbortSignal",
    "OpenAITransport",
    "TransportProvider",
]
