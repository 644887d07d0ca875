"""Standardized error types for the streaming feedback pipeline.

Retryable failures are returned to callers inside an exchange result rather
than raised, so every error carries enough structure (code, message,
suggestion) to be rendered next to a retry action.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    PermissionDeniedError,
    RateLimitError,
)


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes used in exchange results."""

    TRANSPORT_ERROR = "transport_error"
    CANCELLED = "cancelled"
    MISSING_PAYLOAD = "missing_payload"
    MALFORMED_JSON = "malformed_json"
    PAYLOAD_REJECTED = "payload_rejected"
    PERSISTENCE_ERROR = "persistence_error"
    CONCURRENT_SEND_REJECTED = "concurrent_send_rejected"
    MODEL_REFUSAL = "model_refusal"


class TransportCategory:
    """Failure categories for transport errors."""

    NETWORK = "network"
    API_KEY = "api_key"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    SERVER = "server"
    UNKNOWN = "unknown"


_CATEGORY_SUGGESTIONS: dict[str, str] = {
    TransportCategory.NETWORK: "Check the network connection and retry",
    TransportCategory.API_KEY: "Check that the API key is configured and still valid",
    TransportCategory.RATE_LIMIT: "Too many requests; wait a minute before retrying",
    TransportCategory.TIMEOUT: "The model took too long to answer; retry or shorten the input",
    TransportCategory.SERVER: "The provider returned an error; retry shortly",
    TransportCategory.UNKNOWN: "Retry the request",
}


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class StreamError(Exception):
    """Base exception class for all pipeline errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance for recovery.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    retryable: ClassVar[bool] = True

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for UI or log payloads."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
            "retryable": self.is_retryable,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    @property
    def is_retryable(self) -> bool:
        return type(self).retryable

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Transport Errors
# -----------------------------------------------------------------------------

@dataclass
class TransportError(StreamError):
    """Network or HTTP failure while the response was streaming."""

    error_code: str = field(default=ErrorCode.TRANSPORT_ERROR)
    message: str = field(default="The AI service could not be reached")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    category: str = field(default=TransportCategory.UNKNOWN)
    status_code: int | None = field(default=None)

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.suggestion:
            self.suggestion = _CATEGORY_SUGGESTIONS.get(self.category, "")

    @property
    def is_retryable(self) -> bool:
        return self.category != TransportCategory.API_KEY

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["category"] = self.category
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result


# -----------------------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------------------

@dataclass
class CancelledByUser(StreamError):
    """Marker for a user-initiated or idle-timeout cancel. Never shown to users."""

    error_code: str = field(default=ErrorCode.CANCELLED)
    message: str = field(default="The exchange was cancelled")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    retryable: ClassVar[bool] = False


# -----------------------------------------------------------------------------
# Parse Errors
# -----------------------------------------------------------------------------

@dataclass
class MissingPayloadError(StreamError):
    """The model never produced a sentinel-wrapped JSON block."""

    error_code: str = field(default=ErrorCode.MISSING_PAYLOAD)
    message: str = field(default="The AI response did not contain a result block")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Retry the request")


@dataclass
class MalformedJsonError(StreamError):
    """A payload was present but is not valid JSON after cleanup."""

    error_code: str = field(default=ErrorCode.MALFORMED_JSON)
    message: str = field(default="The AI result block is not valid JSON")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Retry the request")

    raw_text: str = field(default="")

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["raw_text"] = self.raw_text
        return result


@dataclass
class PayloadRejectedError(StreamError):
    """The JSON parsed but reports an error or fails step normalization."""

    error_code: str = field(default=ErrorCode.PAYLOAD_REJECTED)
    message: str = field(default="The AI result has an unexpected structure")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Retry the request")


# -----------------------------------------------------------------------------
# Model Errors
# -----------------------------------------------------------------------------

@dataclass
class ModelRefusalError(StreamError):
    """The model declined to answer; retrying the same prompt rarely helps."""

    error_code: str = field(default=ErrorCode.MODEL_REFUSAL)
    message: str = field(default="The AI declined to review this text")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Rephrase the request or remove the passage the AI refused")

    retryable: ClassVar[bool] = False

    refusal: str = field(default="")

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["refusal"] = self.refusal
        return result


# -----------------------------------------------------------------------------
# Storage / Programming Errors
# -----------------------------------------------------------------------------

@dataclass
class PersistenceError(StreamError):
    """The conversation store could not durably write a completed exchange."""

    error_code: str = field(default=ErrorCode.PERSISTENCE_ERROR)
    message: str = field(default="Conversation history could not be saved")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Free some storage space and retry")


@dataclass
class ConcurrentSendRejected(StreamError):
    """send() was called while an exchange for the same context is streaming."""

    error_code: str = field(default=ErrorCode.CONCURRENT_SEND_REJECTED)
    message: str = field(default="An exchange is already streaming for this context")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Wait for the current exchange or cancel it first")

    retryable: ClassVar[bool] = False

    context_id: str | None = field(default=None)


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------

_MESSAGE_HINTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (TransportCategory.API_KEY, ("401", "403", "api key", "unauthorized", "invalid key")),
    (TransportCategory.RATE_LIMIT, ("429", "rate limit", "too many requests")),
    (TransportCategory.TIMEOUT, ("timeout", "timed out")),
    (TransportCategory.NETWORK, ("connection", "network", "failed to fetch", "name resolution")),
)


def classify_transport_exception(exc: BaseException) -> TransportError:
    """Map a client/network exception onto a :class:`TransportError`."""

    if isinstance(exc, TransportError):
        return exc

    status_code = getattr(exc, "status_code", None)
    if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
        category = TransportCategory.API_KEY
    elif isinstance(exc, RateLimitError):
        category = TransportCategory.RATE_LIMIT
    elif isinstance(exc, (APITimeoutError, httpx.TimeoutException)):
        category = TransportCategory.TIMEOUT
    elif isinstance(exc, (APIConnectionError, httpx.TransportError)):
        category = TransportCategory.NETWORK
    elif isinstance(exc, APIStatusError):
        category = _category_for_status(exc.status_code)
    else:
        category = _category_from_message(str(exc))

    message = str(exc) or type(exc).__name__
    return TransportError(
        message=message,
        category=category,
        status_code=status_code if isinstance(status_code, int) else None,
        details={"exception": type(exc).__name__},
    )


def _category_for_status(status_code: int) -> str:
    if status_code in (401, 403):
        return TransportCategory.API_KEY
    if status_code == 429:
        return TransportCategory.RATE_LIMIT
    if status_code in (408, 504):
        return TransportCategory.TIMEOUT
    if status_code >= 500:
        return TransportCategory.SERVER
    return TransportCategory.UNKNOWN


def _category_from_message(message: str) -> str:
    lowered = message.lower()
    for category, hints in _MESSAGE_HINTS:
        if any(hint in lowered for hint in hints):
            return category
    return TransportCategory.UNKNOWN


__all__ = [
    "ErrorCode",
    "TransportCategory",
    "StreamError",
    "TransportError",
    "CancelledByUser",
    "MissingPayloadError",
    "MalformedJsonError",
    "PayloadRejectedError",
    "PersistenceError",
    "ModelRefusalError",
    "ConcurrentSendRejected",
    "classify_transport_exception",
]
