"""Sentinel-delimited JSON extraction for streamed model output.

Models are asked to answer with free-form commentary followed by a final
block wrapped in ``<FINAL_JSON>`` ... ``</FINAL_JSON>``. While the response
streams, :func:`extract` splits the accumulated buffer into the commentary
that may be shown and the payload region, which is only exposed once it is
complete. When the stream ends, :func:`parse` turns the buffer into a
:class:`ParsedOutcome` exactly once.

Segment boundaries are recomputed from the full buffer on every call. That
costs O(n) per chunk (O(n^2) for a whole stream) and keeps each result
consistent with the buffer it came from; buffers are a few KB of model output.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from .errors import ErrorCode

__all__ = [
    "FINAL_JSON_START_TAG",
    "FINAL_JSON_END_TAG",
    "SENTINEL_VERSION",
    "SegmentResult",
    "ParsedOutcome",
    "extract",
    "parse",
    "find_last_json_object",
    "clean_payload_text",
]

# Changing either tag breaks every prompt built with build_final_json_prompt().
FINAL_JSON_START_TAG = "<FINAL_JSON>"
FINAL_JSON_END_TAG = "</FINAL_JSON>"
SENTINEL_VERSION = 1

_LEADING_FENCE_RE = re.compile(r"^```[\w-]*\s*")
_TRAILING_FENCE_RE = re.compile(r"\s*```$")


@dataclass(slots=True, frozen=True)
class SegmentResult:
    """Split of an accumulating buffer into display text and payload region."""

    display_text: str
    payload_region: str | None = None
    payload_complete: bool = False


@dataclass(slots=True, frozen=True)
class ParsedOutcome:
    """Result of parsing a completed response buffer."""

    json: dict[str, Any] | None
    display_text: str
    parse_error: str | None = None
    raw_payload: str | None = None

    @property
    def ok(self) -> bool:
        return self.parse_error is None and self.json is not None


def extract(buffer: str) -> SegmentResult:
    """Split ``buffer`` into commentary and the sentinel payload region.

    The last opening tag wins so that a tag quoted inside the commentary does
    not hide the real payload. Once a closing tag has arrived, earlier opening
    tags are tried as well when the last one does not frame a JSON object,
    which covers a tag quoted inside a JSON string value. The payload is
    reported only when the closing tag follows the opening tag. A trailing
    partial opening tag is held back from ``display_text``.
    """

    return _segment(buffer or "", streaming=True)


def parse(buffer: str) -> ParsedOutcome:
    """Parse the final JSON block from a completed response buffer."""

    text = buffer or ""
    segment = _segment(text, streaming=False)
    display_text = segment.display_text

    if segment.payload_complete:
        candidate = segment.payload_region or ""
    else:
        span = find_last_json_object(text)
        if span is None:
            return ParsedOutcome(json=None, display_text=display_text, parse_error=ErrorCode.MISSING_PAYLOAD)
        start, end = span
        candidate = text[start:end]
        if FINAL_JSON_START_TAG not in text:
            display_text = (text[:start] + text[end:]).rstrip()

    value = _decode_object(candidate)
    if value is None:
        return ParsedOutcome(
            json=None,
            display_text=display_text,
            parse_error=ErrorCode.MALFORMED_JSON,
            raw_payload=candidate,
        )
    return ParsedOutcome(json=value, display_text=display_text)


def clean_payload_text(text: str) -> str:
    """Strip whitespace, wrapping code fences and stray characters around a JSON object.

    Only fences that open or close the payload are removed; fences inside
    string values are left alone.
    """

    cleaned = (text or "").strip()
    cleaned = _LEADING_FENCE_RE.sub("", cleaned)
    cleaned = _TRAILING_FENCE_RE.sub("", cleaned).strip()
    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first == -1 or last < first:
        return cleaned
    return cleaned[first : last + 1]


def find_last_json_object(text: str) -> tuple[int, int] | None:
    """Return the ``(start, end)`` span of the last balanced top-level object.

    Braces inside JSON string literals are ignored, and backslash escapes
    inside strings are honoured. Unbalanced closing braces reset the scan.
    """

    last_span: tuple[int, int] | None = None
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text or ""):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            # Quotes only delimit strings inside an object; prose quotes are ignored.
            if depth > 0:
                in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}":
            if depth == 0:
                continue
            depth -= 1
            if depth == 0:
                last_span = (start, index + 1)
    return last_span


def _segment(text: str, *, streaming: bool) -> SegmentResult:
    starts = _positions(text, FINAL_JSON_START_TAG)
    if not starts:
        return SegmentResult(display_text=_without_partial_tag(text) if streaming else text)

    last = starts[-1]
    fallback_region: str | None = None
    for start in reversed(starts):
        regions = _regions_after(text, start)
        if start == last:
            if not regions and streaming:
                return SegmentResult(display_text=text[:last])
            fallback_region = regions[0] if regions else None
        for region in regions:
            if _decode_object(region) is not None:
                return SegmentResult(display_text=text[:start], payload_region=region, payload_complete=True)
    if fallback_region is None:
        return SegmentResult(display_text=text[:last])
    return SegmentResult(display_text=text[:last], payload_region=fallback_region, payload_complete=True)


def _positions(text: str, tag: str) -> list[int]:
    positions: list[int] = []
    index = text.find(tag)
    while index != -1:
        positions.append(index)
        index = text.find(tag, index + len(tag))
    return positions


def _regions_after(text: str, start: int) -> list[str]:
    """Return every candidate payload between ``start`` and a later closing tag."""
    payload_start = start + len(FINAL_JSON_START_TAG)
    return [
        text[payload_start:end]
        for end in _positions(text, FINAL_JSON_END_TAG)
        if end >= payload_start
    ]


def _without_partial_tag(text: str) -> str:
    for size in range(min(len(FINAL_JSON_START_TAG) - 1, len(text)), 0, -1):
        if text.endswith(FINAL_JSON_START_TAG[:size]):
            return text[:-size]
    return text


def _decode_object(text: str) -> dict[str, Any] | None:
    # Valid JSON is taken verbatim; cleanup only runs when that fails.
    for attempt in (text.strip(), clean_payload_text(text)):
        try:
            value = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return None
