"""Normalizers that coerce parsed feedback JSON into stable shapes."""

from __future__ import annotations

import math
from typing import Any, Callable, Mapping

Normalizer = Callable[[Mapping[str, Any], str], dict[str, Any]]

_STATUSES = ("pass", "warn", "fail")


def _require_object(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, Mapping):
        raise ValueError("AI response JSON is not an object")
    return dict(payload)


def _as_string(value: Any, fallback: str = "") -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return fallback
    return str(value)


def _as_number(value: Any, fallback: float = 0) -> float:
    if isinstance(value, bool):
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if math.isfinite(number) else fallback


def _clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def _score(value: Any, high: float) -> int | float:
    clamped = float(_clamp(_as_number(value), 0, high))
    return int(clamped) if clamped.is_integer() else clamped


def _status(value: Any, fallback: str = "warn") -> str:
    status = str(value or "").strip().lower()
    return status if status in _STATUSES else fallback


def _string_list(value: Any) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    text = str(value or "").strip()
    return [text] if text else []


def _object_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, (list, tuple)):
        return []
    return [dict(item) for item in value if isinstance(item, Mapping)]


def normalize_essay_logic(payload: Mapping[str, Any], display_text: str = "") -> dict[str, Any]:
    data = _require_object(payload)
    data.update(
        status=_status(data.get("status")),
        comment=_as_string(data.get("comment"), display_text),
        suggestion=_as_string(data.get("suggestion")),
        keyPoints=_string_list(data.get("keyPoints")),
    )
    return data


def normalize_essay_grammar(payload: Mapping[str, Any], display_text: str = "") -> dict[str, Any]:
    data = _require_object(payload)
    issues = [
        {
            "original": _as_string(issue.get("original")),
            "correction": _as_string(issue.get("correction")),
            "issue": _as_string(issue.get("issue")),
        }
        for issue in _object_list(data.get("grammar_issues"))
    ]
    vocab = [
        {key: _as_string(entry.get(key)) for key in ("word", "meaning", "collocation", "example", "scenario")}
        for entry in _object_list(data.get("recommended_vocab"))
    ]
    data.update(
        score=_score(data.get("score"), 10),
        comment=_as_string(data.get("comment"), display_text),
        grammar_issues=issues,
        recommended_vocab=vocab,
        improved_version=_as_string(data.get("improved_version")),
    )
    return data


def normalize_essay_scoring(payload: Mapping[str, Any], display_text: str = "") -> dict[str, Any]:
    data = _require_object(payload)
    data.update(
        score=_score(data.get("score"), 20),
        comment=_as_string(data.get("comment"), display_text),
        strengths=_string_list(data.get("strengths")),
        weaknesses=_string_list(data.get("weaknesses")),
    )
    return data


def normalize_letter_logic(payload: Mapping[str, Any], display_text: str = "") -> dict[str, Any]:
    data = _require_object(payload)
    content_check = data.get("content_check")
    if not isinstance(content_check, Mapping):
        content_check = {}
    data.update(
        status=_status(data.get("status")),
        score=_score(data.get("score"), 10),
        comment=_as_string(data.get("comment"), display_text),
        suggestion=_as_string(data.get("suggestion")),
        format_hints=_string_list(data.get("format_hints")),
        content_check={
            "covered": _string_list(content_check.get("covered")),
            "missing": _string_list(content_check.get("missing")),
        },
        vocab_tips=_string_list(data.get("vocab_tips")),
    )
    return data


def _format_check(value: Any) -> dict[str, Any]:
    check = value if isinstance(value, Mapping) else {}
    return {
        "salutation": _status(check.get("salutation")),
        "signOff": _status(check.get("signOff")),
        "punctuation": _status(check.get("punctuation")),
        "issues": _string_list(check.get("issues")),
    }


def _dimensions(value: Any) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        return {}
    result: dict[str, Any] = {}
    for key, dimension in value.items():
        if not isinstance(dimension, Mapping):
            continue
        entry = dict(dimension)
        entry["score"] = _as_number(dimension.get("score"))
        entry["comment"] = _as_string(dimension.get("comment"))
        result[str(key)] = entry
    return result


def normalize_letter_scoring(payload: Mapping[str, Any], display_text: str = "") -> dict[str, Any]:
    data = _require_object(payload)
    data.update(
        score=_score(data.get("score"), 10),
        level=_as_string(data.get("level")),
        comment=_as_string(data.get("comment"), display_text),
        dimensions=_dimensions(data.get("dimensions")),
        format_check=_format_check(data.get("format_check")),
        strengths=_string_list(data.get("strengths")),
        weaknesses=_string_list(data.get("weaknesses")),
        improved_version=_as_string(data.get("improved_version")),
        checklist_reminder=_string_list(data.get("checklist_reminder")),
    )
    return data


NORMALIZERS: Mapping[str, Normalizer] = {
    "logic": normalize_essay_logic,
    "grammar": normalize_essay_grammar,
    "scoring": normalize_essay_scoring,
    "letter_logic": normalize_letter_logic,
    "letter_scoring": normalize_letter_scoring,
}


__all__ = [
    "Normalizer",
    "NORMALIZERS",
    "normalize_essay_logic",
    "normalize_essay_grammar",
    "normalize_essay_scoring",
    "normalize_letter_logic",
    "normalize_letter_scoring",
]
