"""Prompt helpers for the streaming feedback steps.

The helpers here only append output-format instructions and fill template
placeholders; the step templates themselves are authored elsewhere.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

from .streaming_json import FINAL_JSON_END_TAG, FINAL_JSON_START_TAG

JSON_MODE_SYSTEM_PROMPT = "You are a helpful assistant that responds in valid JSON format only."
DEFAULT_MARKDOWN_INSTRUCTION = "First write feedback for the student in Markdown (it is shown while streaming)."

# Payload shapes the model is asked to reproduce, keyed by workflow step.
JSON_EXAMPLES: Mapping[str, str] = {
    "logic": '{ "status": "pass/warn/fail", "comment": "(same as the Markdown feedback above)", '
    '"suggestion": "concrete improvement", "keyPoints": [] }',
    "grammar": '{ "score": 1-10, "comment": "(same as the Markdown feedback above)", "grammar_issues": '
    '[{ "original": "", "correction": "", "issue": "" }], "recommended_vocab": [{ "word": "", '
    '"meaning": "", "collocation": "", "example": "", "scenario": "" }], "improved_version": "" }',
    "scoring": '{ "score": 0-20, "comment": "(same as the Markdown feedback above)", '
    '"strengths": [], "weaknesses": [] }',
    "letter_logic": '{ "status": "pass/warn/fail", "score": 1-10, "comment": "(same as the Markdown feedback '
    'above)", "suggestion": "", "format_hints": [], "content_check": { "covered": [], "missing": [] }, '
    '"vocab_tips": [] }',
    "letter_scoring": '{ "score": 0-10, "level": "band", "comment": "(same as the Markdown feedback above)", '
    '"dimensions": {}, "format_check": { "salutation": "pass/warn/fail", "signOff": "pass/warn/fail", '
    '"punctuation": "pass/warn/fail", "issues": [] }, "strengths": [], "weaknesses": [], '
    '"improved_version": "", "checklist_reminder": [] }',
}

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(?P<key>[A-Za-z0-9_]+)\s*\}\}")


def build_final_json_prompt(
    base_prompt: str | None,
    *,
    markdown_instruction: str = DEFAULT_MARKDOWN_INSTRUCTION,
    json_example: str = "{}",
) -> str:
    """Append the two-part output contract to ``base_prompt``.

    The model is told to stream Markdown commentary first and to finish with
    strict JSON wrapped in the sentinel tags, without code fences and with
    nothing after the closing tag.
    """

    return f"""{base_prompt or ''}

## Output format (important, required for streaming)
Ignore any output format requested above and answer in exactly two parts:
1) {markdown_instruction}
2) The last part must be the JSON below wrapped in the tags shown (no ``` fences, no extra characters after the closing tag):
{FINAL_JSON_START_TAG}
{json_example}
{FINAL_JSON_END_TAG}"""


def build_step_prompt(step: str, base_prompt: str | None, **kwargs: Any) -> str:
    """Build a final-JSON prompt using the registered example for ``step``."""

    example = JSON_EXAMPLES.get(step, "{}")
    return build_final_json_prompt(base_prompt, json_example=example, **kwargs)


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """Replace ``{{key}}`` placeholders; unknown keys render as empty strings."""

    def _replace(match: re.Match[str]) -> str:
        value = values.get(match.group("key"))
        return "" if value is None else str(value)

    return _PLACEHOLDER_RE.sub(_replace, template or "")


__all__ = [
    "JSON_MODE_SYSTEM_PROMPT",
    "DEFAULT_MARKDOWN_INSTRUCTION",
    "JSON_EXAMPLES",
    "build_final_json_prompt",
    "build_step_prompt",
    "render_template",
]
