"""Tests for per-step payload normalizers."""

from __future__ import annotations

import pytest

from essaycoach.ai.normalization import (
    NORMALIZERS,
    normalize_essay_grammar,
    normalize_essay_logic,
    normalize_essay_scoring,
    normalize_letter_logic,
    normalize_letter_scoring,
)


@pytest.mark.parametrize("normalizer", list(NORMALIZERS.values()))
def test_rejects_non_objects(normalizer) -> None:
    with pytest.raises(ValueError, match="not an object"):
        normalizer(["not", "an", "object"], "")


def test_registry_covers_all_steps() -> None:
    assert set(NORMALIZERS) == {"logic", "grammar", "scoring", "letter_logic", "letter_scoring"}


class TestEssayNormalizers:
    def test_logic_defaults_and_comment_fallback(self) -> None:
        result = normalize_essay_logic({"status": "PASS", "keyPoints": "single point"}, "Streamed commentary")
        assert result["status"] == "pass"
        assert result["comment"] == "Streamed commentary"
        assert result["suggestion"] == ""
        assert result["keyPoints"] == ["single point"]

    def test_logic_unknown_status_becomes_warn(self) -> None:
        assert normalize_essay_logic({"status": "excellent"})["status"] == "warn"

    def test_grammar_clamps_score_and_cleans_lists(self) -> None:
        result = normalize_essay_grammar(
            {
                "score": "7.5",
                "comment": "Watch tenses.",
                "grammar_issues": [{"original": "He go", "correction": "He goes", "issue": "agreement"}, "junk"],
                "recommended_vocab": [{"word": "crucial", "meaning": 1}],
            }
        )
        assert result["score"] == 7.5
        assert result["comment"] == "Watch tenses."
        assert result["grammar_issues"] == [{"original": "He go", "correction": "He goes", "issue": "agreement"}]
        assert result["recommended_vocab"][0] == {
            "word": "crucial",
            "meaning": "1",
            "collocation": "",
            "example": "",
            "scenario": "",
        }
        assert normalize_essay_grammar({"score": -3})["score"] == 0

    def test_scoring_range_and_integral_scores(self) -> None:
        assert normalize_essay_scoring({"score": 25})["score"] == 20
        assert normalize_essay_scoring({"score": 15.0})["score"] == 15
        assert isinstance(normalize_essay_scoring({"score": 15.0})["score"], int)
        assert normalize_essay_scoring({"score": "n/a"})["score"] == 0
        assert normalize_essay_scoring({"strengths": None})["strengths"] == []

    @pytest.mark.parametrize(("raw", "expected"), [(-3, 0), (-0.5, 0), (99, 20), (True, 0)])
    def test_out_of_range_scores_clamp_to_int_bounds(self, raw: object, expected: int) -> None:
        score = normalize_essay_scoring({"score": raw})["score"]
        assert score == expected
        assert type(score) is int

    def test_extra_keys_are_preserved(self) -> None:
        assert normalize_essay_scoring({"score": 10, "band": "B"})["band"] == "B"


class TestLetterNormalizers:
    def test_letter_logic_content_check(self) -> None:
        result = normalize_letter_logic({"score": 12, "content_check": {"covered": ["invite"], "missing": None}})
        assert result["score"] == 10
        assert result["content_check"] == {"covered": ["invite"], "missing": []}
        assert result["format_hints"] == []

    def test_letter_scoring_dimensions_and_format_check(self) -> None:
        result = normalize_letter_scoring(
            {
                "score": 8,
                "dimensions": {"content": {"score": "3", "comment": "ok"}, "bad": "skip"},
                "format_check": {"salutation": "pass", "signOff": "nope", "issues": ["missing comma"]},
            },
            "Fallback",
        )
        assert result["dimensions"] == {"content": {"score": 3.0, "comment": "ok"}}
        assert result["format_check"] == {
            "salutation": "pass",
            "signOff": "warn",
            "punctuation": "warn",
            "issues": ["missing comma"],
        }
        assert result["comment"] == "Fallback"
