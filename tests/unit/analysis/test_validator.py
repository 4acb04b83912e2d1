"""Tests for suggestion parsing, path validation and line anchoring."""

import pytest

from mcp_pair_review.analysis.models import (
    ChangedFile,
    Side,
    Suggestion,
    SuggestionCategory,
)
from mcp_pair_review.analysis.validator import SuggestionValidator


@pytest.fixture
def validator():
    return SuggestionValidator(confidence_floor=0.3)


def make(file, line=1, title="Issue", **kwargs):
    return Suggestion(file=file, line_start=line, category="bug", title=title, **kwargs)


class TestParseSuggestions:
    def test_parses_valid_items_with_aliases(self, validator):
        data = {
            "suggestions": [
                {
                    "file": "src/a.js",
                    "line": 10,
                    "type": "bug",
                    "title": "Null check",
                    "description": "May be undefined",
                    "suggestion": "Guard with optional chaining",
                    "confidence": 0.9,
                },
                {
                    "path": "src/b.js",
                    "line_start": 3,
                    "line_end": 5,
                    "category": "Code-Style",
                    "title": "Naming",
                    "old_or_new": "OLD",
                },
            ]
        }

        first, second = validator.parse_suggestions(data, stage=1, run_id="r1")

        assert first.file == "src/a.js"
        assert first.line_start == first.line_end == 10
        assert first.category is SuggestionCategory.BUG
        assert first.body.startswith("May be undefined")
        assert "**Suggestion:** Guard with optional chaining" in first.body
        assert first.stage == 1
        assert first.run_id == "r1"

        assert second.category is SuggestionCategory.STYLE
        assert second.side is Side.OLD
        assert (second.line_start, second.line_end) == (3, 5)
        assert second.confidence == 0.7

    def test_discards_malformed_items(self, validator):
        data = {
            "suggestions": [
                {"line": 1, "type": "bug", "title": "no file"},
                {"file": "a.js", "type": "bug", "title": "no line"},
                {"file": "a.js", "line": 1, "title": "no category"},
                {"file": "a.js", "line": 1, "type": "bug"},
                {"file": "a.js", "line": 1, "type": "nonsense", "title": "bad category"},
                {"file": "a.js", "line": 0, "type": "bug", "title": "line zero"},
                {"file": "a.js", "line": 1, "type": "bug", "title": "x", "confidence": "high"},
                "not an object",
            ]
        }
        assert validator.parse_suggestions(data, stage=2) == []

    def test_file_level_items_need_no_line(self, validator):
        data = {
            "suggestions": [
                {"file": "a.js", "is_file_level": True, "type": "design", "title": "Split"}
            ]
        }
        (suggestion,) = validator.parse_suggestions(data, stage=3)
        assert suggestion.is_file_level
        assert suggestion.line_end is None

    def test_confidence_floor(self, validator):
        data = {
            "suggestions": [
                {"file": "a.js", "line": 1, "type": "bug", "title": "low", "confidence": 0.1},
                {"file": "a.js", "line": 2, "type": "bug", "title": "ok", "confidence": 0.3},
            ]
        }
        titles = [s.title for s in validator.parse_suggestions(data, stage=1)]
        assert titles == ["ok"]

    @pytest.mark.parametrize("data", [None, {}, {"suggestions": "nope"}, {"summary": "x"}])
    def test_empty_or_unusable_payload(self, validator, data):
        assert validator.parse_suggestions(data, stage=1) == []


class TestFilterToChangedFiles:
    def test_keeps_changed_files_and_drops_others(self, validator, log_records):
        suggestions = [
            make("src/valid.js", title="kept"),
            make("src/invalid.js", title="dropped"),
        ]

        outcome = validator.filter_to_changed_files(suggestions, ["src/valid.js"], "run-1")

        assert [s.title for s in outcome.accepted] == ["kept"]
        assert [s.title for s in outcome.dropped] == ["dropped"]
        assert not outcome.bypassed

        warnings = [r for r in log_records if r["level"].name == "WARNING"]
        assert len(warnings) == 1
        assert "src/invalid.js" in warnings[0]["message"]

    def test_path_variants_match_and_are_normalized(self, validator):
        suggestions = [make("./src/foo.js"), make("/src/foo.js"), make("src//foo.js")]

        outcome = validator.filter_to_changed_files(suggestions, ["src/foo.js"], "run-1")

        assert len(outcome.accepted) == 3
        assert {s.file for s in outcome.accepted} == {"src/foo.js"}

    def test_changed_paths_are_normalized_too(self, validator):
        outcome = validator.filter_to_changed_files(
            [make("src/foo.js")], ["./src/foo.js"], "run-1"
        )
        assert len(outcome.accepted) == 1

    @pytest.mark.parametrize("changed", [[], None])
    def test_fails_open_when_changed_files_unavailable(self, validator, log_records, changed):
        suggestions = [make("anything.js"), make("other.py")]

        outcome = validator.filter_to_changed_files(suggestions, changed, "run-9")

        assert outcome.bypassed
        assert len(outcome.accepted) == 2
        assert outcome.dropped == []
        assert any(
            r["level"].name == "WARNING" and "bypassed" in r["message"]
            for r in log_records
        )

    def test_case_sensitive(self, validator):
        outcome = validator.filter_to_changed_files([make("SRC/Foo.js")], ["src/foo.js"])
        assert outcome.accepted == []


class TestAnchorLines:
    @pytest.fixture
    def changed(self):
        return {"a.js": ChangedFile(path="a.js", changed_lines=frozenset({10, 11, 20}))}

    def test_changed_line_kept(self, validator, changed):
        (result,) = validator.anchor_lines([make("a.js", line=11)], changed)
        assert result.line_start == 11

    def test_range_containing_changed_line(self, validator, changed):
        suggestion = Suggestion(
            file="a.js", line_start=8, line_end=12, category="bug", title="x"
        )
        (result,) = validator.anchor_lines([suggestion], changed)
        assert (result.line_start, result.line_end) == (10, 12)

    def test_moves_to_nearest_changed_line(self, validator, changed):
        (result,) = validator.anchor_lines([make("a.js", line=17)], changed)
        assert result.line_start == result.line_end == 20

    def test_tie_prefers_lower_line(self, validator):
        changed = {"a.js": ChangedFile(path="a.js", changed_lines=frozenset({10, 20}))}
        (result,) = validator.anchor_lines([make("a.js", line=15)], changed)
        assert result.line_start == 10

    def test_beyond_end_of_file_becomes_file_level(self, validator, changed):
        (result,) = validator.anchor_lines(
            [make("a.js", line=500)], changed, line_counts={"a.js": 40}
        )
        assert result.is_file_level

    def test_range_end_clamped_to_file_length(self, validator, changed):
        suggestion = Suggestion(
            file="a.js", line_start=8, line_end=50, category="bug", title="x"
        )
        (result,) = validator.anchor_lines([suggestion], changed, line_counts={"a.js": 22})
        assert (result.line_start, result.line_end) == (10, 22)

    def test_old_side_and_unknown_files_untouched(self, validator, changed):
        old = make("a.js", line=3, side="old")
        unknown = make("b.js", line=3)
        results = validator.anchor_lines([old, unknown], changed)
        assert [r.line_start for r in results] == [3, 3]
