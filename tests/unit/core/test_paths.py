"""Tests for path normalization."""

import pytest

from mcp_pair_review.core.paths import (
    normalize_path,
    normalize_repository,
    normalized_path_set,
    paths_equal,
)


class TestNormalizePath:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("src/foo.js", "src/foo.js"),
            ("./src/foo.js", "src/foo.js"),
            ("/src/foo.js", "src/foo.js"),
            ("src//foo.js", "src/foo.js"),
            ("//./src//foo.js", "src/foo.js"),
            ("././/./src/foo.js", "src/foo.js"),
            ("  src/foo.js  ", "src/foo.js"),
            ("src\\foo.js", "src/foo.js"),
        ],
    )
    def test_variants_normalize_to_same_path(self, raw, expected):
        assert normalize_path(raw) == expected

    def test_idempotent(self):
        for raw in ["./a//b.py", "/./x/y", "a/b", "//"]:
            once = normalize_path(raw)
            assert normalize_path(once) == once

    def test_case_preserved(self):
        assert normalize_path("./Src/Foo.JS") == "Src/Foo.JS"

    def test_empty_and_non_string(self):
        assert normalize_path("") == ""
        assert normalize_path("   ") == ""
        assert normalize_path(None) == ""
        assert normalize_path(42) == ""  # type: ignore[arg-type]


def test_paths_equal():
    assert paths_equal("./src/a.py", "/src//a.py")
    assert not paths_equal("src/a.py", "src/A.py")


def test_normalized_path_set_drops_empty():
    assert normalized_path_set(["./a.py", "a.py", "", None, "/b.py"]) == {"a.py", "b.py"}


class TestNormalizeRepository:
    def test_lowercases(self):
        assert normalize_repository("Owner/Repo") == "owner/repo"

    def test_strips_whitespace(self):
        assert normalize_repository(" owner / repo/ ") == "owner/repo"

    @pytest.mark.parametrize("bad", ["", "noslash", "/repo", "owner/"])
    def test_invalid(self, bad):
        with pytest.raises(ValueError):
            normalize_repository(bad)
