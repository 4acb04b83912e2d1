"""Tests for stage prompt construction."""

from mcp_pair_review.analysis.models import (
    ChangedFile,
    RelatedFile,
    RelatedReason,
    ReviewedChange,
    Suggestion,
)
from mcp_pair_review.analysis.prompts import (
    build_stage1_prompt,
    build_stage2_prompt,
    build_stage3_prompt,
    build_synthesis_prompt,
    merge_instructions,
)

CHANGE = ReviewedChange(repository="acme/app", pr_number=12)
CHANGED = [ChangedFile(path="src/app.js", changed_lines=frozenset({3, 4, 5, 9}))]


def test_merge_instructions():
    assert merge_instructions(None, None) is None
    assert merge_instructions("  ", "") is None
    assert merge_instructions("Repo rules", None) == "Repo rules"
    assert merge_instructions(None, "Focus on auth") == "Focus on auth"

    merged = merge_instructions("Repo rules", "Focus on auth")
    assert merged.index("<repo_instructions>") < merged.index("<custom_instructions>")
    assert "follow custom_instructions" in merged


def test_stage1_prompt_contains_diff_and_valid_files():
    prompt = build_stage1_prompt(
        CHANGE, "+const x = 1;", CHANGED, tier="fast", instructions="Focus on auth"
    )

    assert "acme/app#12" in prompt
    assert "+const x = 1;" in prompt
    assert "- src/app.js (changed lines: 3-5, 9)" in prompt
    assert "Focus on auth" in prompt
    assert '"stage": 1' in prompt
    assert "Work quickly" in prompt


def test_stage2_prompt_numbers_lines():
    prompt = build_stage2_prompt(CHANGE, CHANGED[0], "@@ diff @@", "first\nsecond\n")

    assert "     1 | first" in prompt
    assert "     2 | second" in prompt
    assert '"stage": 2' in prompt


def test_stage3_prompt_lists_related_files():
    related = [
        RelatedFile(
            path="src/util.js",
            content="export const util = 1;",
            line_count=1,
            reason=RelatedReason.IMPORT,
            related_to="src/app.js",
        )
    ]
    prompt = build_stage3_prompt(CHANGE, CHANGED, related)

    assert "### src/util.js [import (for src/app.js), 1 lines]" in prompt
    assert "export const util = 1;" in prompt


def test_synthesis_prompt_embeds_stage_suggestions():
    suggestions = [
        Suggestion(file="src/app.js", line_start=3, category="bug", title="Leak", stage=2)
    ]
    prompt = build_synthesis_prompt(CHANGE, suggestions, CHANGED)

    assert '"title": "Leak"' in prompt
    assert '"stage": 2' in prompt


def test_unknown_changed_files_placeholder():
    prompt = build_stage1_prompt(CHANGE, "", [])
    assert "changed-file list unavailable" in prompt
