"""Prompt construction for each analysis stage.

Every stage prompt shares the same skeleton: role, change context,
merged instructions, stage-specific body, the list of files a suggestion
may target, line anchoring rules and the JSON output contract. Tiers
change how deep the reviewer is asked to go, not the contract.
"""

from __future__ import annotations

from collections.abc import Iterable

import orjson

from ..core.diff import format_line_ranges
from .models import ChangedFile, RelatedFile, ReviewedChange, Suggestion

TIER_GUIDANCE = {
    "fast": (
        "Work quickly. Report only clear bugs, security problems and "
        "obvious mistakes. Skip style and minor suggestions."
    ),
    "balanced": (
        "Report bugs, risks, design problems and meaningful improvements. "
        "Include praise for genuinely good changes."
    ),
    "thorough": (
        "Review exhaustively. Consider edge cases, error handling, "
        "concurrency, performance and maintainability. Include style notes "
        "and praise where warranted."
    ),
}

STAGE_FOCUS = {
    1: """# Stage 1 - Changes in Isolation

Review ONLY the diff below. Do not explore surrounding code.
Look for bugs, logic errors, security problems, performance issues,
naming and style problems visible in the changed lines, and good
practices worth praising.

```diff
{diff}
```""",
    2: """# Stage 2 - File Context

Review the changes to `{file_path}` in the context of the whole file.
Look for inconsistencies with the rest of the file, missing error
handling, broken invariants, duplicated logic and API misuse that only
show up with the full file in view.

Changed lines in this file: {changed_lines}

## Diff

```diff
{diff}
```

## Full file content (line-numbered)

```
{content}
```""",
    3: """# Stage 3 - Codebase Context

Review the change against the rest of the codebase. Look for callers
broken by the change, contracts violated across modules, missing or
outdated tests, configuration drift and architectural inconsistencies.

## Changed files and their changed lines

{changed_summary}

## Related files

{related_files}""",
}

SYNTHESIS_PROMPT = """# Synthesis - Consolidate Findings

Earlier review stages produced the suggestions below for the same
change. Merge duplicates (keep the clearest wording and the highest
confidence), drop noise and low-value items, and keep the file and line
of each surviving suggestion unchanged. Then write a short overall
summary of the change's quality.

## Stage suggestions

```json
{suggestions}
```"""

LINE_GUIDANCE = """## Line Anchoring Rules

- A suggestion may only target a changed line listed for its file.
- If the problem lives on an unchanged line, describe it in the body
  but anchor the suggestion to the nearest changed line.
- Use "side": "new" for added and context lines, "side": "old" only for
  deleted lines.
- Omit "line" and set "is_file_level": true for findings about the file
  as a whole."""

OUTPUT_CONTRACT = """## Output Format

Output ONLY valid JSON, starting with {{ and ending with }}:

{{
  "stage": {stage},
  "suggestions": [{{
    "file": "path/to/file",
    "line": 42,
    "line_end": 44,
    "side": "new",
    "category": "bug|improvement|praise|suggestion|design|performance|security|style",
    "title": "Brief title",
    "body": "Detailed explanation and how to fix it",
    "confidence": 0.0-1.0
  }}],
  "summary": "Brief summary of findings"
}}

Calibrate confidence honestly: 0.8+ for clear issues, 0.5-0.79 for
likely issues, lower for observations. Prefer omitting marginal items."""


def merge_instructions(
    repo_instructions: str | None, custom_instructions: str | None
) -> str | None:
    """Combine repository-level and per-run instructions.

    Custom instructions are listed last and take precedence on conflict.
    Returns None when neither is set.
    """
    repo = (repo_instructions or "").strip()
    custom = (custom_instructions or "").strip()
    if not repo and not custom:
        return None
    if repo and not custom:
        return repo
    if custom and not repo:
        return custom
    return (
        f"<repo_instructions>\n{repo}\n</repo_instructions>\n\n"
        f"<custom_instructions>\n{custom}\n</custom_instructions>\n\n"
        "When the two conflict, follow custom_instructions."
    )


def _number_lines(content: str) -> str:
    return "\n".join(
        f"{number:>6} | {line}" for number, line in enumerate(content.splitlines(), 1)
    )


def _valid_files(changed_files: Iterable[ChangedFile]) -> str:
    lines = []
    for changed in changed_files:
        ranges = format_line_ranges(changed.changed_lines)
        lines.append(f"- {changed.path} (changed lines: {ranges})")
    return "\n".join(lines) or "- (changed-file list unavailable)"


def _assemble(
    stage: int,
    change: ReviewedChange,
    body: str,
    changed_files: list[ChangedFile],
    tier: str,
    instructions: str | None,
) -> str:
    sections = [
        "You are an expert code reviewer assisting a human reviewer.",
        f"Change under review: {change.label}",
        f"## Review Depth\n\n{TIER_GUIDANCE.get(tier, TIER_GUIDANCE['balanced'])}",
    ]
    if instructions:
        sections.append(f"## Instructions\n\n{instructions}")
    sections.append(body)
    sections.append(
        "## Valid Files for Suggestions\n\n"
        "Only create suggestions for these files:\n"
        f"{_valid_files(changed_files)}"
    )
    sections.append(LINE_GUIDANCE)
    sections.append(OUTPUT_CONTRACT.format(stage=stage))
    sections.append(
        "You have READ-ONLY access to the working tree. Do not modify files."
    )
    return "\n\n".join(sections)


def build_stage1_prompt(
    change: ReviewedChange,
    diff: str,
    changed_files: list[ChangedFile],
    tier: str = "balanced",
    instructions: str | None = None,
) -> str:
    """Diff-only prompt covering the whole change."""
    body = STAGE_FOCUS[1].format(diff=diff)
    return _assemble(1, change, body, changed_files, tier, instructions)


def build_stage2_prompt(
    change: ReviewedChange,
    changed_file: ChangedFile,
    file_diff: str,
    content: str,
    tier: str = "balanced",
    instructions: str | None = None,
) -> str:
    """File-scoped prompt with full content and the file's changed lines."""
    body = STAGE_FOCUS[2].format(
        file_path=changed_file.path,
        changed_lines=format_line_ranges(changed_file.changed_lines),
        diff=file_diff,
        content=_number_lines(content),
    )
    return _assemble(2, change, body, [changed_file], tier, instructions)


def build_stage3_prompt(
    change: ReviewedChange,
    changed_files: list[ChangedFile],
    related_files: list[RelatedFile],
    tier: str = "balanced",
    instructions: str | None = None,
) -> str:
    """Consolidated prompt with every changed file and all related content."""
    changed_summary = "\n".join(
        f"- {f.path}: +{f.insertions} -{f.deletions}, "
        f"changed lines {format_line_ranges(f.changed_lines)}"
        for f in changed_files
    )
    related_sections = []
    for related in related_files:
        origin = f" (for {related.related_to})" if related.related_to else ""
        related_sections.append(
            f"### {related.path} [{related.reason.value}{origin}, "
            f"{related.line_count} lines]\n\n```\n{related.content}\n```"
        )
    body = STAGE_FOCUS[3].format(
        changed_summary=changed_summary,
        related_files="\n\n".join(related_sections),
    )
    return _assemble(3, change, body, changed_files, tier, instructions)


def build_synthesis_prompt(
    change: ReviewedChange,
    suggestions: list[Suggestion],
    changed_files: list[ChangedFile],
    tier: str = "balanced",
    instructions: str | None = None,
) -> str:
    """Prompt asking the reviewer to merge all stage suggestions."""
    payload = [
        {
            "stage": s.stage,
            "file": s.file,
            "line": s.line_start,
            "line_end": s.line_end,
            "side": s.side.value,
            "category": s.category.value,
            "title": s.title,
            "body": s.body,
            "confidence": s.confidence,
        }
        for s in suggestions
    ]
    body = SYNTHESIS_PROMPT.format(
        suggestions=orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode()
    )
    return _assemble(4, change, body, changed_files, tier, instructions)
