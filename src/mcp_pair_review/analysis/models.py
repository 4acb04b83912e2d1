"""Data structures for the analysis cascade.

Design Philosophy:
    - Frozen dataclasses for values derived once per run (ChangedFile,
      RelatedFile, ReviewedChange)
    - A closed pydantic model for Suggestion so every field is validated
      where reviewer output crosses into trusted storage
    - Mutable dataclasses only for records the tracker and orchestrator own
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

STAGE_DIFF = 1
STAGE_FILE_CONTEXT = 2
STAGE_CODEBASE = 3
STAGE_SYNTHESIS = 4
ALL_STAGES = (STAGE_DIFF, STAGE_FILE_CONTEXT, STAGE_CODEBASE, STAGE_SYNTHESIS)

STAGE_NAMES = {
    STAGE_DIFF: "diff-only review",
    STAGE_FILE_CONTEXT: "file context review",
    STAGE_CODEBASE: "codebase context review",
    STAGE_SYNTHESIS: "synthesis",
}


def utc_now() -> str:
    """Current UTC time as ISO 8601 text."""
    return datetime.now(timezone.utc).isoformat()


class RunStatus(StrEnum):
    """Lifecycle of an analysis run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class StageStatus(StrEnum):
    """Lifecycle of one stage within a run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STAGE_STATUSES


_TERMINAL_STAGE_STATUSES = {
    StageStatus.COMPLETED,
    StageStatus.FAILED,
    StageStatus.CANCELLED,
    StageStatus.SKIPPED,
}


class SuggestionCategory(StrEnum):
    """Kind of finding."""

    BUG = "bug"
    IMPROVEMENT = "improvement"
    PRAISE = "praise"
    SUGGESTION = "suggestion"
    DESIGN = "design"
    PERFORMANCE = "performance"
    SECURITY = "security"
    STYLE = "style"


# Aliases reviewers commonly emit for the closed category set
CATEGORY_ALIASES = {
    "code-style": SuggestionCategory.STYLE,
    "code_style": SuggestionCategory.STYLE,
    "issue": SuggestionCategory.BUG,
    "error": SuggestionCategory.BUG,
    "perf": SuggestionCategory.PERFORMANCE,
    "architecture": SuggestionCategory.DESIGN,
}

ISSUE_CATEGORIES = {
    SuggestionCategory.BUG,
    SuggestionCategory.SECURITY,
    SuggestionCategory.PERFORMANCE,
}


class SuggestionStatus(StrEnum):
    """Human review state of a suggestion."""

    ACTIVE = "active"
    ADOPTED = "adopted"
    DISMISSED = "dismissed"


class Side(StrEnum):
    """Diff coordinate a line number refers to."""

    OLD = "old"
    NEW = "new"


class RelatedReason(StrEnum):
    """Why context discovery selected a related file."""

    IMPORT = "import"
    REVERSE_IMPORT = "reverse-import"
    TEST = "test"
    CONFIG = "config"


@dataclass(frozen=True)
class ReviewedChange:
    """The unit under analysis: a pull request or a local working-tree delta.

    Exactly one identity is populated: ``(repository, local_path, head_sha)``
    for local reviews or ``(repository, pr_number)`` for pull requests.
    """

    repository: str
    local_path: str | None = None
    head_sha: str | None = None
    pr_number: int | None = None
    id: int | None = None

    @property
    def is_local(self) -> bool:
        return self.pr_number is None

    @property
    def key(self) -> str:
        """Stable identity used for admission control."""
        if self.is_local:
            return f"local:{self.local_path}@{self.head_sha}"
        return f"pr:{self.repository}#{self.pr_number}"

    @property
    def label(self) -> str:
        if self.is_local:
            short = (self.head_sha or "")[:7]
            return f"{self.local_path} @ {short}"
        return f"{self.repository}#{self.pr_number}"


@dataclass(frozen=True)
class ChangedFile:
    """One file touched by a reviewed change.

    ``changed_lines`` holds the new-side line numbers a suggestion may
    anchor to.
    """

    path: str
    insertions: int = 0
    deletions: int = 0
    changed_lines: frozenset[int] = field(default_factory=frozenset)
    is_deleted: bool = False
    is_binary: bool = False


@dataclass(frozen=True)
class RelatedFile:
    """A file outside the diff that gives context to a changed file."""

    path: str
    content: str
    line_count: int
    reason: RelatedReason
    related_to: str | None = None


class Suggestion(BaseModel):
    """A single validated finding.

    Example:
        >>> Suggestion(file="src/app.py", line_start=12, category="bug",
        ...            title="Off by one", body="Loop skips the last item")
    """

    model_config = ConfigDict(use_enum_values=False)

    id: int | None = None
    run_id: str | None = None
    stage: int | None = None
    file: str
    line_start: int | None = Field(default=None, ge=1)
    line_end: int | None = Field(default=None, ge=1)
    side: Side = Side.NEW
    category: SuggestionCategory
    title: str = Field(min_length=1)
    body: str = ""
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    status: SuggestionStatus = SuggestionStatus.ACTIVE
    created_at: str | None = None

    @field_validator("category", mode="before")
    @classmethod
    def _coerce_category(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return CATEGORY_ALIASES.get(lowered, lowered)
        return value

    @field_validator("side", mode="before")
    @classmethod
    def _coerce_side(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return {"left": "old", "right": "new"}.get(lowered, lowered)
        return value

    @model_validator(mode="after")
    def _fill_line_end(self) -> Suggestion:
        if self.line_start is not None and (
            self.line_end is None or self.line_end < self.line_start
        ):
            self.line_end = self.line_start
        if self.line_start is None:
            self.line_end = None
        return self

    @property
    def is_file_level(self) -> bool:
        return self.line_start is None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


@dataclass
class StageState:
    """Status and last progress message of one stage."""

    status: StageStatus = StageStatus.PENDING
    progress: str = "Pending"

    def to_dict(self) -> dict[str, str]:
        return {"status": self.status.value, "progress": self.progress}


@dataclass
class AnalysisRun:
    """Persisted record of one invocation of the cascade."""

    id: str
    change_id: int
    provider: str
    model: str
    tier: str
    status: RunStatus = RunStatus.RUNNING
    repo_instructions: str | None = None
    custom_instructions: str | None = None
    head_sha: str | None = None
    summary: str | None = None
    total_suggestions: int = 0
    files_analyzed: int = 0
    stages: dict[int, StageStatus] = field(default_factory=dict)
    validation_bypassed: bool = False
    error: str | None = None
    started_at: str = field(default_factory=utc_now)
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "change_id": self.change_id,
            "provider": self.provider,
            "model": self.model,
            "tier": self.tier,
            "status": self.status.value,
            "repo_instructions": self.repo_instructions,
            "custom_instructions": self.custom_instructions,
            "head_sha": self.head_sha,
            "summary": self.summary,
            "total_suggestions": self.total_suggestions,
            "files_analyzed": self.files_analyzed,
            "stages": {str(k): v.value for k, v in self.stages.items()},
            "validation_bypassed": self.validation_bypassed,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass
class StageOutcome:
    """What one stage produced."""

    stage: int
    suggestions: list[Suggestion] = field(default_factory=list)
    summary: str | None = None
    files_analyzed: int = 0
    validation_bypassed: bool = False


@dataclass
class CascadeResult:
    """Aggregate result of a run's cascade.

    ``completed_stages`` lists stages that finished successfully; a failed
    later stage leaves earlier outcomes intact.
    """

    run_id: str
    outcomes: dict[int, StageOutcome] = field(default_factory=dict)
    failed_stages: dict[int, str] = field(default_factory=dict)
    final_suggestions: list[Suggestion] = field(default_factory=list)
    summary: str = ""
    validation_bypassed: bool = False

    @property
    def completed_stages(self) -> list[int]:
        return sorted(self.outcomes)

    @property
    def completed_level(self) -> int:
        levels = [s for s in self.outcomes if s != STAGE_SYNTHESIS]
        return max(levels) if levels else 0

    @property
    def total_suggestions(self) -> int:
        return len(self.final_suggestions)

    @property
    def files_analyzed(self) -> int:
        return max((o.files_analyzed for o in self.outcomes.values()), default=0)
