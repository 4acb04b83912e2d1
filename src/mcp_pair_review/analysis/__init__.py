"""Cascading AI analysis: executor, context discovery, validation, orchestration."""

from .events import EventKind, ProgressEvent
from .models import (
    AnalysisRun,
    CascadeResult,
    ChangedFile,
    RelatedFile,
    ReviewedChange,
    RunStatus,
    StageStatus,
    Suggestion,
    SuggestionCategory,
    SuggestionStatus,
)

__all__ = [
    "AnalysisRun",
    "CascadeResult",
    "ChangedFile",
    "EventKind",
    "ProgressEvent",
    "RelatedFile",
    "ReviewedChange",
    "RunStatus",
    "StageStatus",
    "Suggestion",
    "SuggestionCategory",
    "SuggestionStatus",
]
