"""Cascading analysis orchestrator.

A run walks an ordered list of stages:

    1 diff-only  ->  2 file context  ->  3 codebase context  ->  4 synthesis

Each stage validates and persists its own suggestions before the next
one starts, so earlier results are queryable while later stages run and
survive a later stage's failure. What a failure does depends on the
stage (see ``FAILURE_POLICY``): stage 1 aborts the run, stages 2 and 3
are logged and the cascade continues, synthesis falls back to a
deterministic merge.

Progress is published as ProgressEvent values to a reporter callback.
Reporter errors are logged and never abort a stage.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

import aiofiles
from loguru import logger

from ..config.settings import ReviewSettings
from ..core.exceptions import AnalysisCancelledError, ExecutorError
from ..core.paths import normalize_path
from .context import ContextDiscovery
from .events import EventKind, ProgressEvent
from .executor import ExecutionResult, ProcessExecutor
from .models import (
    ISSUE_CATEGORIES,
    STAGE_CODEBASE,
    STAGE_DIFF,
    STAGE_FILE_CONTEXT,
    STAGE_NAMES,
    STAGE_SYNTHESIS,
    CascadeResult,
    ChangedFile,
    ReviewedChange,
    StageOutcome,
    Suggestion,
    SuggestionCategory,
)
from .prompts import (
    build_stage1_prompt,
    build_stage2_prompt,
    build_stage3_prompt,
    build_synthesis_prompt,
)
from .validator import SuggestionValidator

Reporter = Callable[[ProgressEvent], Awaitable[None] | None]


class OnFailure(StrEnum):
    """What the cascade does when a stage raises."""

    ABORT = "abort"
    CONTINUE = "continue"
    FALLBACK = "fallback"


STAGE_ORDER = (STAGE_DIFF, STAGE_FILE_CONTEXT, STAGE_CODEBASE, STAGE_SYNTHESIS)

FAILURE_POLICY = {
    STAGE_DIFF: OnFailure.ABORT,
    STAGE_FILE_CONTEXT: OnFailure.CONTINUE,
    STAGE_CODEBASE: OnFailure.CONTINUE,
    STAGE_SYNTHESIS: OnFailure.FALLBACK,
}

# Settings key for each stage's deadline
STAGE_TIMEOUT_KEYS = {
    STAGE_DIFF: "1",
    STAGE_FILE_CONTEXT: "2",
    STAGE_CODEBASE: "3",
    STAGE_SYNTHESIS: "synthesis",
}


class SuggestionSink(Protocol):
    """Where validated suggestions go. ReviewStore implements this."""

    def save_suggestions(self, run_id: str, suggestions: list[Suggestion]) -> list[Suggestion]:
        ...


@dataclass
class AnalysisJob:
    """Everything one run of the cascade needs.

    Attributes:
        run_id: Id of the AnalysisRun being executed
        change: The reviewed change
        changed_files: Authoritative changed files; empty triggers fail-open
        diff: Whole unified diff of the change
        file_diffs: Per-file diff sections keyed by normalized path
        working_dir: Checked-out copy of the change
        tier: fast, balanced or thorough
        instructions: Merged repository and custom instructions
        skip_stage3: Codebase-context stage was skipped at start
        reporter: Receives progress events
        is_cancelled: Polled between units of work
    """

    run_id: str
    change: ReviewedChange
    changed_files: list[ChangedFile]
    diff: str
    working_dir: Path
    file_diffs: dict[str, str] = field(default_factory=dict)
    tier: str = "balanced"
    instructions: str | None = None
    skip_stage3: bool = False
    reporter: Reporter | None = None
    is_cancelled: Callable[[], bool] = lambda: False
    line_counts: dict[str, int] | None = None

    @property
    def changed_by_path(self) -> dict[str, ChangedFile]:
        return {normalize_path(f.path): f for f in self.changed_files}


def merge_suggestions(suggestions: list[Suggestion]) -> list[Suggestion]:
    """Deduplicate suggestions across stages.

    Two suggestions are duplicates when file, start line, category and
    title (case-insensitive) match. The highest-confidence one is kept,
    in first-seen order, and re-labelled as final (``stage=None``).
    """
    best: dict[tuple[Any, ...], Suggestion] = {}
    for suggestion in suggestions:
        key = (
            normalize_path(suggestion.file),
            suggestion.line_start,
            suggestion.category,
            suggestion.title.strip().lower(),
        )
        current = best.get(key)
        if current is None or suggestion.confidence > current.confidence:
            best[key] = suggestion
    return [s.model_copy(update={"stage": None, "id": None}) for s in best.values()]


def summarize_counts(suggestions: list[Suggestion], stages_completed: int) -> str:
    """Summary text built from suggestion counts alone."""
    if not suggestions:
        return f"No suggestions found ({stages_completed} stages completed)"
    issues = sum(1 for s in suggestions if s.category in ISSUE_CATEGORIES)
    praise = sum(1 for s in suggestions if s.category is SuggestionCategory.PRAISE)
    other = len(suggestions) - issues - praise
    files = len({normalize_path(s.file) for s in suggestions})
    return (
        f"Found {len(suggestions)} suggestions across {files} files: "
        f"{issues} issues, {other} suggestions, {praise} praise "
        f"({stages_completed} stages completed)"
    )


class AnalysisOrchestrator:
    """Runs the stage cascade for one change at a time.

    Example:
        >>> orchestrator = AnalysisOrchestrator(executor, store, settings)
        >>> result = await orchestrator.run(job)
        >>> result.completed_level
        3
    """

    def __init__(
        self,
        executor: ProcessExecutor,
        sink: SuggestionSink,
        settings: ReviewSettings | None = None,
        validator: SuggestionValidator | None = None,
        discovery: ContextDiscovery | None = None,
    ) -> None:
        self.executor = executor
        self.sink = sink
        self.settings = settings or ReviewSettings()
        self.validator = validator or SuggestionValidator(self.settings.confidence_floor)
        self.discovery = discovery or ContextDiscovery(
            max_file_lines=self.settings.max_related_file_lines,
            reverse_match_limit=self.settings.reverse_match_limit,
            reverse_search_depth=self.settings.reverse_search_depth,
        )
        self._handlers = {
            STAGE_DIFF: self._run_stage1,
            STAGE_FILE_CONTEXT: self._run_stage2,
            STAGE_CODEBASE: self._run_stage3,
        }

    async def run(self, job: AnalysisJob) -> CascadeResult:
        """Execute every stage in order.

        Raises:
            AnalysisCancelledError: The run was cancelled
            PairReviewError: Stage 1 failed (e.g. ProcessTimeoutError)
        """
        result = CascadeResult(run_id=job.run_id)
        logger.info(
            f"Starting analysis {job.run_id} for {job.change.label} "
            f"({len(job.changed_files)} files, tier {job.tier})"
        )
        await self._emit(job, EventKind.PREPARING, "Preparing analysis")

        for stage in STAGE_ORDER:
            self._check_cancelled(job)

            if stage == STAGE_CODEBASE and job.skip_stage3:
                await self._emit(job, EventKind.STAGE_SKIPPED, "Skipped", stage=stage)
                continue

            if stage == STAGE_SYNTHESIS:
                await self._run_synthesis(job, result)
                continue

            await self._emit(
                job, EventKind.STAGE_STARTED, f"Running {STAGE_NAMES[stage]}", stage=stage
            )
            try:
                outcome = await self._handlers[stage](job)
                await self._store(job, outcome)
            except AnalysisCancelledError:
                raise
            except Exception as e:
                if job.is_cancelled():
                    raise AnalysisCancelledError(job.run_id) from e
                if FAILURE_POLICY[stage] is OnFailure.ABORT:
                    logger.error(f"Stage {stage} failed for run {job.run_id}: {e}")
                    raise
                logger.warning(
                    f"Stage {stage} failed for run {job.run_id}, continuing: {e}"
                )
                result.failed_stages[stage] = str(e)
                await self._emit(job, EventKind.STAGE_FAILED, str(e), stage=stage)
                continue

            result.outcomes[stage] = outcome
            result.validation_bypassed |= outcome.validation_bypassed
            await self._emit(
                job,
                EventKind.STAGE_COMPLETED,
                f"{len(outcome.suggestions)} suggestions",
                stage=stage,
            )

        logger.info(
            f"Analysis {job.run_id} finished: stages {result.completed_stages}, "
            f"{result.total_suggestions} final suggestions"
        )
        return result

    # ── Stages ──────────────────────────────────────────────────────────

    async def _run_stage1(self, job: AnalysisJob) -> StageOutcome:
        prompt = build_stage1_prompt(
            job.change, job.diff, job.changed_files, job.tier, job.instructions
        )
        execution = await self._invoke(job, STAGE_DIFF, prompt, label="stage 1")
        await self._emit(job, EventKind.PROCESSING, "Processing results", stage=STAGE_DIFF)
        parsed = self.validator.parse_suggestions(execution.data, STAGE_DIFF, job.run_id)
        return await self._validate(
            job,
            STAGE_DIFF,
            parsed,
            summary=_summary_of(execution),
            files_analyzed=len(job.changed_files),
        )

    async def _run_stage2(self, job: AnalysisJob) -> StageOutcome:
        candidates = [f for f in job.changed_files if not (f.is_deleted or f.is_binary)]
        total = len(candidates)
        collected: list[Suggestion] = []
        analyzed = 0

        for index, changed in enumerate(candidates, 1):
            self._check_cancelled(job)
            await self._emit(
                job,
                EventKind.FILE_PROGRESS,
                f"Analyzing {changed.path}",
                stage=STAGE_FILE_CONTEXT,
                current=index,
                total=total,
            )
            try:
                suggestions = await self._analyze_file(job, changed)
            except AnalysisCancelledError:
                raise
            except Exception as e:
                if job.is_cancelled():
                    raise AnalysisCancelledError(job.run_id) from e
                logger.warning(f"Stage 2 skipped {changed.path} in run {job.run_id}: {e}")
                continue
            if suggestions is None:
                continue
            analyzed += 1
            collected.extend(suggestions)

        await self._emit(
            job, EventKind.PROCESSING, "Processing results", stage=STAGE_FILE_CONTEXT
        )
        return await self._validate(
            job, STAGE_FILE_CONTEXT, collected, files_analyzed=analyzed
        )

    async def _analyze_file(
        self, job: AnalysisJob, changed: ChangedFile
    ) -> list[Suggestion] | None:
        """Review one file with full content. None means the file was skipped."""
        path = job.working_dir / normalize_path(changed.path)
        if not path.is_file():
            logger.debug(f"Stage 2: {changed.path} not present in working tree")
            return None

        async with aiofiles.open(path, encoding="utf-8", errors="replace") as f:
            content = await f.read()
        line_count = len(content.splitlines())
        if line_count > self.settings.max_file_lines_stage2:
            logger.info(
                f"Stage 2: skipping {changed.path} ({line_count} lines exceeds "
                f"{self.settings.max_file_lines_stage2})"
            )
            return None

        file_diff = job.file_diffs.get(normalize_path(changed.path), "")
        prompt = build_stage2_prompt(
            job.change, changed, file_diff, content, job.tier, job.instructions
        )
        execution = await self._invoke(
            job, STAGE_FILE_CONTEXT, prompt, label=f"stage 2 {changed.path}"
        )
        return self.validator.parse_suggestions(
            execution.data, STAGE_FILE_CONTEXT, job.run_id
        )

    async def _run_stage3(self, job: AnalysisJob) -> StageOutcome:
        await self._emit(
            job, EventKind.PROCESSING, "Discovering related files", stage=STAGE_CODEBASE
        )
        related = await self.discovery.discover(job.changed_files, job.working_dir)
        if not related:
            logger.info(f"Stage 3: no related files for run {job.run_id}")
            return StageOutcome(
                stage=STAGE_CODEBASE,
                summary="No related files found; codebase context review not needed",
            )

        self._check_cancelled(job)
        prompt = build_stage3_prompt(
            job.change, job.changed_files, related, job.tier, job.instructions
        )
        execution = await self._invoke(job, STAGE_CODEBASE, prompt, label="stage 3")
        await self._emit(
            job, EventKind.PROCESSING, "Processing results", stage=STAGE_CODEBASE
        )
        parsed = self.validator.parse_suggestions(
            execution.data, STAGE_CODEBASE, job.run_id
        )
        return await self._validate(
            job,
            STAGE_CODEBASE,
            parsed,
            summary=_summary_of(execution),
            files_analyzed=len(job.changed_files),
        )

    async def _run_synthesis(self, job: AnalysisJob, result: CascadeResult) -> None:
        stage_suggestions = [
            s for outcome in result.outcomes.values() for s in outcome.suggestions
        ]
        completed = len(result.outcomes)
        await self._emit(
            job, EventKind.STAGE_STARTED, "Consolidating suggestions", stage=STAGE_SYNTHESIS
        )

        final: list[Suggestion] | None = None
        summary: str | None = None
        bypassed = False

        if stage_suggestions:
            try:
                prompt = build_synthesis_prompt(
                    job.change, stage_suggestions, job.changed_files, job.tier, job.instructions
                )
                execution = await self._invoke(job, STAGE_SYNTHESIS, prompt, label="synthesis")
                if execution.parsed and isinstance(execution.data.get("suggestions"), list):
                    parsed = self.validator.parse_suggestions(execution.data, None, job.run_id)
                    outcome = await self._validate(job, STAGE_SYNTHESIS, parsed)
                    final = outcome.suggestions
                    bypassed = outcome.validation_bypassed
                    summary = _summary_of(execution)
                else:
                    logger.warning(
                        f"Synthesis output unusable for run {job.run_id}; merging stage results"
                    )
            except AnalysisCancelledError:
                raise
            except Exception as e:
                if job.is_cancelled():
                    raise AnalysisCancelledError(job.run_id) from e
                logger.warning(
                    f"Synthesis failed for run {job.run_id}; merging stage results: {e}"
                )

        if final is None:
            final = merge_suggestions(stage_suggestions)
        final = [s.model_copy(update={"stage": None, "id": None}) for s in final]
        summary = summary or summarize_counts(final, completed)

        outcome = StageOutcome(
            stage=STAGE_SYNTHESIS,
            suggestions=final,
            summary=summary,
            files_analyzed=len({normalize_path(s.file) for s in final}),
            validation_bypassed=bypassed,
        )
        try:
            await self._store(job, outcome)
        except AnalysisCancelledError:
            raise
        except Exception as e:
            if job.is_cancelled():
                raise AnalysisCancelledError(job.run_id) from e
            # Stages 1-3 are already persisted; only the final level is lost
            logger.warning(f"Storing final suggestions failed for run {job.run_id}: {e}")
            result.failed_stages[STAGE_SYNTHESIS] = str(e)
            result.summary = summary
            await self._emit(job, EventKind.STAGE_FAILED, str(e), stage=STAGE_SYNTHESIS)
            return

        result.outcomes[STAGE_SYNTHESIS] = outcome
        result.final_suggestions = outcome.suggestions
        result.summary = summary
        result.validation_bypassed |= bypassed
        await self._emit(
            job,
            EventKind.STAGE_COMPLETED,
            f"{len(final)} final suggestions",
            stage=STAGE_SYNTHESIS,
        )

    # ── Shared steps ────────────────────────────────────────────────────

    async def _invoke(
        self, job: AnalysisJob, stage: int, prompt: str, label: str
    ) -> ExecutionResult:
        self._check_cancelled(job)
        timeout = self.settings.timeout_for(STAGE_TIMEOUT_KEYS[stage], job.tier)
        try:
            return await self.executor.execute(
                prompt,
                cwd=job.working_dir,
                timeout=timeout,
                run_id=job.run_id,
                label=label,
            )
        except ExecutorError as e:
            if job.is_cancelled():
                raise AnalysisCancelledError(job.run_id) from e
            raise

    async def _validate(
        self,
        job: AnalysisJob,
        stage: int,
        suggestions: list[Suggestion],
        summary: str | None = None,
        files_analyzed: int = 0,
    ) -> StageOutcome:
        paths = [f.path for f in job.changed_files]
        outcome = self.validator.filter_to_changed_files(suggestions, paths, job.run_id)
        if outcome.bypassed and suggestions:
            await self._emit(
                job,
                EventKind.VALIDATION_BYPASSED,
                "Changed-file list unavailable; suggestions accepted without path validation",
                stage=stage,
            )
        accepted = self.validator.anchor_lines(
            outcome.accepted, job.changed_by_path, await self._line_counts(job)
        )
        return StageOutcome(
            stage=stage,
            suggestions=accepted,
            summary=summary,
            files_analyzed=files_analyzed,
            validation_bypassed=outcome.bypassed and bool(suggestions),
        )

    async def _line_counts(self, job: AnalysisJob) -> dict[str, int]:
        """Line counts of changed files, read once per job."""
        if job.line_counts is not None:
            return job.line_counts
        counts: dict[str, int] = {}
        for changed in job.changed_files:
            if changed.is_deleted or changed.is_binary:
                continue
            path = normalize_path(changed.path)
            full_path = job.working_dir / path
            if not full_path.is_file():
                continue
            try:
                async with aiofiles.open(full_path, encoding="utf-8") as f:
                    counts[path] = len((await f.read()).splitlines())
            except (OSError, UnicodeDecodeError) as e:
                logger.debug(f"Line count unavailable for {path}: {e}")
        job.line_counts = counts
        return counts

    async def _store(self, job: AnalysisJob, outcome: StageOutcome) -> None:
        await self._emit(
            job,
            EventKind.STORING,
            f"Storing {len(outcome.suggestions)} suggestions",
            stage=outcome.stage,
        )
        stage = None if outcome.stage == STAGE_SYNTHESIS else outcome.stage
        labelled = [
            s.model_copy(update={"stage": stage, "run_id": job.run_id})
            for s in outcome.suggestions
        ]
        outcome.suggestions = await asyncio.to_thread(
            self.sink.save_suggestions, job.run_id, labelled
        )

    async def _emit(
        self,
        job: AnalysisJob,
        kind: EventKind,
        message: str,
        stage: int | None = None,
        current: int | None = None,
        total: int | None = None,
    ) -> None:
        if job.reporter is None:
            return
        event = ProgressEvent(
            run_id=job.run_id,
            kind=kind,
            message=message,
            stage=stage,
            current=current,
            total=total,
        )
        try:
            outcome = job.reporter(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"Progress reporter failed for run {job.run_id}: {e}")

    def _check_cancelled(self, job: AnalysisJob) -> None:
        if job.is_cancelled():
            raise AnalysisCancelledError(job.run_id)


def _summary_of(execution: ExecutionResult) -> str | None:
    if execution.data and isinstance(execution.data.get("summary"), str):
        return execution.data["summary"]
    return None
