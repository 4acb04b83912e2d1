"""Analysis service: the operations boundary adapters call.

Wires the store, run tracker and orchestrator together:

- ``start_analysis`` validates the request, captures the change, admits
  the run and launches the cascade as a background task
- ``get_run_status`` / ``cancel_analysis`` / ``stream_progress`` expose
  live run state
- ``get_suggestions`` / ``update_suggestion_status`` / ``get_stats`` /
  ``list_runs`` / ``get_change_analysis_status`` read persisted results
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from ..config.defaults import MAX_CUSTOM_INSTRUCTIONS_LENGTH, VALID_TIERS
from ..config.settings import ReviewSettings
from ..core.diff import parse_unified_diff
from ..core.exceptions import (
    InvalidRequestError,
    ReviewNotFoundError,
    RunNotFoundError,
    StorageError,
    SuggestionNotFoundError,
)
from ..core.git import GitError, GitManager
from ..core.paths import normalize_path, normalize_repository
from ..storage.store import VALID_LEVELS, ReviewStore
from .events import EventKind, ProgressEvent
from .executor import ProcessExecutor, ProcessRegistry
from .models import (
    AnalysisRun,
    ChangedFile,
    ReviewedChange,
    RunStatus,
    Suggestion,
    SuggestionStatus,
    utc_now,
)
from .orchestrator import AnalysisJob, AnalysisOrchestrator
from .prompts import merge_instructions
from .tracker import ProgressBroadcaster, RunTracker


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise InvalidRequestError(f"'{name}' must be an integer, got {value!r}") from e


@dataclass
class ChangeRef:
    """How a caller names a change.

    Local reviews give ``path`` (a git checkout). Pull requests give
    ``repository`` and ``pr_number``, plus ``worktree`` (a checkout of
    the PR head) when starting an analysis.
    """

    path: str | None = None
    repository: str | None = None
    pr_number: int | None = None
    worktree: str | None = None
    base_ref: str = "HEAD"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeRef:
        pr_number = data.get("pr_number")
        return cls(
            path=data.get("path"),
            repository=data.get("repository"),
            pr_number=_as_int(pr_number, "pr_number") if pr_number is not None else None,
            worktree=data.get("worktree"),
            base_ref=data.get("base_ref") or "HEAD",
        )

    def validate(self) -> None:
        if self.path:
            return
        if self.repository and self.pr_number is not None:
            return
        raise InvalidRequestError("Provide either 'path' or 'repository' and 'pr_number'")


@dataclass
class PreparedChange:
    """A change with its diff captured and ready for analysis."""

    change: ReviewedChange
    changed_files: list[ChangedFile]
    diff: str
    working_dir: Path
    file_diffs: dict[str, str] = field(default_factory=dict)


@dataclass
class StartResult:
    """Outcome of ``start_analysis``; ``already_running`` is not an error."""

    run_id: str
    status: str
    change_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"run_id": self.run_id, "status": self.status, "change_id": self.change_id}


def _local_repository_name(path: Path) -> str:
    return f"local/{path.name.lower() or 'root'}"


class AnalysisService:
    """Entry point for starting, observing and querying analyses.

    Example:
        >>> service = AnalysisService(store, settings)
        >>> started = await service.start_analysis(ChangeRef(path="."))
        >>> status = service.get_run_status(started.run_id)
    """

    def __init__(
        self,
        store: ReviewStore,
        settings: ReviewSettings | None = None,
        tracker: RunTracker | None = None,
        executor: ProcessExecutor | None = None,
        orchestrator_factory: Callable[[ProcessExecutor], AnalysisOrchestrator] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or ReviewSettings()
        self.registry = executor.registry if executor else ProcessRegistry()
        self.tracker = tracker or RunTracker(
            registry=self.registry,
            broadcaster=ProgressBroadcaster(),
            retention_seconds=self.settings.run_retention_seconds,
        )
        self._executor = executor
        self._orchestrator_factory = orchestrator_factory or (
            lambda ex: AnalysisOrchestrator(ex, self.store, self.settings)
        )
        self._tasks: dict[str, asyncio.Task[None]] = {}

    # ── Change capture ──────────────────────────────────────────────────

    def _prepare_sync(self, ref: ChangeRef) -> PreparedChange:
        if ref.path:
            working_dir = Path(ref.path).expanduser().resolve()
            git = GitManager(working_dir)
            change = ReviewedChange(
                repository=_local_repository_name(working_dir),
                local_path=str(working_dir),
                head_sha=git.get_head_sha(),
            )
            diff = git.get_working_tree_diff(ref.base_ref)
        else:
            if not ref.worktree:
                raise InvalidRequestError("'worktree' is required to analyze a pull request")
            working_dir = Path(ref.worktree).expanduser().resolve()
            git = GitManager(working_dir)
            change = ReviewedChange(
                repository=normalize_repository(ref.repository or ""),
                pr_number=ref.pr_number,
                head_sha=git.get_head_sha(),
            )
            diff = git.get_working_tree_diff(ref.base_ref, include_untracked=False)

        patches = parse_unified_diff(diff)
        changed_files = [
            ChangedFile(
                path=normalize_path(p.file_path),
                insertions=p.insertions,
                deletions=p.deletions,
                changed_lines=p.added_lines,
                is_deleted=p.is_deleted,
                is_binary=p.is_binary,
            )
            for p in patches
        ]
        file_diffs = {normalize_path(p.file_path): p.diff_text for p in patches}
        return PreparedChange(
            change=change,
            changed_files=changed_files,
            diff=diff,
            working_dir=working_dir,
            file_diffs=file_diffs,
        )

    async def prepare_change(self, ref: ChangeRef) -> PreparedChange:
        """Capture the diff of ``ref`` and record the change.

        For pull requests an externally stored changed-file list takes
        precedence over the one derived from the diff.

        Raises:
            InvalidRequestError: If the reference or checkout is unusable
        """
        ref.validate()
        try:
            prepared = await asyncio.to_thread(self._prepare_sync, ref)
        except GitError as e:
            raise InvalidRequestError(f"Cannot read change: {e}") from e
        except ValueError as e:
            raise InvalidRequestError(str(e)) from e

        stored = self.store.get_or_create_change(prepared.change)
        prepared.change = stored
        if not stored.is_local:
            external = self.store.get_changed_files(stored.id)
            if external:
                prepared.changed_files = external
        self.store.save_changed_files(stored.id, prepared.changed_files)
        logger.info(
            f"Prepared {stored.label}: {len(prepared.changed_files)} changed files"
        )
        return prepared

    def resolve_change(self, ref: ChangeRef) -> ReviewedChange:
        """Find the stored change named by ``ref`` without touching git.

        Raises:
            ReviewNotFoundError: If no analysis was ever started for it
        """
        ref.validate()
        change: ReviewedChange | None = None
        if ref.path:
            local_path = str(Path(ref.path).expanduser().resolve())
            changes = self.store.list_changes(local_path=local_path)
            change = changes[0] if changes else None
        else:
            try:
                repository = normalize_repository(ref.repository or "")
            except ValueError as e:
                raise InvalidRequestError(str(e)) from e
            key = ReviewedChange(repository=repository, pr_number=ref.pr_number).key
            change = self.store.find_change(key)
        if change is None:
            raise ReviewNotFoundError("No review found for the given change")
        return change

    # ── Runs ────────────────────────────────────────────────────────────

    def _validate_request(self, tier: str | None, custom_instructions: str | None) -> str:
        tier = tier or self.settings.default_tier
        if tier not in VALID_TIERS:
            raise InvalidRequestError(
                f"Invalid tier {tier!r}; expected one of {', '.join(VALID_TIERS)}"
            )
        if custom_instructions and len(custom_instructions) > MAX_CUSTOM_INSTRUCTIONS_LENGTH:
            raise InvalidRequestError(
                f"Custom instructions exceed {MAX_CUSTOM_INSTRUCTIONS_LENGTH} characters"
            )
        return tier

    def executor_for(self, provider: str, model: str) -> ProcessExecutor:
        """Executor running ``provider``'s reviewer command with ``model``.

        Raises:
            InvalidRequestError: If no command is configured for ``provider``
        """
        command = self.settings.command_for(provider)
        if command is None:
            configured = sorted({self.settings.default_provider, *self.settings.providers})
            raise InvalidRequestError(
                f"Unknown provider {provider!r}; configured: {', '.join(configured)}"
            )
        if self._executor is not None:
            return self._executor
        extra_args = list(self.settings.extra_args)
        if model and "--model" not in extra_args:
            extra_args += ["--model", model]
        return ProcessExecutor(
            command=command,
            extra_args=extra_args,
            extra_path=self.settings.extra_path,
            registry=self.registry,
        )

    async def start_analysis(
        self,
        ref: ChangeRef | PreparedChange,
        custom_instructions: str | None = None,
        skip_stage3: bool = False,
        tier: str | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> StartResult:
        """Start the cascade for a change and return immediately.

        Returns:
            ``started`` with the new run id, or ``already_running`` with
            the id of the run in progress for the same change

        Raises:
            InvalidRequestError: Bad tier, instructions or change reference
        """
        tier = self._validate_request(tier, custom_instructions)
        prepared = ref if isinstance(ref, PreparedChange) else await self.prepare_change(ref)
        change = prepared.change

        repo_settings = self.settings.repository_settings(change.repository)
        provider = provider or repo_settings.default_provider or self.settings.default_provider
        model = model or repo_settings.default_model or self.settings.default_model
        repo_instructions = repo_settings.default_instructions
        executor = self.executor_for(provider, model)

        active = self.tracker.active_run_id(change.key)
        if active is not None:
            return StartResult(run_id=active, status="already_running", change_id=change.id)

        run = AnalysisRun(
            id=str(uuid.uuid4()),
            change_id=change.id,
            provider=provider,
            model=model,
            tier=tier,
            repo_instructions=repo_instructions,
            custom_instructions=custom_instructions,
            head_sha=change.head_sha,
        )
        run_id, admitted = await self.tracker.admit(change.key, run, skip_stage3=skip_stage3)
        if not admitted:
            return StartResult(run_id=run_id, status="already_running", change_id=change.id)

        try:
            self.store.create_run(run)
        except StorageError as e:
            await self.tracker.fail(run.id, e)
            raise

        job = AnalysisJob(
            run_id=run.id,
            change=change,
            changed_files=prepared.changed_files,
            diff=prepared.diff,
            working_dir=prepared.working_dir,
            file_diffs=prepared.file_diffs,
            tier=tier,
            instructions=merge_instructions(repo_instructions, custom_instructions),
            skip_stage3=skip_stage3,
            reporter=self.tracker.handle_event,
            is_cancelled=lambda: self.tracker.is_cancelled(run.id),
        )
        orchestrator = self._orchestrator_factory(executor)
        task = asyncio.create_task(self._execute(orchestrator, job), name=f"analysis-{run.id}")
        self._tasks[run.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run.id, None))

        logger.info(f"Started analysis {run.id} for {change.label} ({provider}/{model}, {tier})")
        return StartResult(run_id=run.id, status="started", change_id=change.id)

    async def _execute(self, orchestrator: AnalysisOrchestrator, job: AnalysisJob) -> None:
        state = None
        try:
            result = await orchestrator.run(job)
            state = await self.tracker.complete(job.run_id, result)
        except Exception as e:
            state = await self.tracker.fail(job.run_id, e)
        finally:
            if state is not None:
                self._persist_run(state.run)

    def _persist_run(self, run: AnalysisRun) -> None:
        try:
            self.store.update_run(run)
        except (StorageError, RunNotFoundError) as e:
            logger.warning(f"Could not persist run {run.id}: {e}")

    async def wait_for(self, run_id: str) -> None:
        """Wait until the background task of ``run_id`` has finished."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)

    def get_run_status(self, run_id: str) -> dict[str, Any]:
        """Live status of a run, falling back to the stored record.

        Raises:
            RunNotFoundError: If the run is unknown
        """
        state = self.tracker.get(run_id)
        if state is not None:
            return state.to_dict()

        run = self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Analysis run not found: {run_id}")
        data = run.to_dict()
        data["progress"] = run.summary or run.error or run.status.value
        data["levels"] = {
            str(k): {"status": v.value, "progress": v.value.capitalize()}
            for k, v in sorted(run.stages.items())
        }
        return data

    async def cancel_analysis(self, run_id: str) -> dict[str, Any]:
        """Cancel a run; cancelling a finished run is a no-op success.

        Raises:
            RunNotFoundError: If the run is unknown
        """
        try:
            outcome = await self.tracker.cancel(run_id)
        except RunNotFoundError:
            run = self.store.get_run(run_id)
            if run is None:
                raise
            if run.status.is_terminal:
                return {"run_id": run_id, "status": "already_terminal", "run_status": run.status.value}
            # Left running by another process; nothing to kill here
            run.status = RunStatus.CANCELLED
            run.error = "Cancelled by user"
            run.completed_at = utc_now()
            self._persist_run(run)
            return {"run_id": run_id, "status": "cancelled", "run_status": run.status.value}

        state = self.tracker.get(run_id)
        if outcome == "cancelled" and state is not None:
            self._persist_run(state.run)
        run_status = state.status.value if state is not None else None
        return {"run_id": run_id, "status": outcome, "run_status": run_status}

    async def stream_progress(self, run_id: str) -> AsyncIterator[ProgressEvent]:
        """Progress events for a run until it reaches a terminal state.

        Runs no longer tracked in memory yield one event with their
        stored state.

        Raises:
            RunNotFoundError: If the run is unknown
        """
        if self.tracker.get(run_id) is not None:
            async for event in self.tracker.stream(run_id):
                yield event
            return

        status = self.get_run_status(run_id)
        kind = {
            RunStatus.COMPLETED.value: EventKind.COMPLETED,
            RunStatus.FAILED.value: EventKind.FAILED,
            RunStatus.CANCELLED.value: EventKind.CANCELLED,
        }.get(status["status"], EventKind.FAILED)
        yield ProgressEvent(run_id=run_id, kind=kind, message=status["progress"], state=status)

    async def shutdown(self) -> None:
        """Cancel every run still in progress."""
        for run_id in list(self._tasks):
            try:
                await self.cancel_analysis(run_id)
            except RunNotFoundError:
                continue
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    # ── Results ─────────────────────────────────────────────────────────

    def get_suggestions(
        self,
        ref: ChangeRef | None = None,
        run_id: str | None = None,
        levels: Iterable[str] | None = None,
        file: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[Suggestion]:
        """Suggestions of the latest run (or ``run_id``) of a change.

        Raises:
            InvalidRequestError: Unknown level or status, or no change given
            ReviewNotFoundError / RunNotFoundError: Unknown change or run
        """
        if run_id is not None:
            run = self.store.get_run(run_id)
            if run is None:
                raise RunNotFoundError(f"Analysis run not found: {run_id}")
            change_id = run.change_id
        elif ref is not None:
            change_id = self.resolve_change(ref).id
        else:
            raise InvalidRequestError("Provide a change reference or a run_id")

        level_values = [str(level) for level in (levels or ["final"])]
        unknown = [level for level in level_values if level not in VALID_LEVELS]
        if unknown:
            raise InvalidRequestError(f"Unknown levels: {', '.join(unknown)}")
        status_values = None
        if statuses is not None:
            status_values = list(statuses)
            valid = {s.value for s in SuggestionStatus}
            invalid = [s for s in status_values if s not in valid]
            if invalid:
                raise InvalidRequestError(f"Unknown statuses: {', '.join(invalid)}")

        return self.store.get_suggestions(
            change_id,
            run_id=run_id,
            levels=level_values,
            file=normalize_path(file) if file else None,
            statuses=status_values,
        )

    def update_suggestion_status(self, suggestion_id: int, status: str) -> Suggestion:
        """Record a human review action on one suggestion.

        Raises:
            InvalidRequestError: Unknown status
            SuggestionNotFoundError: Unknown suggestion
        """
        try:
            value = SuggestionStatus(status)
        except ValueError as e:
            raise InvalidRequestError(f"Unknown status {status!r}") from e
        updated = self.store.update_suggestion_status(suggestion_id, value)
        if updated is None:
            raise SuggestionNotFoundError(f"Suggestion not found: {suggestion_id}")
        return updated

    def get_stats(self, ref: ChangeRef) -> dict[str, int]:
        return self.store.get_stats(self.resolve_change(ref).id)

    def list_runs(self, ref: ChangeRef, limit: int = 20) -> list[dict[str, Any]]:
        change = self.resolve_change(ref)
        return [run.to_dict() for run in self.store.list_runs(change.id, limit=limit)]

    def get_change_analysis_status(self, ref: ChangeRef) -> dict[str, Any]:
        """Whether an analysis is running for a change, and the latest run."""
        try:
            change = self.resolve_change(ref)
        except ReviewNotFoundError:
            return {"running": False, "run_id": None, "latest_run": None}
        active = self.tracker.active_run_id(change.key)
        latest = self.store.latest_run(change.id)
        return {
            "running": active is not None,
            "run_id": active,
            "change_id": change.id,
            "latest_run": latest.to_dict() if latest else None,
        }
