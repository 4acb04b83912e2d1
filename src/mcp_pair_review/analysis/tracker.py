"""In-memory run registry, admission control and progress fan-out.

The tracker owns the live state of every in-flight run, keyed by run id.
All mutation of one run's record happens under that run's asyncio.Lock,
and admission (at most one running run per reviewed change) under a
single admission lock.

Stage statuses only move forward (pending -> running -> terminal). A
terminal stage status, ``skipped`` included, is never overwritten.

Every transition is published through the ProgressBroadcaster, which
fans events out to zero or more subscriber queues per run.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from ..config.defaults import DEFAULT_RUN_RETENTION_SECONDS
from ..core.exceptions import RunNotFoundError, is_cancellation
from .events import EventKind, ProgressEvent
from .executor import ProcessRegistry
from .models import (
    ALL_STAGES,
    STAGE_CODEBASE,
    STAGE_SYNTHESIS,
    AnalysisRun,
    CascadeResult,
    RunStatus,
    StageState,
    StageStatus,
    utc_now,
)

# Per-subscriber queue bound; the oldest event is dropped when full
SUBSCRIBER_QUEUE_SIZE = 1000

_STAGE_EVENT_STATUS = {
    EventKind.STAGE_STARTED: StageStatus.RUNNING,
    EventKind.STAGE_COMPLETED: StageStatus.COMPLETED,
    EventKind.STAGE_FAILED: StageStatus.FAILED,
    EventKind.STAGE_SKIPPED: StageStatus.SKIPPED,
}


class ProgressBroadcaster:
    """Fans progress events out to per-run subscriber queues."""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue[ProgressEvent]]] = {}

    def subscribe(self, run_id: str) -> asyncio.Queue[ProgressEvent]:
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(run_id, set()).add(queue)
        logger.debug(f"Subscriber added for run {run_id} ({self.subscriber_count(run_id)} total)")
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue[ProgressEvent]) -> None:
        queues = self._subscribers.get(run_id)
        if queues is None:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[run_id]
        logger.debug(f"Subscriber removed for run {run_id}")

    def subscriber_count(self, run_id: str) -> int:
        return len(self._subscribers.get(run_id, ()))

    def publish(self, event: ProgressEvent) -> None:
        """Deliver ``event`` to every subscriber of its run without blocking."""
        for queue in list(self._subscribers.get(event.run_id, ())):
            if queue.full():
                # Slow consumer: keep the newest events
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)


@dataclass
class RunState:
    """Live record of one run held by the tracker."""

    run: AnalysisRun
    change_key: str
    stages: dict[int, StageState] = field(default_factory=dict)
    message: str = "Starting analysis"
    current: int | None = None
    total: int | None = None
    cancelled: bool = False
    finished_at: float | None = None

    @property
    def status(self) -> RunStatus:
        return self.run.status

    def set_stage(self, stage: int, status: StageStatus, progress: str | None = None) -> bool:
        """Move ``stage`` forward. Returns False if the move is not allowed."""
        state = self.stages.setdefault(stage, StageState())
        if state.status.is_terminal:
            return False
        if state.status is StageStatus.RUNNING and status is StageStatus.PENDING:
            return False
        state.status = status
        if progress is not None:
            state.progress = progress
        self.run.stages[stage] = status
        return True

    def to_dict(self) -> dict[str, Any]:
        data = self.run.to_dict()
        data.update(
            {
                "change_key": self.change_key,
                "progress": self.message,
                "current": self.current,
                "total": self.total,
                "levels": {str(k): v.to_dict() for k, v in sorted(self.stages.items())},
            }
        )
        return data


class RunTracker:
    """Registry of in-flight runs with admission control and cancellation.

    Example:
        >>> tracker = RunTracker(registry, ProgressBroadcaster())
        >>> run_id, admitted = await tracker.admit(change.key, run)
        >>> if not admitted:
        ...     print(f"already running as {run_id}")
    """

    def __init__(
        self,
        registry: ProcessRegistry | None = None,
        broadcaster: ProgressBroadcaster | None = None,
        retention_seconds: float = DEFAULT_RUN_RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry or ProcessRegistry()
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._runs: dict[str, RunState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._active: dict[str, str] = {}
        self._admission_lock = asyncio.Lock()

    def _lock(self, run_id: str) -> asyncio.Lock:
        return self._locks.setdefault(run_id, asyncio.Lock())

    # ── Admission ───────────────────────────────────────────────────────

    async def admit(
        self, change_key: str, run: AnalysisRun, skip_stage3: bool = False
    ) -> tuple[str, bool]:
        """Register ``run`` unless its change already has a running run.

        Returns:
            ``(run.id, True)`` when admitted, otherwise
            ``(existing_run_id, False)``
        """
        async with self._admission_lock:
            self.evict_expired()
            existing_id = self._active.get(change_key)
            if existing_id is not None:
                existing = self._runs.get(existing_id)
                if existing is not None and existing.status is RunStatus.RUNNING:
                    logger.info(
                        f"Analysis already running for {change_key}: {existing_id}"
                    )
                    return existing_id, False
                del self._active[change_key]

            state = RunState(run=run, change_key=change_key)
            for stage in ALL_STAGES:
                state.set_stage(stage, StageStatus.PENDING, "Pending")
            if skip_stage3:
                state.set_stage(STAGE_CODEBASE, StageStatus.SKIPPED, "Skipped")

            self._runs[run.id] = state
            self._active[change_key] = run.id

        logger.info(f"Admitted analysis {run.id} for {change_key}")
        self._publish(state, EventKind.STARTED, "Analysis started")
        return run.id, True

    def active_run_id(self, change_key: str) -> str | None:
        """Id of the running run for ``change_key``, if any."""
        run_id = self._active.get(change_key)
        state = self._runs.get(run_id) if run_id else None
        if state is None or state.status is not RunStatus.RUNNING:
            return None
        return run_id

    # ── Queries ─────────────────────────────────────────────────────────

    def get(self, run_id: str) -> RunState | None:
        self.evict_expired()
        return self._runs.get(run_id)

    def snapshot(self, run_id: str) -> dict[str, Any]:
        """Status of ``run_id`` as a plain dict.

        Raises:
            RunNotFoundError: If the run is not tracked
        """
        state = self.get(run_id)
        if state is None:
            raise RunNotFoundError(f"Analysis run not found: {run_id}")
        return state.to_dict()

    def is_cancelled(self, run_id: str) -> bool:
        state = self._runs.get(run_id)
        return state is not None and state.cancelled

    # ── Transitions ─────────────────────────────────────────────────────

    async def handle_event(self, event: ProgressEvent) -> None:
        """Apply an orchestrator event to the run and broadcast it."""
        async with self._lock(event.run_id):
            state = self._runs.get(event.run_id)
            if state is None or state.status.is_terminal:
                return

            message = event.message
            if event.kind is EventKind.FILE_PROGRESS and event.total:
                message = f"{event.message} ({event.current}/{event.total})"

            status = _STAGE_EVENT_STATUS.get(event.kind)
            if event.stage is not None:
                if status is not None:
                    state.set_stage(event.stage, status, message)
                else:
                    stage_state = state.stages.get(event.stage)
                    if stage_state is not None and not stage_state.status.is_terminal:
                        stage_state.progress = message

            if event.kind is EventKind.VALIDATION_BYPASSED:
                state.run.validation_bypassed = True

            state.message = message
            state.current = event.current
            state.total = event.total
            self.broadcaster.publish(event.model_copy(update={"state": state.to_dict()}))

    async def complete(self, run_id: str, result: CascadeResult) -> RunState | None:
        """Mark a run completed, preserving skipped and failed stages."""
        async with self._lock(run_id):
            state = self._runs.get(run_id)
            if state is None or state.status.is_terminal:
                return state

            for stage in ALL_STAGES:
                if stage <= result.completed_level or stage == STAGE_SYNTHESIS:
                    state.set_stage(stage, StageStatus.COMPLETED, "Completed")
                else:
                    state.set_stage(stage, StageStatus.FAILED, "Not completed")

            run = state.run
            run.status = RunStatus.COMPLETED
            run.summary = result.summary
            run.total_suggestions = result.total_suggestions
            run.files_analyzed = result.files_analyzed
            run.validation_bypassed |= result.validation_bypassed
            run.completed_at = utc_now()
            state.message = (
                f"Analysis complete: {result.total_suggestions} suggestions "
                f"({len(result.completed_stages)} stages)"
            )
            self._finish(state)

        logger.info(f"Analysis {run_id} completed")
        self._publish(state, EventKind.COMPLETED, state.message)
        return state

    async def fail(self, run_id: str, error: BaseException) -> RunState | None:
        """Mark a run failed.

        Completed and skipped stages keep their status; every other stage
        becomes failed. A cancellation error is not a failure: the state
        the cancellation path set is left untouched.
        """
        if is_cancellation(error):
            logger.info(f"Analysis {run_id} stopped by cancellation")
            return self._runs.get(run_id)

        async with self._lock(run_id):
            state = self._runs.get(run_id)
            if state is None or state.status.is_terminal:
                return state

            for stage in ALL_STAGES:
                state.set_stage(stage, StageStatus.FAILED, "Failed")

            run = state.run
            run.status = RunStatus.FAILED
            run.error = str(error)
            run.completed_at = utc_now()
            state.message = f"Analysis failed: {error}"
            self._finish(state)

        logger.error(f"Analysis {run_id} failed: {error}")
        self._publish(state, EventKind.FAILED, state.message)
        return state

    async def cancel(self, run_id: str) -> str:
        """Cancel a running run.

        Returns:
            ``"cancelled"`` or ``"already_terminal"``

        Raises:
            RunNotFoundError: If the run is not tracked
        """
        async with self._lock(run_id):
            state = self.get(run_id)
            if state is None:
                raise RunNotFoundError(f"Analysis run not found: {run_id}")
            if state.status.is_terminal:
                return "already_terminal"

            state.cancelled = True
            killed = self.registry.kill(run_id)
            for stage in ALL_STAGES:
                state.set_stage(stage, StageStatus.CANCELLED, "Cancelled")

            run = state.run
            run.status = RunStatus.CANCELLED
            run.error = "Cancelled by user"
            run.completed_at = utc_now()
            state.message = "Analysis cancelled"
            self._finish(state)

        logger.info(f"Analysis {run_id} cancelled ({killed} processes terminated)")
        self._publish(state, EventKind.CANCELLED, state.message)
        return "cancelled"

    def _finish(self, state: RunState) -> None:
        state.finished_at = self._clock()
        if self._active.get(state.change_key) == state.run.id:
            del self._active[state.change_key]

    def _publish(self, state: RunState, kind: EventKind, message: str) -> None:
        self.broadcaster.publish(
            ProgressEvent(
                run_id=state.run.id,
                kind=kind,
                message=message,
                state=state.to_dict(),
            )
        )

    # ── Streaming ───────────────────────────────────────────────────────

    async def stream(self, run_id: str) -> AsyncIterator[ProgressEvent]:
        """Yield progress events for ``run_id`` until it reaches a terminal state.

        The first event is a snapshot of the current state. Closing the
        iterator unsubscribes.

        Raises:
            RunNotFoundError: If the run is not tracked
        """
        state = self.get(run_id)
        if state is None:
            raise RunNotFoundError(f"Analysis run not found: {run_id}")

        queue = self.broadcaster.subscribe(run_id)
        try:
            snapshot_kind = {
                RunStatus.COMPLETED: EventKind.COMPLETED,
                RunStatus.FAILED: EventKind.FAILED,
                RunStatus.CANCELLED: EventKind.CANCELLED,
            }.get(state.status, EventKind.STARTED)
            snapshot = ProgressEvent(
                run_id=run_id,
                kind=snapshot_kind,
                message=state.message,
                state=state.to_dict(),
            )
            yield snapshot
            if snapshot.is_terminal:
                return

            while True:
                event = await queue.get()
                yield event
                if event.is_terminal:
                    return
        finally:
            self.broadcaster.unsubscribe(run_id, queue)

    # ── Retention ───────────────────────────────────────────────────────

    def evict_expired(self) -> int:
        """Drop terminal runs older than the retention window."""
        now = self._clock()
        expired = [
            run_id
            for run_id, state in self._runs.items()
            if state.finished_at is not None
            and now - state.finished_at > self.retention_seconds
        ]
        for run_id in expired:
            del self._runs[run_id]
            self._locks.pop(run_id, None)
        if expired:
            logger.debug(f"Evicted {len(expired)} finished runs from tracker")
        return len(expired)
