"""Typed progress events published by the orchestrator and tracker."""

from enum import StrEnum
from typing import Any

import orjson
from pydantic import BaseModel, Field

from .models import utc_now


class EventKind(StrEnum):
    """Named checkpoints in a run's life."""

    STARTED = "started"
    PREPARING = "preparing"
    STAGE_STARTED = "stage_started"
    FILE_PROGRESS = "file_progress"
    PROCESSING = "processing"
    STORING = "storing"
    VALIDATION_BYPASSED = "validation_bypassed"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    STAGE_SKIPPED = "stage_skipped"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_EVENT_KINDS = {EventKind.COMPLETED, EventKind.FAILED, EventKind.CANCELLED}


class ProgressEvent(BaseModel):
    """One progress notification for a run.

    ``state`` carries a snapshot of the run status (as returned by
    ``get_run_status``) when the tracker publishes the event.
    """

    run_id: str
    kind: EventKind
    message: str = ""
    stage: int | None = None
    current: int | None = None
    total: int | None = None
    state: dict[str, Any] | None = None
    timestamp: str = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_EVENT_KINDS

    def to_sse(self) -> str:
        """Render as one Server-Sent Events frame."""
        payload = orjson.dumps(self.model_dump(mode="json")).decode()
        return f"event: {self.kind.value}\ndata: {payload}\n\n"
