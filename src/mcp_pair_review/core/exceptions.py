"""Typed exception hierarchy for mcp-pair-review.

Hierarchy
---------
PairReviewError (base)
├── ExecutorError              – reviewer subprocess failures
│   ├── ProcessTimeoutError    – subprocess exceeded its deadline
│   ├── ProcessError           – subprocess exited non-zero
│   └── ExecutableNotFoundError
├── AnalysisCancelledError     – cancellation marker, never a failure
├── StorageError               – SQLite store errors
├── ConfigError                – configuration / validation errors
├── InvalidRequestError        – bad boundary input (tier, instructions, ...)
├── ReviewNotFoundError        – unknown reviewed change
├── SuggestionNotFoundError    – unknown suggestion id
└── RunNotFoundError           – unknown analysis run id

Unparsed reviewer output, validation bypass and admission conflicts are
not exceptions. They are reported as values (``ExecutionResult.parsed``,
``ValidationOutcome.bypassed`` and ``StartResult.status``).
"""

from typing import Any


class PairReviewError(Exception):
    """Base exception for MCP Pair Review."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = context or {}


# ── Reviewer process ────────────────────────────────────────────────────


class ExecutorError(PairReviewError):
    """Reviewer subprocess failed."""

    pass


class ProcessTimeoutError(ExecutorError):
    """Reviewer subprocess exceeded its deadline and was terminated."""

    def __init__(self, timeout: float, context: dict[str, Any] | None = None) -> None:
        super().__init__(f"Reviewer process timed out after {timeout:g}s", context)
        self.timeout = timeout


class ProcessError(ExecutorError):
    """Reviewer subprocess exited with a non-zero status."""

    def __init__(
        self,
        returncode: int,
        stderr: str = "",
        context: dict[str, Any] | None = None,
    ) -> None:
        detail = stderr.strip()[:500]
        super().__init__(
            f"Reviewer process exited with code {returncode}"
            + (f": {detail}" if detail else ""),
            context,
        )
        self.returncode = returncode
        self.stderr = stderr


class ExecutableNotFoundError(ExecutorError):
    """Reviewer command is not installed or not on PATH."""

    pass


# ── Run lifecycle ───────────────────────────────────────────────────────


class AnalysisCancelledError(PairReviewError):
    """Raised inside a run once it has been cancelled.

    The cancellation path owns the run's terminal state, so handlers that
    see this error must not mark the run as failed.
    """

    is_cancellation = True

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Analysis {run_id} was cancelled", {"run_id": run_id})
        self.run_id = run_id


class RunNotFoundError(PairReviewError):
    """Analysis run id is unknown."""

    pass


class ReviewNotFoundError(PairReviewError):
    """Reviewed change is unknown."""

    pass


class SuggestionNotFoundError(PairReviewError):
    """Suggestion id is unknown."""

    pass


# ── Storage / configuration / boundary ──────────────────────────────────


class StorageError(PairReviewError):
    """SQLite store operation failed."""

    pass


class ConfigError(PairReviewError):
    """Configuration / validation errors."""

    pass


class InvalidRequestError(PairReviewError):
    """Boundary input failed validation."""

    pass


def is_cancellation(error: BaseException) -> bool:
    """Return True if ``error`` marks a cancelled run."""
    return bool(getattr(error, "is_cancellation", False))
