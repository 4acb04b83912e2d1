"""SQLite persistence for reviewed changes, analysis runs and suggestions.

Tables:
    reviewed_changes  one row per change (local working tree or PR)
    changed_files     authoritative changed-file list per change
    analysis_runs     one row per run, never deleted
    suggestions       findings; ``ai_level`` NULL marks the final set

Writes are append-mostly. A run's suggestions for one stage are inserted
in a single transaction; only ``status`` of a suggestion is ever updated.
"""

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from loguru import logger

from ..analysis.models import (
    ISSUE_CATEGORIES,
    AnalysisRun,
    ChangedFile,
    ReviewedChange,
    RunStatus,
    StageStatus,
    Suggestion,
    SuggestionCategory,
    SuggestionStatus,
    utc_now,
)
from ..core.exceptions import RunNotFoundError, StorageError

# Level filter value for the synthesized (final) suggestion set
FINAL_LEVEL = "final"
VALID_LEVELS = (FINAL_LEVEL, "1", "2", "3")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS reviewed_changes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_key TEXT NOT NULL UNIQUE,
    repository TEXT NOT NULL,
    local_path TEXT,
    head_sha TEXT,
    pr_number INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS changed_files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_id INTEGER NOT NULL REFERENCES reviewed_changes(id),
    path TEXT NOT NULL,
    insertions INTEGER NOT NULL DEFAULT 0,
    deletions INTEGER NOT NULL DEFAULT 0,
    changed_lines TEXT NOT NULL DEFAULT '[]',
    is_deleted INTEGER NOT NULL DEFAULT 0,
    is_binary INTEGER NOT NULL DEFAULT 0,
    position INTEGER NOT NULL DEFAULT 0,
    UNIQUE(change_id, path)
);

CREATE TABLE IF NOT EXISTS analysis_runs (
    id TEXT PRIMARY KEY,
    review_id INTEGER NOT NULL REFERENCES reviewed_changes(id),
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    tier TEXT NOT NULL,
    custom_instructions TEXT,
    repo_instructions TEXT,
    head_sha TEXT,
    summary TEXT,
    status TEXT NOT NULL,
    stages TEXT NOT NULL DEFAULT '{}',
    total_suggestions INTEGER NOT NULL DEFAULT 0,
    files_analyzed INTEGER NOT NULL DEFAULT 0,
    validation_bypassed INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS suggestions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES analysis_runs(id),
    review_id INTEGER NOT NULL REFERENCES reviewed_changes(id),
    ai_level INTEGER,
    file TEXT NOT NULL,
    line_start INTEGER,
    line_end INTEGER,
    side TEXT NOT NULL,
    category TEXT NOT NULL,
    title TEXT NOT NULL,
    body TEXT NOT NULL,
    confidence REAL NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_runs_review ON analysis_runs(review_id, started_at);
CREATE INDEX IF NOT EXISTS idx_suggestions_run ON suggestions(run_id, ai_level);
"""


class ReviewStore:
    """SQLite store for the analysis engine.

    Example:
        >>> store = ReviewStore(Path(".pair-review/pair-review.db"))
        >>> change = store.get_or_create_change(ReviewedChange("local/app", "/src/app", "abc123"))
        >>> store.get_suggestions(change.id)
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            logger.error(f"Database error in {self.db_path}: {e}")
            raise StorageError(f"Database error: {e}", {"db_path": str(self.db_path)}) from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create database and tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
        logger.debug(f"Initialized review database at {self.db_path}")

    # ── Reviewed changes ────────────────────────────────────────────────

    def get_or_create_change(self, change: ReviewedChange) -> ReviewedChange:
        """Return the stored change for ``change.key``, inserting it if new."""
        existing = self.find_change(change.key)
        if existing is not None:
            return existing
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO reviewed_changes
                    (change_key, repository, local_path, head_sha, pr_number, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    change.key,
                    change.repository,
                    change.local_path,
                    change.head_sha,
                    change.pr_number,
                    utc_now(),
                ),
            )
            logger.debug(f"Recorded reviewed change {change.key} (id {cursor.lastrowid})")
        stored = self.find_change(change.key)
        if stored is None:
            raise StorageError(f"Could not record reviewed change {change.key}")
        return stored

    def find_change(self, change_key: str) -> ReviewedChange | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM reviewed_changes WHERE change_key = ?", (change_key,)
            ).fetchone()
        return _row_to_change(row) if row else None

    def get_change(self, change_id: int) -> ReviewedChange | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM reviewed_changes WHERE id = ?", (change_id,)
            ).fetchone()
        return _row_to_change(row) if row else None

    def list_changes(self, local_path: str | None = None) -> list[ReviewedChange]:
        """Reviewed changes, newest first, optionally for one local path."""
        query = "SELECT * FROM reviewed_changes"
        params: tuple[Any, ...] = ()
        if local_path is not None:
            query += " WHERE local_path = ?"
            params = (local_path,)
        query += " ORDER BY id DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_change(row) for row in rows]

    # ── Changed files ───────────────────────────────────────────────────

    def save_changed_files(self, change_id: int, files: Iterable[ChangedFile]) -> None:
        """Replace the changed-file list of a change."""
        rows = [
            (
                change_id,
                f.path,
                f.insertions,
                f.deletions,
                json.dumps(sorted(f.changed_lines)),
                int(f.is_deleted),
                int(f.is_binary),
                position,
            )
            for position, f in enumerate(files)
        ]
        with self._connect() as conn:
            conn.execute("DELETE FROM changed_files WHERE change_id = ?", (change_id,))
            conn.executemany(
                """
                INSERT INTO changed_files
                    (change_id, path, insertions, deletions, changed_lines,
                     is_deleted, is_binary, position)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

    def get_changed_files(self, change_id: int) -> list[ChangedFile]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM changed_files WHERE change_id = ? ORDER BY position",
                (change_id,),
            ).fetchall()
        return [
            ChangedFile(
                path=row["path"],
                insertions=row["insertions"],
                deletions=row["deletions"],
                changed_lines=frozenset(json.loads(row["changed_lines"])),
                is_deleted=bool(row["is_deleted"]),
                is_binary=bool(row["is_binary"]),
            )
            for row in rows
        ]

    # ── Analysis runs ───────────────────────────────────────────────────

    def create_run(self, run: AnalysisRun) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO analysis_runs
                    (id, review_id, provider, model, tier, custom_instructions,
                     repo_instructions, head_sha, summary, status, stages,
                     total_suggestions, files_analyzed, validation_bypassed,
                     error, started_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.change_id,
                    run.provider,
                    run.model,
                    run.tier,
                    run.custom_instructions,
                    run.repo_instructions,
                    run.head_sha,
                    run.summary,
                    run.status.value,
                    _stages_json(run),
                    run.total_suggestions,
                    run.files_analyzed,
                    int(run.validation_bypassed),
                    run.error,
                    run.started_at,
                    run.completed_at,
                ),
            )

    def update_run(self, run: AnalysisRun) -> None:
        """Write the mutable fields of ``run`` (status, counts, summary)."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE analysis_runs
                SET summary = ?, status = ?, stages = ?, total_suggestions = ?,
                    files_analyzed = ?, validation_bypassed = ?, error = ?,
                    completed_at = ?
                WHERE id = ?
                """,
                (
                    run.summary,
                    run.status.value,
                    _stages_json(run),
                    run.total_suggestions,
                    run.files_analyzed,
                    int(run.validation_bypassed),
                    run.error,
                    run.completed_at,
                    run.id,
                ),
            )
            updated = cursor.rowcount
        if updated == 0:
            raise RunNotFoundError(f"Analysis run not found: {run.id}")

    def get_run(self, run_id: str) -> AnalysisRun | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM analysis_runs WHERE id = ?", (run_id,)
            ).fetchone()
        return _row_to_run(row) if row else None

    def list_runs(self, change_id: int, limit: int = 20) -> list[AnalysisRun]:
        """Run history of a change, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM analysis_runs WHERE review_id = ?
                ORDER BY started_at DESC, rowid DESC LIMIT ?
                """,
                (change_id, limit),
            ).fetchall()
        return [_row_to_run(row) for row in rows]

    def latest_run(self, change_id: int) -> AnalysisRun | None:
        """Most recent completed run, or the most recent run of any status."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM analysis_runs WHERE review_id = ?
                ORDER BY (status = 'completed') DESC, started_at DESC, rowid DESC
                LIMIT 1
                """,
                (change_id,),
            ).fetchone()
        return _row_to_run(row) if row else None

    def fail_interrupted_runs(self) -> int:
        """Mark runs left ``running`` by a previous process as failed."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE analysis_runs
                SET status = 'failed', error = 'Interrupted before completion',
                    completed_at = ?
                WHERE status = 'running'
                """,
                (utc_now(),),
            )
            count = cursor.rowcount
        if count:
            logger.warning(f"Marked {count} interrupted runs as failed")
        return count

    # ── Suggestions ─────────────────────────────────────────────────────

    def save_suggestions(self, run_id: str, suggestions: list[Suggestion]) -> list[Suggestion]:
        """Insert suggestions of one run in a single transaction.

        Returns:
            The suggestions with ``id``, ``run_id`` and ``created_at`` set
        """
        if not suggestions:
            return []
        created_at = utc_now()
        saved = []
        with self._connect() as conn:
            row = conn.execute(
                "SELECT review_id FROM analysis_runs WHERE id = ?", (run_id,)
            ).fetchone()
            if row is None:
                raise RunNotFoundError(f"Analysis run not found: {run_id}")
            review_id = row["review_id"]
            for suggestion in suggestions:
                cursor = conn.execute(
                    """
                    INSERT INTO suggestions
                        (run_id, review_id, ai_level, file, line_start, line_end,
                         side, category, title, body, confidence, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        review_id,
                        suggestion.stage,
                        suggestion.file,
                        suggestion.line_start,
                        suggestion.line_end,
                        suggestion.side.value,
                        suggestion.category.value,
                        suggestion.title,
                        suggestion.body,
                        suggestion.confidence,
                        suggestion.status.value,
                        created_at,
                    ),
                )
                saved.append(
                    suggestion.model_copy(
                        update={
                            "id": cursor.lastrowid,
                            "run_id": run_id,
                            "created_at": created_at,
                        }
                    )
                )
        logger.debug(f"Stored {len(saved)} suggestions for run {run_id}")
        return saved

    def get_suggestions(
        self,
        change_id: int,
        run_id: str | None = None,
        levels: Iterable[str] = (FINAL_LEVEL,),
        file: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[Suggestion]:
        """Suggestions of one run of a change.

        Args:
            change_id: Reviewed change id
            run_id: Run to read; defaults to the latest run
            levels: Any of ``final``, ``1``, ``2``, ``3``
            file: Only suggestions for this path
            statuses: Statuses to include; defaults to all but dismissed

        Returns:
            Suggestions ordered by file, then line
        """
        if run_id is None:
            latest = self.latest_run(change_id)
            if latest is None:
                return []
            run_id = latest.id

        level_values = [str(level) for level in levels]
        unknown = set(level_values) - set(VALID_LEVELS)
        if unknown:
            raise ValueError(f"Unknown levels: {sorted(unknown)}")

        if statuses is None:
            status_values = [
                s.value for s in SuggestionStatus if s is not SuggestionStatus.DISMISSED
            ]
        else:
            status_values = [SuggestionStatus(s).value for s in statuses]

        level_clauses = []
        params: list[Any] = [change_id, run_id]
        if FINAL_LEVEL in level_values:
            level_clauses.append("ai_level IS NULL")
        numeric = [int(level) for level in level_values if level != FINAL_LEVEL]
        if numeric:
            level_clauses.append(f"ai_level IN ({','.join('?' * len(numeric))})")
            params.extend(numeric)

        query = (
            "SELECT * FROM suggestions WHERE review_id = ? AND run_id = ? "
            f"AND ({' OR '.join(level_clauses) or '0'}) "
            f"AND status IN ({','.join('?' * len(status_values))})"
        )
        params.extend(status_values)
        if file is not None:
            query += " AND file = ?"
            params.append(file)
        query += " ORDER BY file, line_start IS NULL DESC, line_start, id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_suggestion(row) for row in rows]

    def get_suggestion(self, suggestion_id: int) -> Suggestion | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM suggestions WHERE id = ?", (suggestion_id,)
            ).fetchone()
        return _row_to_suggestion(row) if row else None

    def update_suggestion_status(
        self, suggestion_id: int, status: SuggestionStatus | str
    ) -> Suggestion | None:
        """Set the review status of one suggestion. Returns None if unknown."""
        value = SuggestionStatus(status).value
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE suggestions SET status = ? WHERE id = ?", (value, suggestion_id)
            )
            updated = cursor.rowcount
        if updated == 0:
            return None
        return self.get_suggestion(suggestion_id)

    def get_stats(self, change_id: int) -> dict[str, int]:
        """Counts of the latest run's final, non-dismissed suggestions."""
        suggestions = self.get_suggestions(change_id)
        issues = sum(1 for s in suggestions if s.category in ISSUE_CATEGORIES)
        praise = sum(1 for s in suggestions if s.category is SuggestionCategory.PRAISE)
        return {
            "issues": issues,
            "suggestions": len(suggestions) - issues - praise,
            "praise": praise,
        }


def _stages_json(run: AnalysisRun) -> str:
    return json.dumps({str(k): v.value for k, v in run.stages.items()})


def _row_to_change(row: sqlite3.Row) -> ReviewedChange:
    return ReviewedChange(
        repository=row["repository"],
        local_path=row["local_path"],
        head_sha=row["head_sha"],
        pr_number=row["pr_number"],
        id=row["id"],
    )


def _row_to_run(row: sqlite3.Row) -> AnalysisRun:
    stages = {int(k): StageStatus(v) for k, v in json.loads(row["stages"] or "{}").items()}
    return AnalysisRun(
        id=row["id"],
        change_id=row["review_id"],
        provider=row["provider"],
        model=row["model"],
        tier=row["tier"],
        status=RunStatus(row["status"]),
        repo_instructions=row["repo_instructions"],
        custom_instructions=row["custom_instructions"],
        head_sha=row["head_sha"],
        summary=row["summary"],
        total_suggestions=row["total_suggestions"],
        files_analyzed=row["files_analyzed"],
        stages=stages,
        validation_bypassed=bool(row["validation_bypassed"]),
        error=row["error"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def _row_to_suggestion(row: sqlite3.Row) -> Suggestion:
    return Suggestion(
        id=row["id"],
        run_id=row["run_id"],
        stage=row["ai_level"],
        file=row["file"],
        line_start=row["line_start"],
        line_end=row["line_end"],
        side=row["side"],
        category=row["category"],
        title=row["title"],
        body=row["body"],
        confidence=row["confidence"],
        status=row["status"],
        created_at=row["created_at"],
    )
