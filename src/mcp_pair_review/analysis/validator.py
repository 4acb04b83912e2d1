"""Suggestion validation at the trust boundary.

Reviewer output is untrusted. Two layers stand between it and storage:

Layer A (parsing): raw items missing a file, line, category or title, or
below the confidence floor, never become Suggestion objects.

Layer B (before persistence): a suggestion survives only if its file
normalizes into the change's authoritative changed-file set. When that
set is empty or unavailable the layer fails open: everything is
accepted and the bypass is reported loudly (warning log plus
``ValidationOutcome.bypassed``), since silently discarding a whole run
because of a metadata hiccup is the worse failure.

Accepted suggestions are then anchored: line ranges past the end of the
file become file-level, and lines outside the changed-line set move to
the nearest changed line.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from pydantic import ValidationError

from ..config.defaults import DEFAULT_CONFIDENCE, DEFAULT_CONFIDENCE_FLOOR
from ..core.paths import normalize_path, normalized_path_set
from .models import ChangedFile, Side, Suggestion

# Raw field name -> Suggestion field name, first match wins
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "file": ("file", "path", "file_path"),
    "line_start": ("line_start", "line", "start_line"),
    "line_end": ("line_end", "end_line"),
    "category": ("category", "type"),
    "title": ("title",),
    "body": ("body", "description", "message"),
    "side": ("side", "old_or_new"),
    "confidence": ("confidence",),
}


@dataclass
class ValidationOutcome:
    """Result of path validation for one batch."""

    accepted: list[Suggestion] = field(default_factory=list)
    dropped: list[Suggestion] = field(default_factory=list)
    bypassed: bool = False


def _pick(raw: Mapping[str, Any], names: tuple[str, ...]) -> Any:
    for name in names:
        value = raw.get(name)
        if value is not None and value != "":
            return value
    return None


def _is_file_level(raw: Mapping[str, Any]) -> bool:
    return bool(raw.get("is_file_level") or raw.get("file_level"))


class SuggestionValidator:
    """Parses, filters and anchors reviewer suggestions.

    Example:
        >>> validator = SuggestionValidator(confidence_floor=0.3)
        >>> parsed = validator.parse_suggestions(result.data, stage=1)
        >>> outcome = validator.filter_to_changed_files(parsed, paths, run_id)
    """

    def __init__(self, confidence_floor: float = DEFAULT_CONFIDENCE_FLOOR) -> None:
        self.confidence_floor = confidence_floor

    # ── Layer A ─────────────────────────────────────────────────────────

    def parse_suggestions(
        self,
        data: Mapping[str, Any] | None,
        stage: int | None,
        run_id: str | None = None,
    ) -> list[Suggestion]:
        """Turn a reviewer JSON payload into Suggestion objects.

        Unparsed output (``data is None``) and payloads without a
        ``suggestions`` list yield an empty list.
        """
        if not data:
            return []
        items = data.get("suggestions")
        if not isinstance(items, list):
            logger.debug(f"[stage {stage}] Payload has no suggestions list")
            return []

        suggestions = []
        for index, raw in enumerate(items):
            suggestion = self._parse_one(raw, stage, run_id)
            if suggestion is None:
                logger.debug(f"[stage {stage}] Discarded raw suggestion #{index}")
                continue
            suggestions.append(suggestion)

        logger.debug(f"[stage {stage}] Parsed {len(suggestions)}/{len(items)} suggestions")
        return suggestions

    def _parse_one(
        self, raw: Any, stage: int | None, run_id: str | None
    ) -> Suggestion | None:
        if not isinstance(raw, Mapping):
            return None

        values = {name: _pick(raw, aliases) for name, aliases in _FIELD_ALIASES.items()}

        file_level = _is_file_level(raw)
        if file_level:
            values["line_start"] = values["line_end"] = None
        elif values["line_start"] is None:
            return None

        if not values["file"] or not values["category"] or not values["title"]:
            return None

        confidence = values["confidence"]
        if confidence is None:
            confidence = DEFAULT_CONFIDENCE
        try:
            confidence = float(confidence)
        except (TypeError, ValueError):
            return None
        if confidence < self.confidence_floor:
            logger.debug(
                f"[stage {stage}] Below confidence floor ({confidence:.2f}): {values['title']}"
            )
            return None
        values["confidence"] = confidence

        remedy = raw.get("suggestion")
        if isinstance(remedy, str) and remedy.strip():
            body = values["body"] or ""
            values["body"] = f"{body}\n\n**Suggestion:** {remedy.strip()}".strip()

        payload = {k: v for k, v in values.items() if v is not None}
        try:
            return Suggestion(stage=stage, run_id=run_id, **payload)
        except ValidationError as e:
            logger.debug(f"[stage {stage}] Invalid suggestion {values['title']!r}: {e}")
            return None

    # ── Layer B ─────────────────────────────────────────────────────────

    def filter_to_changed_files(
        self,
        suggestions: list[Suggestion],
        changed_paths: Iterable[str] | None,
        run_id: str | None = None,
    ) -> ValidationOutcome:
        """Keep only suggestions whose file is part of the change.

        Fails open when ``changed_paths`` is empty or None.
        """
        valid_paths = normalized_path_set(changed_paths or ())

        if not valid_paths:
            if suggestions:
                logger.warning(
                    f"Validation bypassed for run {run_id}: changed-file list is "
                    f"empty or unavailable, accepting {len(suggestions)} suggestions "
                    "without path validation"
                )
            return ValidationOutcome(accepted=list(suggestions), bypassed=True)

        outcome = ValidationOutcome()
        for suggestion in suggestions:
            normalized = normalize_path(suggestion.file)
            if normalized in valid_paths:
                if normalized != suggestion.file:
                    suggestion = suggestion.model_copy(update={"file": normalized})
                outcome.accepted.append(suggestion)
            else:
                logger.warning(
                    f"Dropped suggestion for file not in change: {suggestion.file} "
                    f"(run {run_id}, title {suggestion.title!r})"
                )
                outcome.dropped.append(suggestion)

        if outcome.dropped:
            logger.info(
                f"Path validation for run {run_id}: kept {len(outcome.accepted)}, "
                f"dropped {len(outcome.dropped)}"
            )
        return outcome

    # ── Line anchoring ──────────────────────────────────────────────────

    def anchor_lines(
        self,
        suggestions: list[Suggestion],
        changed_files: Mapping[str, ChangedFile],
        line_counts: Mapping[str, int] | None = None,
    ) -> list[Suggestion]:
        """Fit each suggestion's lines to its file.

        Args:
            suggestions: Path-validated suggestions
            changed_files: Changed files keyed by normalized path
            line_counts: Known line counts per normalized path; files
                missing from the mapping skip the range check

        Returns:
            Suggestions with out-of-range lines converted to file-level
            and unchanged lines re-anchored to the nearest changed line
        """
        counts = line_counts or {}
        anchored = []
        for suggestion in suggestions:
            if suggestion.is_file_level or suggestion.side is Side.OLD:
                anchored.append(suggestion)
                continue

            path = normalize_path(suggestion.file)
            line_count = counts.get(path)
            if line_count is not None and suggestion.line_start > line_count:
                logger.info(
                    f"Line {suggestion.line_start} beyond end of {path} "
                    f"({line_count} lines); converting to file-level"
                )
                anchored.append(
                    suggestion.model_copy(update={"line_start": None, "line_end": None})
                )
                continue
            if (
                line_count is not None
                and suggestion.line_end is not None
                and suggestion.line_end > line_count
            ):
                suggestion = suggestion.model_copy(update={"line_end": line_count})

            changed = changed_files.get(path)
            anchored.append(self._reanchor(suggestion, changed))
        return anchored

    def _reanchor(self, suggestion: Suggestion, changed: ChangedFile | None) -> Suggestion:
        if changed is None or not changed.changed_lines:
            return suggestion

        start = suggestion.line_start
        end = suggestion.line_end or start
        lines = changed.changed_lines
        if start in lines:
            return suggestion

        inside = sorted(line for line in lines if start <= line <= end)
        if inside:
            return suggestion.model_copy(update={"line_start": inside[0]})

        nearest = min(lines, key=lambda line: (abs(line - start), line))
        logger.debug(
            f"Re-anchored {suggestion.file}:{start} to nearest changed line {nearest}"
        )
        return suggestion.model_copy(update={"line_start": nearest, "line_end": nearest})
