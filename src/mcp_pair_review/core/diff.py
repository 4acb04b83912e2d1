"""Unified diff parsing.

Splits a multi-file unified diff into per-file patches and extracts the
line numbers each patch touches. The new-side line set is what anchors
suggestions: a suggestion may only target a line that the change added
or modified.
"""

import re
from dataclasses import dataclass, field

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_FILE_HEADER = re.compile(r"^diff --git ", re.MULTILINE)


@dataclass(frozen=True)
class FilePatch:
    """A single file's changes within a unified diff.

    Attributes:
        file_path: New-side path relative to the repository root
        old_path: Old-side path when the file was renamed, else None
        diff_text: The file's section of the diff, header included
        insertions: Number of added lines
        deletions: Number of removed lines
        added_lines: New-side line numbers that were added or modified
        deleted_lines: Old-side line numbers that were removed
        is_new_file: File did not exist before the change
        is_deleted: File was removed by the change
        is_binary: Git reported a binary difference
    """

    file_path: str
    old_path: str | None
    diff_text: str
    insertions: int
    deletions: int
    added_lines: frozenset[int] = field(default_factory=frozenset)
    deleted_lines: frozenset[int] = field(default_factory=frozenset)
    is_new_file: bool = False
    is_deleted: bool = False
    is_binary: bool = False


def _strip_prefix(path: str) -> str:
    path = path.strip().strip('"')
    if path.startswith(("a/", "b/")):
        return path[2:]
    return path


def _header_paths(header_line: str, body: str) -> tuple[str, str]:
    """Resolve old/new paths, preferring the ---/+++ markers."""
    old_path = new_path = None
    for line in body.splitlines():
        if line.startswith("--- "):
            candidate = line[4:].split("\t")[0]
            old_path = None if candidate == "/dev/null" else _strip_prefix(candidate)
        elif line.startswith("+++ "):
            candidate = line[4:].split("\t")[0]
            new_path = None if candidate == "/dev/null" else _strip_prefix(candidate)
            break
        elif line.startswith("@@"):
            break

    if old_path is None and new_path is None:
        # Binary or mode-only change: fall back to "a/x b/y" in the header
        parts = header_line.split(" b/", 1)
        old_path = _strip_prefix(parts[0])
        new_path = parts[1].strip() if len(parts) > 1 else old_path

    return old_path or new_path, new_path or old_path


def parse_hunk_lines(diff_text: str) -> tuple[set[int], set[int], int, int]:
    """Walk the hunks of a single-file diff.

    Returns:
        (added new-side lines, deleted old-side lines, insertions, deletions)
    """
    added: set[int] = set()
    deleted: set[int] = set()
    new_line: int | None = None
    old_line: int | None = None

    for line in diff_text.splitlines():
        header = _HUNK_HEADER.match(line)
        if header:
            old_line = int(header.group(1))
            new_line = int(header.group(3))
            continue
        if new_line is None or old_line is None:
            continue
        if line.startswith("+"):
            added.add(new_line)
            new_line += 1
        elif line.startswith("-"):
            deleted.add(old_line)
            old_line += 1
        elif line.startswith("\\"):
            # "\ No newline at end of file"
            continue
        else:
            new_line += 1
            old_line += 1

    return added, deleted, len(added), len(deleted)


def parse_unified_diff(diff_text: str) -> list[FilePatch]:
    """Split a unified diff into per-file patches.

    Args:
        diff_text: Output of ``git diff`` (any number of files)

    Returns:
        One FilePatch per file section, in diff order
    """
    patches: list[FilePatch] = []
    if not diff_text or not diff_text.strip():
        return patches

    sections = _FILE_HEADER.split(diff_text)
    for section in sections[1:]:
        header_line, _, body = section.partition("\n")
        old_path, new_path = _header_paths(header_line, body)

        is_new_file = "new file mode" in body or "--- /dev/null" in body
        is_deleted = "deleted file mode" in body or "+++ /dev/null" in body
        is_binary = "Binary files " in body or "GIT binary patch" in body

        added, deleted, insertions, deletions = parse_hunk_lines(body)

        patches.append(
            FilePatch(
                file_path=new_path,
                old_path=old_path if old_path != new_path else None,
                diff_text="diff --git " + section,
                insertions=insertions,
                deletions=deletions,
                added_lines=frozenset(added),
                deleted_lines=frozenset(deleted),
                is_new_file=is_new_file,
                is_deleted=is_deleted,
                is_binary=is_binary,
            )
        )

    return patches


def format_line_ranges(lines: frozenset[int] | set[int]) -> str:
    """Render a line set compactly, e.g. ``3-5, 9, 12-14``."""
    if not lines:
        return "(none)"

    ordered = sorted(lines)
    ranges: list[str] = []
    start = prev = ordered[0]
    for number in ordered[1:]:
        if number == prev + 1:
            prev = number
            continue
        ranges.append(f"{start}-{prev}" if start != prev else str(start))
        start = prev = number
    ranges.append(f"{start}-{prev}" if start != prev else str(start))
    return ", ".join(ranges)
