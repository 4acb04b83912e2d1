"""Context discovery for codebase-wide review.

Given the files a change touches, find the smallest useful set of other
files the reviewer should see:

1. Files the changed file imports (relative JS/TS specifiers and Python
   modules), resolved by probing ``path``, ``path.ext``, ``path.json``
   and ``path/index.ext``
2. Conventional test files (``name.test.*``, ``name.spec.*``,
   ``test/name.*``, ``__tests__/name.*``) beside the file and at the
   project root
3. Source files that import the changed file (bounded walk, limited
   number of matches per changed file)
4. Conventional project configuration files, once per run

Paths are deduplicated before any content is loaded. Missing paths and
directories are skipped silently; they are expected when a specifier
points at a package or a generated file.
"""

from __future__ import annotations

import asyncio
import os
import re
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

import aiofiles
from loguru import logger

from ..config.defaults import (
    DEFAULT_IGNORE_DIRS,
    DEFAULT_MAX_RELATED_FILE_LINES,
    DEFAULT_REVERSE_MATCH_LIMIT,
    DEFAULT_REVERSE_SEARCH_DEPTH,
    PROJECT_CONFIG_FILES,
    RESOLVE_EXTENSIONS,
    SOURCE_EXTENSIONS,
    TEST_DIR_NAMES,
)
from ..core.paths import normalize_path
from .models import ChangedFile, RelatedFile, RelatedReason

# import x from './a'; export * from './a'; import './a'; import('./a')
_JS_IMPORT = re.compile(
    r"""(?:\bfrom\s*|\bimport\s*\(?\s*|\brequire\s*\(\s*)['"]([^'"\n]+)['"]"""
)
# from .mod import x / from pkg.mod import x
_PY_FROM_IMPORT = re.compile(r"^\s*from\s+(\.*[\w.]*)\s+import\s+", re.MULTILINE)
# import pkg.mod, other
_PY_IMPORT = re.compile(r"^\s*import\s+([\w.]+(?:\s*,\s*[\w.]+)*)", re.MULTILINE)

_JS_FAMILY = {".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx", ".vue", ".svelte"}

# Base names too generic to search for; the parent directory is used instead
_GENERIC_STEMS = {"index", "__init__", "main", "mod"}


def _stem(path: PurePosixPath) -> str:
    name = path.name
    for marker in (".test.", ".spec."):
        if marker in name:
            return name.split(marker)[0]
    return name.split(".")[0] if not name.startswith(".") else name


def _is_test_path(path: PurePosixPath) -> bool:
    name = path.name
    if ".test." in name or ".spec." in name:
        return True
    if name.startswith("test_") or path.stem.endswith("_test"):
        return True
    return any(part in TEST_DIR_NAMES for part in path.parts[:-1])


class ContextDiscovery:
    """Finds related files for a set of changed files.

    Example:
        >>> discovery = ContextDiscovery(reverse_match_limit=5)
        >>> related = await discovery.discover(changed_files, worktree)
        >>> [(r.path, r.reason) for r in related]
    """

    def __init__(
        self,
        max_file_lines: int = DEFAULT_MAX_RELATED_FILE_LINES,
        reverse_match_limit: int = DEFAULT_REVERSE_MATCH_LIMIT,
        reverse_search_depth: int = DEFAULT_REVERSE_SEARCH_DEPTH,
        ignore_dirs: Iterable[str] | None = None,
        config_files: Iterable[str] | None = None,
    ) -> None:
        self.max_file_lines = max_file_lines
        self.reverse_match_limit = reverse_match_limit
        self.reverse_search_depth = reverse_search_depth
        self.ignore_dirs = set(DEFAULT_IGNORE_DIRS if ignore_dirs is None else ignore_dirs)
        self.config_files = list(
            PROJECT_CONFIG_FILES if config_files is None else config_files
        )

    async def discover(
        self,
        changed_files: Iterable[ChangedFile | str],
        working_dir: Path,
    ) -> list[RelatedFile]:
        """Discover related files for ``changed_files`` under ``working_dir``.

        Returns:
            Related files with loaded content, excluding the changed files
            themselves, in discovery order
        """
        root = working_dir.resolve()
        changed = [
            normalize_path(f.path if isinstance(f, ChangedFile) else f)
            for f in changed_files
            if not (isinstance(f, ChangedFile) and (f.is_deleted or f.is_binary))
        ]
        changed = [p for p in dict.fromkeys(changed) if p]
        changed_set = set(changed)

        # path -> (reason, related_to); first reason wins
        found: dict[str, tuple[RelatedReason, str | None]] = {}

        def add(path: str | None, reason: RelatedReason, related_to: str | None) -> None:
            if path and path not in changed_set and path not in found:
                found[path] = (reason, related_to)

        for changed_path in changed:
            try:
                for path in await self._find_imports(changed_path, root):
                    add(path, RelatedReason.IMPORT, changed_path)
                for path in self._find_tests(changed_path, root):
                    add(path, RelatedReason.TEST, changed_path)
            except OSError as e:
                logger.warning(f"Context discovery failed for {changed_path}: {e}")

        if self.reverse_match_limit > 0 and changed:
            reverse = await self._find_reverse_references(changed, root)
            for changed_path, paths in reverse.items():
                for path in paths:
                    add(path, RelatedReason.REVERSE_IMPORT, changed_path)

        for path in self._find_config_files(root):
            add(path, RelatedReason.CONFIG, None)

        logger.debug(
            f"Context discovery: {len(found)} candidate paths for {len(changed)} changed files"
        )

        related: list[RelatedFile] = []
        for path, (reason, related_to) in found.items():
            loaded = await self._load(root, path)
            if loaded is None:
                continue
            content, line_count = loaded
            related.append(
                RelatedFile(
                    path=path,
                    content=content,
                    line_count=line_count,
                    reason=reason,
                    related_to=related_to,
                )
            )

        logger.info(f"Context discovery found {len(related)} related files")
        return related

    # ── Imports ─────────────────────────────────────────────────────────

    async def _find_imports(self, changed_path: str, root: Path) -> list[str]:
        source = root / changed_path
        if not source.is_file():
            return []
        async with aiofiles.open(source, encoding="utf-8", errors="replace") as f:
            content = await f.read()

        suffix = PurePosixPath(changed_path).suffix
        if suffix == ".py":
            return self._resolve_python_imports(content, changed_path, root)

        resolved = []
        base_dir = PurePosixPath(changed_path).parent
        for specifier in _JS_IMPORT.findall(content):
            if not specifier.startswith((".", "/")):
                # Bare specifiers name installed packages
                continue
            if specifier.startswith("/"):
                candidate = PurePosixPath(specifier.lstrip("/"))
            else:
                candidate = base_dir / specifier
            path = self._probe(root, candidate)
            if path:
                resolved.append(path)
        return resolved

    def _resolve_python_imports(self, content: str, changed_path: str, root: Path) -> list[str]:
        modules: list[str] = []
        for match in _PY_FROM_IMPORT.findall(content):
            modules.append(match)
        for match in _PY_IMPORT.findall(content):
            modules.extend(m.strip() for m in match.split(","))

        package_dir = PurePosixPath(changed_path).parent
        resolved = []
        for module in modules:
            if module.startswith("."):
                dots = len(module) - len(module.lstrip("."))
                base = package_dir
                for _ in range(dots - 1):
                    base = base.parent
                rest = module[dots:]
                candidates = [base / rest.replace(".", "/")] if rest else []
            else:
                relative = module.replace(".", "/")
                candidates = [PurePosixPath(relative), PurePosixPath("src") / relative]
            for candidate in candidates:
                path = self._probe(root, candidate, extensions=[".py"], index_name="__init__")
                if path:
                    resolved.append(path)
                    break
        return resolved

    def _probe(
        self,
        root: Path,
        candidate: PurePosixPath,
        extensions: list[str] | None = None,
        index_name: str = "index",
    ) -> str | None:
        """Resolve an import target to an existing file, or None."""
        exts = RESOLVE_EXTENSIONS if extensions is None else extensions
        normalized = normalize_path(os.path.normpath(str(candidate)))
        if not normalized or normalized.startswith(".."):
            return None

        options = [normalized]
        options.extend(f"{normalized}{ext}" for ext in exts)
        options.append(f"{normalized}.json")
        options.extend(f"{normalized}/{index_name}{ext}" for ext in exts)

        for option in options:
            if (root / option).is_file():
                return option
        return None

    # ── Tests ───────────────────────────────────────────────────────────

    def _find_tests(self, changed_path: str, root: Path) -> list[str]:
        path = PurePosixPath(changed_path)
        if _is_test_path(path):
            return []

        stem = _stem(path)
        suffix = path.suffix
        exts = [suffix] if suffix else []
        if suffix in _JS_FAMILY:
            exts.extend(e for e in RESOLVE_EXTENSIONS if e in _JS_FAMILY and e != suffix)

        names = []
        for ext in exts:
            names.extend([f"{stem}.test{ext}", f"{stem}.spec{ext}"])
            if ext == ".py":
                names.extend([f"test_{stem}.py", f"{stem}_test.py"])

        directories = [path.parent, PurePosixPath(".")]
        candidates: list[str] = []
        for directory in dict.fromkeys(directories):
            for name in names:
                candidates.append(str(directory / name))
            for test_dir in TEST_DIR_NAMES:
                for ext in exts:
                    candidates.append(str(directory / test_dir / f"{stem}{ext}"))
                for name in names:
                    candidates.append(str(directory / test_dir / name))

        found = []
        for candidate in dict.fromkeys(candidates):
            normalized = normalize_path(candidate)
            if normalized and (root / normalized).is_file():
                found.append(normalized)
        return found

    # ── Reverse references ──────────────────────────────────────────────

    def _walk_sources(self, root: Path) -> list[str]:
        """Source files under ``root``, depth-limited, vendor dirs pruned."""
        sources = []
        for dirpath, dirnames, filenames in os.walk(root):
            rel_dir = Path(dirpath).relative_to(root)
            depth = len(rel_dir.parts)
            if depth >= self.reverse_search_depth:
                dirnames[:] = []
            else:
                dirnames[:] = sorted(
                    d for d in dirnames if d not in self.ignore_dirs and not d.startswith(".")
                )
            for filename in sorted(filenames):
                if Path(filename).suffix in SOURCE_EXTENSIONS:
                    sources.append((rel_dir / filename).as_posix())
        return sources

    async def _find_reverse_references(
        self, changed: list[str], root: Path
    ) -> dict[str, list[str]]:
        patterns: dict[str, re.Pattern[str]] = {}
        for changed_path in changed:
            path = PurePosixPath(changed_path)
            name = _stem(path)
            if name in _GENERIC_STEMS and path.parent.name:
                name = path.parent.name
            patterns[changed_path] = re.compile(
                r"\b(?:import|require|from)\b[^\n]*?(?<![\w-])"
                + re.escape(name)
                + r"(?![\w-])"
            )

        sources = await asyncio.to_thread(self._walk_sources, root)
        changed_set = set(changed)
        matches: dict[str, list[str]] = {p: [] for p in changed}

        for source in sources:
            pending = [
                p for p in changed if len(matches[p]) < self.reverse_match_limit
            ]
            if not pending:
                break
            if source in changed_set:
                continue
            try:
                async with aiofiles.open(
                    root / source, encoding="utf-8", errors="replace"
                ) as f:
                    content = await f.read()
            except OSError as e:
                logger.debug(f"Skipping {source} in reverse search: {e}")
                continue
            for changed_path in pending:
                if patterns[changed_path].search(content):
                    matches[changed_path].append(source)

        total = sum(len(v) for v in matches.values())
        logger.debug(f"Reverse search scanned {len(sources)} files, {total} references")
        return matches

    # ── Config ──────────────────────────────────────────────────────────

    def _find_config_files(self, root: Path) -> list[str]:
        return [name for name in self.config_files if (root / name).is_file()]

    # ── Loading ─────────────────────────────────────────────────────────

    async def _load(self, root: Path, path: str) -> tuple[str, int] | None:
        full_path = root / path
        if not full_path.is_file():
            return None
        try:
            async with aiofiles.open(full_path, encoding="utf-8") as f:
                content = await f.read()
        except UnicodeDecodeError:
            logger.debug(f"Skipping binary file {path}")
            return None
        except OSError as e:
            logger.warning(f"Could not read related file {path}: {e}")
            return None

        line_count = content.count("\n") + (0 if content.endswith("\n") or not content else 1)
        if line_count > self.max_file_lines:
            logger.info(f"Skipping {path}: {line_count} lines exceeds {self.max_file_lines}")
            return None
        return content, line_count
