"""Path normalization for comparing reviewer-reported paths with the diff.

Reviewer output is untrusted: the same file may come back as
``./src/foo.js``, ``/src/foo.js`` or ``src//foo.js``. Every comparison
against the changed-file list goes through :func:`normalize_path` on
both sides.
"""

import re
from collections.abc import Iterable

_REPEATED_SLASHES = re.compile(r"/+")


def normalize_path(file_path: str | None) -> str:
    """Normalize a repository-relative path for comparison.

    Strips whitespace, collapses repeated separators and removes any
    interleaved leading ``./`` and ``/`` prefixes. Case is preserved.
    The function is idempotent.

    Example:
        >>> normalize_path("./src/foo.js")
        'src/foo.js'
        >>> normalize_path("//./src//foo.js")
        'src/foo.js'
    """
    if not isinstance(file_path, str):
        return ""

    result = file_path.strip().replace("\\", "/")
    if not result:
        return ""

    result = _REPEATED_SLASHES.sub("/", result)

    previous = None
    while previous != result:
        previous = result
        while result.startswith("./"):
            result = result[2:]
        result = result.lstrip("/")

    return result


def paths_equal(first: str | None, second: str | None) -> bool:
    """Return True if two paths are equivalent after normalization."""
    return normalize_path(first) == normalize_path(second)


def normalized_path_set(paths: Iterable[str | None]) -> set[str]:
    """Pre-normalize a collection of paths for O(1) membership checks."""
    return {p for p in (normalize_path(path) for path in paths) if p}


def normalize_repository(repository: str) -> str:
    """Normalize an ``owner/repo`` identifier to lowercase.

    Raises:
        ValueError: If the identifier is not of the form ``owner/repo``
    """
    if not isinstance(repository, str) or "/" not in repository:
        raise ValueError("repository must be of the form 'owner/repo'")

    owner, _, repo = repository.strip().partition("/")
    owner, repo = owner.strip(), repo.strip().strip("/")
    if not owner or not repo:
        raise ValueError("owner and repo must be non-empty strings")

    return f"{owner.lower()}/{repo.lower()}"
