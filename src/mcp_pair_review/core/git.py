"""Git integration for local (working tree) reviews.

Local reviews analyze the uncommitted delta of a checkout. This module
captures that delta as a unified diff, including untracked files, and
reports the HEAD revision the delta is based on.

Error Handling:
    - GitNotAvailableError: Git binary not found in PATH
    - GitNotRepoError: Not a git repository
    - GitReferenceError: Invalid branch/commit reference
    - GitError: General git operation failures
"""

import subprocess
from pathlib import Path

from loguru import logger

from .exceptions import PairReviewError


class GitError(PairReviewError):
    """Base exception for git-related errors."""

    pass


class GitNotAvailableError(GitError):
    """Git binary is not available in PATH."""

    pass


class GitNotRepoError(GitError):
    """Directory is not a git repository."""

    pass


class GitReferenceError(GitError):
    """Git reference (branch, tag, commit) does not exist."""

    pass


class GitManager:
    """Thin wrapper around git commands used by local reviews.

    Example:
        >>> manager = GitManager(Path("/path/to/repo"))
        >>> head = manager.get_head_sha()
        >>> diff = manager.get_working_tree_diff()
    """

    def __init__(self, project_root: Path):
        """Initialize git manager.

        Args:
            project_root: Root directory of the checkout

        Raises:
            GitNotAvailableError: If git binary is not available
            GitNotRepoError: If project_root is not a git repository
        """
        self.project_root = project_root.resolve()

        if not self.is_git_available():
            raise GitNotAvailableError("Git binary not found. Install git first.")

        if not self.is_git_repo():
            raise GitNotRepoError(f"Not a git repository: {self.project_root}")

    def _run(
        self, args: list[str], timeout: int = 30, check: bool = True
    ) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(  # nosec B607 - git is intentionally called via PATH
                ["git", *args],
                cwd=self.project_root,
                capture_output=True,
                text=True,
                check=check,
                timeout=timeout,
            )
        except subprocess.CalledProcessError as e:
            error_msg = e.stderr.strip() if e.stderr else "Unknown error"
            raise GitError(f"git {args[0]} failed: {error_msg}") from e
        except subprocess.TimeoutExpired as e:
            raise GitError(f"git {args[0]} timed out after {timeout} seconds") from e
        except FileNotFoundError as e:
            raise GitNotAvailableError("git binary not found") from e

    def is_git_available(self) -> bool:
        """Check if git command is available in PATH."""
        try:
            subprocess.run(  # nosec B607
                ["git", "--version"],
                capture_output=True,
                check=True,
                timeout=5,
            )
            return True
        except (
            subprocess.CalledProcessError,
            FileNotFoundError,
            subprocess.TimeoutExpired,
        ):
            return False

    def is_git_repo(self) -> bool:
        """Check if project directory is a git repository."""
        try:
            self._run(["rev-parse", "--git-dir"], timeout=5)
            return True
        except GitError:
            return False

    def ref_exists(self, ref: str) -> bool:
        """Check if a git reference resolves to a commit."""
        try:
            self._run(["rev-parse", "--verify", f"{ref}^{{commit}}"], timeout=5)
            return True
        except GitError:
            return False

    def get_head_sha(self) -> str:
        """Return the full SHA of HEAD.

        Raises:
            GitReferenceError: If the repository has no commits yet
        """
        if not self.ref_exists("HEAD"):
            raise GitReferenceError("Repository has no commits (HEAD is unborn)")
        return self._run(["rev-parse", "HEAD"], timeout=5).stdout.strip()

    def get_working_tree_diff(
        self,
        base_ref: str = "HEAD",
        include_untracked: bool = True,
        context_lines: int = 3,
    ) -> str:
        """Get a unified diff of the working tree against ``base_ref``.

        Untracked files are rendered as new-file diffs so they are reviewed
        like any other addition.

        Raises:
            GitReferenceError: If ``base_ref`` does not exist
            GitError: If git diff fails
        """
        if not self.ref_exists(base_ref):
            raise GitReferenceError(f"Base ref '{base_ref}' does not exist")

        diff_text = self._run(
            ["diff", f"-U{context_lines}", "--no-color", base_ref]
        ).stdout

        if include_untracked:
            for path in self.get_untracked_files():
                # --no-index exits 1 when the files differ, which is the normal case
                result = self._run(
                    [
                        "diff",
                        f"-U{context_lines}",
                        "--no-color",
                        "--no-index",
                        "--",
                        "/dev/null",
                        path,
                    ],
                    check=False,
                )
                if result.returncode not in (0, 1):
                    logger.warning(f"Could not diff untracked file {path}: {result.stderr}")
                    continue
                diff_text += result.stdout

        return diff_text

    def get_untracked_files(self) -> list[str]:
        """List untracked, non-ignored files relative to the project root."""
        result = self._run(["ls-files", "--others", "--exclude-standard"])
        return [line for line in result.stdout.splitlines() if line.strip()]
