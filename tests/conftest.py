"""Shared fixtures."""

import os
import subprocess

# Rich reads the terminal width once at import; keep CLI output unwrapped
# under CliRunner regardless of how long the pytest tmp paths are.
os.environ.setdefault("COLUMNS", "200")

import pytest
from loguru import logger

from mcp_pair_review.storage.store import ReviewStore


@pytest.fixture
def log_records():
    """Capture loguru records emitted during a test."""
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


@pytest.fixture
def store(tmp_path):
    """Review store backed by a temporary database."""
    return ReviewStore(tmp_path / "state" / "review.db")


def _git(cwd, *args):
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)


@pytest.fixture
def git_repo(tmp_path):
    """Git repository with one commit and an uncommitted change.

    ``src/app.js`` has lines 2-3 modified after the commit and
    ``src/new.js`` is untracked.
    """
    repo = tmp_path / "repo"
    (repo / "src").mkdir(parents=True)
    _git(repo, "init", "-q")
    _git(repo, "config", "user.email", "dev@example.com")
    _git(repo, "config", "user.name", "Dev")
    _git(repo, "config", "commit.gpgsign", "false")

    (repo / "src" / "app.js").write_text("const a = 1;\nconst b = 2;\nexport { a, b };\n")
    _git(repo, "add", ".")
    _git(repo, "commit", "-q", "-m", "initial")

    (repo / "src" / "app.js").write_text(
        "const a = 1;\nconst b = 3;\nconst c = 4;\nexport { a, b, c };\n"
    )
    (repo / "src" / "new.js").write_text("export const n = 1;\n")
    return repo
