"""Default configuration values for MCP Pair Review."""

from pathlib import Path

# Project-local state directory and files
STATE_DIR_NAME = ".pair-review"
CONFIG_FILE_NAME = "config.yml"
DATABASE_FILE_NAME = "pair-review.db"

# Reviewer process
DEFAULT_REVIEWER_COMMAND = "claude"
DEFAULT_PROVIDER = "claude"
DEFAULT_MODEL = "sonnet"
DEFAULT_EXTRA_PATH = ["/opt/homebrew/bin", "/usr/local/bin"]

# Stage deadlines in seconds (balanced tier). Stage 3 is the longest.
DEFAULT_STAGE_TIMEOUTS: dict[str, float] = {
    "1": 600.0,
    "2": 300.0,
    "3": 900.0,
    "synthesis": 600.0,
}

# Tier -> deadline multiplier
TIER_TIMEOUT_SCALE: dict[str, float] = {
    "fast": 0.5,
    "balanced": 1.0,
    "thorough": 2.0,
}
VALID_TIERS = tuple(TIER_TIMEOUT_SCALE)
DEFAULT_TIER = "balanced"

# Suggestion validation
DEFAULT_CONFIDENCE_FLOOR = 0.3
DEFAULT_CONFIDENCE = 0.7
MAX_CUSTOM_INSTRUCTIONS_LENGTH = 5000

# Stage 2: files above this many lines are not sent with full content
DEFAULT_MAX_FILE_LINES_STAGE2 = 5000

# Context discovery
DEFAULT_MAX_RELATED_FILE_LINES = 100_000
DEFAULT_REVERSE_MATCH_LIMIT = 5
DEFAULT_REVERSE_SEARCH_DEPTH = 6

# Run registry retention (seconds) for terminal runs
DEFAULT_RUN_RETENTION_SECONDS = 30 * 60

# Extensions probed when resolving extension-less import specifiers
RESOLVE_EXTENSIONS = [
    ".js",
    ".jsx",
    ".mjs",
    ".cjs",
    ".ts",
    ".tsx",
    ".py",
]

# Source files scanned by the reverse-reference search
SOURCE_EXTENSIONS = {
    ".py",
    ".js",
    ".jsx",
    ".mjs",
    ".cjs",
    ".ts",
    ".tsx",
    ".go",
    ".rb",
    ".java",
    ".kt",
    ".rs",
    ".php",
    ".cs",
    ".swift",
    ".scala",
    ".vue",
    ".svelte",
}

# Dependency, vendor and build directories never walked by discovery
DEFAULT_IGNORE_DIRS = {
    ".git",
    ".hg",
    ".svn",
    "__pycache__",
    ".mypy_cache",
    ".pytest_cache",
    ".ruff_cache",
    ".tox",
    ".nox",
    ".venv",
    "venv",
    "node_modules",
    "bower_components",
    ".npm",
    ".yarn",
    "vendor",
    "third_party",
    "coverage",
    "build",
    "dist",
    "target",
    ".next",
    ".cache",
    ".idea",
    ".vscode",
    STATE_DIR_NAME,
}

# Conventional project configuration files collected once per run
PROJECT_CONFIG_FILES = [
    "package.json",
    "tsconfig.json",
    "jsconfig.json",
    "pyproject.toml",
    "setup.cfg",
    "setup.py",
    "requirements.txt",
    "go.mod",
    "Cargo.toml",
    "pom.xml",
    "build.gradle",
    "Gemfile",
    ".eslintrc.json",
    ".eslintrc.js",
    ".prettierrc",
    "babel.config.js",
    "vite.config.js",
    "vite.config.ts",
    "webpack.config.js",
    "jest.config.js",
    "vitest.config.js",
    "vitest.config.ts",
]

# Test directories searched for "<dir>/<name>.<ext>" variants
TEST_DIR_NAMES = ["test", "tests", "__tests__", "spec"]


def get_state_dir(project_root: Path) -> Path:
    """Get the project-local state directory."""
    return project_root / STATE_DIR_NAME


def get_default_config_path(project_root: Path) -> Path:
    """Get the default configuration file path for a project."""
    return get_state_dir(project_root) / CONFIG_FILE_NAME


def get_default_database_path(project_root: Path) -> Path:
    """Get the default SQLite database path for a project."""
    return get_state_dir(project_root) / DATABASE_FILE_NAME
