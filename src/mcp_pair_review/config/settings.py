"""Review settings loaded from YAML with environment overrides."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..core.exceptions import ConfigError
from .defaults import (
    DEFAULT_CONFIDENCE_FLOOR,
    DEFAULT_EXTRA_PATH,
    DEFAULT_MAX_FILE_LINES_STAGE2,
    DEFAULT_MAX_RELATED_FILE_LINES,
    DEFAULT_MODEL,
    DEFAULT_PROVIDER,
    DEFAULT_REVERSE_MATCH_LIMIT,
    DEFAULT_REVERSE_SEARCH_DEPTH,
    DEFAULT_REVIEWER_COMMAND,
    DEFAULT_RUN_RETENTION_SECONDS,
    DEFAULT_STAGE_TIMEOUTS,
    DEFAULT_TIER,
    TIER_TIMEOUT_SCALE,
    get_default_config_path,
    get_default_database_path,
)

# Environment variable -> settings field
ENV_OVERRIDES = {
    "PAIR_REVIEW_CLAUDE_CMD": "reviewer_command",
    "PAIR_REVIEW_MODEL": "default_model",
    "PAIR_REVIEW_DB": "database_path",
    "PAIR_REVIEW_CONFIDENCE_FLOOR": "confidence_floor",
}


class RepositorySettings(BaseModel):
    """Per-repository defaults."""

    default_instructions: str | None = None
    default_provider: str | None = None
    default_model: str | None = None


class ReviewSettings(BaseModel):
    """Complete settings for the analysis engine.

    Example:
        >>> settings = load_settings(Path.cwd())
        >>> settings.timeout_for("3", tier="thorough")
        1800.0
    """

    reviewer_command: str = DEFAULT_REVIEWER_COMMAND
    extra_args: list[str] = Field(default_factory=list)
    extra_path: list[str] = Field(default_factory=lambda: list(DEFAULT_EXTRA_PATH))
    default_provider: str = DEFAULT_PROVIDER
    # Provider id -> reviewer command; the default provider falls back to reviewer_command
    providers: dict[str, str] = Field(default_factory=dict)
    default_model: str = DEFAULT_MODEL
    default_tier: str = DEFAULT_TIER
    stage_timeouts: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_STAGE_TIMEOUTS)
    )
    confidence_floor: float = Field(default=DEFAULT_CONFIDENCE_FLOOR, ge=0.0, le=1.0)
    max_file_lines_stage2: int = Field(default=DEFAULT_MAX_FILE_LINES_STAGE2, gt=0)
    max_related_file_lines: int = Field(default=DEFAULT_MAX_RELATED_FILE_LINES, gt=0)
    reverse_match_limit: int = Field(default=DEFAULT_REVERSE_MATCH_LIMIT, ge=0)
    reverse_search_depth: int = Field(default=DEFAULT_REVERSE_SEARCH_DEPTH, ge=0)
    run_retention_seconds: float = Field(default=DEFAULT_RUN_RETENTION_SECONDS, ge=0)
    database_path: Path | None = None
    repositories: dict[str, RepositorySettings] = Field(default_factory=dict)

    @field_validator("default_tier")
    @classmethod
    def _check_tier(cls, value: str) -> str:
        if value not in TIER_TIMEOUT_SCALE:
            raise ValueError(f"unknown tier {value!r}")
        return value

    @field_validator("stage_timeouts")
    @classmethod
    def _merge_timeouts(cls, value: dict[str, float]) -> dict[str, float]:
        merged = dict(DEFAULT_STAGE_TIMEOUTS)
        merged.update({str(k): float(v) for k, v in value.items()})
        return merged

    def timeout_for(self, stage: str, tier: str | None = None) -> float:
        """Deadline for one reviewer invocation in ``stage``, scaled by tier."""
        base = self.stage_timeouts.get(stage, DEFAULT_STAGE_TIMEOUTS["synthesis"])
        return base * TIER_TIMEOUT_SCALE.get(tier or self.default_tier, 1.0)

    def command_for(self, provider: str) -> str | None:
        """Reviewer command for ``provider``, or None if it is not configured."""
        if provider in self.providers:
            return self.providers[provider]
        if provider == self.default_provider:
            return self.reviewer_command
        return None

    def repository_settings(self, repository: str | None) -> RepositorySettings:
        """Settings for ``owner/repo`` (case-insensitive), or empty defaults."""
        if repository:
            for name, repo_settings in self.repositories.items():
                if name.lower() == repository.lower():
                    return repo_settings
        return RepositorySettings()

    def resolve_database_path(self, project_root: Path) -> Path:
        """Configured database path, or the project-local default."""
        if self.database_path is not None:
            return self.database_path.expanduser()
        return get_default_database_path(project_root)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewSettings:
        """Create settings from a plain dictionary.

        Raises:
            ConfigError: If the data does not validate
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def save(self, path: Path) -> None:
        """Save settings to a YAML file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(
                self.model_dump(mode="json", exclude_none=True),
                f,
                default_flow_style=False,
                sort_keys=False,
            )


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def load_settings(
    project_root: Path | None = None,
    config_path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> ReviewSettings:
    """Load settings: defaults, then YAML file, then environment.

    Args:
        project_root: Project whose ``.pair-review/config.yml`` is read
        config_path: Explicit YAML file (overrides the project default)
        environ: Environment mapping (defaults to ``os.environ``)

    Raises:
        ConfigError: If the file or the resulting settings are invalid
    """
    data: dict[str, Any] = {}

    path = config_path
    if path is None and project_root is not None:
        path = get_default_config_path(project_root)

    if path is not None and path.exists():
        data = _read_yaml(path)
        logger.debug(f"Loaded settings from {path}")
    elif config_path is not None:
        raise ConfigError(f"Configuration file not found: {config_path}")

    env = os.environ if environ is None else environ
    for var, field_name in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            data[field_name] = value
            logger.debug(f"Setting {field_name} from {var}")

    return ReviewSettings.from_dict(data)
