"""Tests for settings loading."""

import pytest
import yaml

from mcp_pair_review.config.settings import ReviewSettings, load_settings
from mcp_pair_review.core.exceptions import ConfigError


def test_defaults():
    settings = ReviewSettings()
    assert settings.reviewer_command == "claude"
    assert settings.default_tier == "balanced"
    assert settings.confidence_floor == 0.3
    assert settings.timeout_for("3") == 900.0


def test_timeout_scales_with_tier():
    settings = ReviewSettings()
    assert settings.timeout_for("1", tier="fast") == 300.0
    assert settings.timeout_for("3", tier="thorough") == 1800.0
    assert settings.timeout_for("unknown-stage") == 600.0


def test_partial_stage_timeouts_merge_with_defaults():
    settings = ReviewSettings.from_dict({"stage_timeouts": {"2": 30}})
    assert settings.timeout_for("2") == 30.0
    assert settings.timeout_for("3") == 900.0


def test_invalid_settings_raise_config_error():
    with pytest.raises(ConfigError):
        ReviewSettings.from_dict({"default_tier": "ludicrous"})
    with pytest.raises(ConfigError):
        ReviewSettings.from_dict({"confidence_floor": 2})


def test_repository_settings_case_insensitive():
    settings = ReviewSettings.from_dict(
        {"repositories": {"Acme/Widgets": {"default_instructions": "Be strict"}}}
    )
    assert settings.repository_settings("acme/widgets").default_instructions == "Be strict"
    assert settings.repository_settings("other/repo").default_instructions is None
    assert settings.repository_settings(None).default_model is None


def test_command_for_provider():
    settings = ReviewSettings(reviewer_command="claude", providers={"gemini": "gemini-cli"})

    assert settings.command_for("claude") == "claude"
    assert settings.command_for("gemini") == "gemini-cli"
    assert settings.command_for("openai") is None


def test_load_from_project_yaml(tmp_path):
    config_dir = tmp_path / ".pair-review"
    config_dir.mkdir()
    (config_dir / "config.yml").write_text(
        yaml.safe_dump({"reviewer_command": "my-claude", "default_tier": "fast"})
    )

    settings = load_settings(tmp_path, environ={})

    assert settings.reviewer_command == "my-claude"
    assert settings.default_tier == "fast"


def test_environment_overrides_file(tmp_path):
    config = tmp_path / "custom.yml"
    config.write_text("default_model: opus\n")

    settings = load_settings(
        tmp_path,
        config_path=config,
        environ={
            "PAIR_REVIEW_MODEL": "haiku",
            "PAIR_REVIEW_CLAUDE_CMD": "npx claude",
            "PAIR_REVIEW_CONFIDENCE_FLOOR": "0.5",
        },
    )

    assert settings.default_model == "haiku"
    assert settings.reviewer_command == "npx claude"
    assert settings.confidence_floor == 0.5


def test_missing_explicit_config_raises(tmp_path):
    with pytest.raises(ConfigError):
        load_settings(tmp_path, config_path=tmp_path / "missing.yml", environ={})


def test_non_mapping_yaml_raises(tmp_path):
    config = tmp_path / "bad.yml"
    config.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_settings(config_path=config, environ={})


def test_database_path_resolution(tmp_path):
    assert ReviewSettings().resolve_database_path(tmp_path) == (
        tmp_path / ".pair-review" / "pair-review.db"
    )
    settings = load_settings(tmp_path, environ={"PAIR_REVIEW_DB": str(tmp_path / "x.db")})
    assert settings.resolve_database_path(tmp_path) == tmp_path / "x.db"


def test_save_round_trips(tmp_path):
    path = tmp_path / "out" / "config.yml"
    ReviewSettings(default_model="opus").save(path)
    assert load_settings(config_path=path, environ={}).default_model == "opus"
