"""MCP tool schema definitions for the analysis engine."""

from mcp.types import Tool

from ..config.defaults import VALID_TIERS

_CHANGE_PROPERTIES = {
    "path": {
        "type": "string",
        "description": "Local git checkout to review (working tree against base_ref)",
    },
    "repository": {
        "type": "string",
        "description": "Pull request repository as owner/repo",
    },
    "pr_number": {
        "type": "integer",
        "description": "Pull request number",
        "minimum": 1,
    },
}


def get_tool_schemas() -> list[Tool]:
    """Get all MCP tool schema definitions.

    Returns:
        List of Tool objects defining available MCP tools
    """
    return [
        _get_start_analysis_schema(),
        _get_run_status_schema(),
        _get_cancel_analysis_schema(),
        _get_suggestions_schema(),
        _get_list_runs_schema(),
    ]


def _get_start_analysis_schema() -> Tool:
    """Get start_analysis tool schema."""
    return Tool(
        name="start_analysis",
        description="Start a cascading AI review of a change (diff-only, file context, codebase context, synthesis). Returns immediately with a run id; poll get_run_status for progress. If a run is already in progress for the change, returns its id with status already_running.",
        inputSchema={
            "type": "object",
            "properties": {
                **_CHANGE_PROPERTIES,
                "worktree": {
                    "type": "string",
                    "description": "Checkout of the pull request head (pull requests only)",
                },
                "base_ref": {
                    "type": "string",
                    "description": "Git ref to diff against",
                    "default": "HEAD",
                },
                "custom_instructions": {
                    "type": "string",
                    "description": "Extra review instructions for this run (max 5000 characters)",
                    "maxLength": 5000,
                },
                "skip_stage3": {
                    "type": "boolean",
                    "description": "Skip the codebase-context stage",
                    "default": False,
                },
                "tier": {
                    "type": "string",
                    "enum": list(VALID_TIERS),
                    "description": "Review depth",
                    "default": "balanced",
                },
                "provider": {"type": "string", "description": "Reviewer provider"},
                "model": {"type": "string", "description": "Reviewer model"},
            },
            "required": [],
        },
    )


def _get_run_status_schema() -> Tool:
    """Get get_run_status tool schema."""
    return Tool(
        name="get_run_status",
        description="Get the status of an analysis run: overall status, per-stage status, progress message and counts.",
        inputSchema={
            "type": "object",
            "properties": {
                "run_id": {"type": "string", "description": "Analysis run id"},
            },
            "required": ["run_id"],
        },
    )


def _get_cancel_analysis_schema() -> Tool:
    """Get cancel_analysis tool schema."""
    return Tool(
        name="cancel_analysis",
        description="Cancel a running analysis and terminate its reviewer processes. Cancelling a finished run is a no-op.",
        inputSchema={
            "type": "object",
            "properties": {
                "run_id": {"type": "string", "description": "Analysis run id"},
            },
            "required": ["run_id"],
        },
    )


def _get_suggestions_schema() -> Tool:
    """Get get_suggestions tool schema."""
    return Tool(
        name="get_suggestions",
        description="Get AI suggestions for a change. Defaults to the final (synthesized) suggestions of the latest run and excludes dismissed ones.",
        inputSchema={
            "type": "object",
            "properties": {
                **_CHANGE_PROPERTIES,
                "run_id": {
                    "type": "string",
                    "description": "Read this run instead of the latest",
                },
                "levels": {
                    "type": "array",
                    "items": {"type": "string", "enum": ["final", "1", "2", "3"]},
                    "description": "Stage levels to include",
                    "default": ["final"],
                },
                "file": {"type": "string", "description": "Only suggestions for this file"},
                "statuses": {
                    "type": "array",
                    "items": {
                        "type": "string",
                        "enum": ["active", "adopted", "dismissed"],
                    },
                    "description": "Statuses to include (default: active and adopted)",
                },
            },
            "required": [],
        },
    )


def _get_list_runs_schema() -> Tool:
    """Get list_analysis_runs tool schema."""
    return Tool(
        name="list_analysis_runs",
        description="List analysis runs for a change, newest first.",
        inputSchema={
            "type": "object",
            "properties": {
                **_CHANGE_PROPERTIES,
                "limit": {
                    "type": "integer",
                    "default": 20,
                    "minimum": 1,
                    "maximum": 100,
                },
            },
            "required": [],
        },
    )
