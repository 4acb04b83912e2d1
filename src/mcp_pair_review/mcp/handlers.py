"""Analysis tool handlers for the MCP server."""

import json
from typing import Any

from loguru import logger
from mcp.types import CallToolResult, TextContent

from ..analysis.service import AnalysisService, ChangeRef
from ..core.exceptions import (
    InvalidRequestError,
    PairReviewError,
    ReviewNotFoundError,
    RunNotFoundError,
)


def _text_result(payload: Any) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=json.dumps(payload, indent=2))]
    )


def _error_result(message: str) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=message)],
        isError=True,
    )


class AnalysisHandlers:
    """Handlers for analysis-related MCP tool operations."""

    def __init__(self, service: AnalysisService):
        self.service = service

    async def dispatch(self, name: str, args: dict[str, Any] | None) -> CallToolResult:
        """Route a tool call to its handler."""
        handler = {
            "start_analysis": self.handle_start_analysis,
            "get_run_status": self.handle_get_run_status,
            "cancel_analysis": self.handle_cancel_analysis,
            "get_suggestions": self.handle_get_suggestions,
            "list_analysis_runs": self.handle_list_runs,
        }.get(name)
        if handler is None:
            return _error_result(f"Unknown tool: {name}")

        try:
            return await handler(args or {})
        except (InvalidRequestError, RunNotFoundError, ReviewNotFoundError) as e:
            return _error_result(str(e))
        except PairReviewError as e:
            logger.error(f"Tool {name} failed: {e}")
            return _error_result(f"Tool execution failed: {e}")

    async def handle_start_analysis(self, args: dict[str, Any]) -> CallToolResult:
        """Handle start_analysis tool call.

        Args:
            args: Change reference plus custom_instructions, skip_stage3,
                tier, provider and model

        Returns:
            CallToolResult with run id and started/already_running status
        """
        ref = ChangeRef.from_dict(args)
        result = await self.service.start_analysis(
            ref,
            custom_instructions=args.get("custom_instructions"),
            skip_stage3=bool(args.get("skip_stage3", False)),
            tier=args.get("tier"),
            provider=args.get("provider"),
            model=args.get("model"),
        )
        payload = result.to_dict()
        if result.status == "already_running":
            payload["message"] = "An analysis is already running for this change"
        else:
            payload["message"] = "Analysis started; poll get_run_status for progress"
        return _text_result(payload)

    async def handle_get_run_status(self, args: dict[str, Any]) -> CallToolResult:
        run_id = args.get("run_id")
        if not run_id:
            return _error_result("run_id is required")
        return _text_result(self.service.get_run_status(run_id))

    async def handle_cancel_analysis(self, args: dict[str, Any]) -> CallToolResult:
        run_id = args.get("run_id")
        if not run_id:
            return _error_result("run_id is required")
        return _text_result(await self.service.cancel_analysis(run_id))

    async def handle_get_suggestions(self, args: dict[str, Any]) -> CallToolResult:
        """Handle get_suggestions tool call."""
        run_id = args.get("run_id")
        ref = None
        if args.get("path") or args.get("repository"):
            ref = ChangeRef.from_dict(args)
        suggestions = self.service.get_suggestions(
            ref,
            run_id=run_id,
            levels=args.get("levels"),
            file=args.get("file"),
            statuses=args.get("statuses"),
        )
        return _text_result(
            {
                "count": len(suggestions),
                "suggestions": [s.to_dict() for s in suggestions],
            }
        )

    async def handle_list_runs(self, args: dict[str, Any]) -> CallToolResult:
        ref = ChangeRef.from_dict(args)
        try:
            limit = int(args.get("limit", 20))
        except (TypeError, ValueError) as e:
            raise InvalidRequestError(
                f"'limit' must be an integer, got {args.get('limit')!r}"
            ) from e
        runs = self.service.list_runs(ref, limit=limit)
        return _text_result({"count": len(runs), "runs": runs})
