"""MCP server exposing the analysis engine over stdio."""

from pathlib import Path

from loguru import logger
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, TextContent, Tool

from ..analysis.service import AnalysisService
from ..config.settings import ReviewSettings, load_settings
from ..storage.store import ReviewStore
from .handlers import AnalysisHandlers
from .tool_schemas import get_tool_schemas


class ToolCallError(Exception):
    """Raised so the MCP runtime reports a failed tool call."""

    pass


def _result_text(result: CallToolResult) -> str:
    return "\n".join(c.text for c in result.content if isinstance(c, TextContent))


def create_mcp_server(service: AnalysisService) -> Server:
    """Create and configure the MCP server."""
    server = Server("mcp-pair-review")
    handlers = AnalysisHandlers(service)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return get_tool_schemas()

    @server.call_tool()
    async def call_tool(name: str, arguments: dict | None) -> list[TextContent]:
        result = await handlers.dispatch(name, arguments)
        if result.isError:
            raise ToolCallError(_result_text(result))
        return [c for c in result.content if isinstance(c, TextContent)]

    return server


async def run_mcp_server(
    project_root: Path | None = None, settings: ReviewSettings | None = None
) -> None:
    """Run the MCP server using stdio transport."""
    root = (project_root or Path.cwd()).resolve()
    settings = settings or load_settings(root)
    store = ReviewStore(settings.resolve_database_path(root))
    store.fail_interrupted_runs()
    service = AnalysisService(store, settings)
    server = create_mcp_server(service)

    logger.info(f"Starting MCP pair review server for {root}")
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        await service.shutdown()
