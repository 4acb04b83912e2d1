"""Tests for the MCP tool handlers and server wiring."""

import json

import pytest

from mcp_pair_review.analysis.executor import ExecutionResult, ProcessRegistry
from mcp_pair_review.analysis.service import AnalysisService
from mcp_pair_review.config.settings import ReviewSettings
from mcp_pair_review.mcp.handlers import AnalysisHandlers
from mcp_pair_review.mcp.server import create_mcp_server
from mcp_pair_review.mcp.tool_schemas import get_tool_schemas

REVIEW = {
    "suggestions": [
        {"file": "src/app.js", "line": 2, "type": "bug", "title": "Wrong value", "confidence": 0.8}
    ]
}


class FakeExecutor:
    def __init__(self):
        self.registry = ProcessRegistry()

    async def execute(self, prompt, cwd, timeout, run_id=None, label="reviewer"):
        return ExecutionResult(data=REVIEW, raw="")


@pytest.fixture
def service(store):
    return AnalysisService(store, ReviewSettings(), executor=FakeExecutor())


@pytest.fixture
def handlers(service):
    return AnalysisHandlers(service)


def payload(result):
    assert not result.isError, result.content[0].text
    return json.loads(result.content[0].text)


def test_tool_schemas():
    names = {tool.name for tool in get_tool_schemas()}
    assert names == {
        "start_analysis",
        "get_run_status",
        "cancel_analysis",
        "get_suggestions",
        "list_analysis_runs",
    }


def test_server_created(service):
    assert create_mcp_server(service).name == "mcp-pair-review"


@pytest.mark.asyncio
async def test_start_poll_and_fetch(handlers, service, git_repo):
    started = payload(await handlers.dispatch("start_analysis", {"path": str(git_repo)}))
    assert started["status"] == "started"

    await service.wait_for(started["run_id"])

    status = payload(await handlers.dispatch("get_run_status", {"run_id": started["run_id"]}))
    assert status["status"] == "completed"
    assert status["levels"]["1"]["status"] == "completed"

    suggestions = payload(await handlers.dispatch("get_suggestions", {"path": str(git_repo)}))
    assert suggestions["count"] == 1
    assert suggestions["suggestions"][0]["title"] == "Wrong value"

    runs = payload(await handlers.dispatch("list_analysis_runs", {"path": str(git_repo)}))
    assert runs["runs"][0]["id"] == started["run_id"]

    cancelled = payload(
        await handlers.dispatch("cancel_analysis", {"run_id": started["run_id"]})
    )
    assert cancelled["status"] == "already_terminal"


@pytest.mark.asyncio
async def test_errors_are_tool_errors(handlers, git_repo):
    unknown = await handlers.dispatch("no_such_tool", {})
    assert unknown.isError

    missing = await handlers.dispatch("get_run_status", {"run_id": "missing"})
    assert missing.isError
    assert "not found" in missing.content[0].text

    no_id = await handlers.dispatch("cancel_analysis", {})
    assert no_id.isError

    bad_tier = await handlers.dispatch(
        "start_analysis", {"path": str(git_repo), "tier": "ludicrous"}
    )
    assert bad_tier.isError
    assert "tier" in bad_tier.content[0].text


@pytest.mark.asyncio
async def test_non_integer_arguments_are_tool_errors(handlers, git_repo):
    bad_pr = await handlers.dispatch(
        "start_analysis", {"repository": "acme/app", "pr_number": "seven"}
    )
    assert bad_pr.isError
    assert "pr_number" in bad_pr.content[0].text

    bad_limit = await handlers.dispatch(
        "list_analysis_runs", {"path": str(git_repo), "limit": "lots"}
    )
    assert bad_limit.isError
    assert "limit" in bad_limit.content[0].text
