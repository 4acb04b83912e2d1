"""Tests for the analysis service against a real git checkout."""

import asyncio

import pytest

from mcp_pair_review.analysis.executor import ExecutionResult, ProcessRegistry
from mcp_pair_review.analysis.service import AnalysisService, ChangeRef
from mcp_pair_review.config.settings import ReviewSettings
from mcp_pair_review.core.exceptions import (
    InvalidRequestError,
    ProcessTimeoutError,
    ReviewNotFoundError,
    RunNotFoundError,
    SuggestionNotFoundError,
)

REVIEW = {
    "suggestions": [
        {
            "file": "./src/app.js",
            "line": 2,
            "type": "bug",
            "title": "Changed constant",
            "description": "b changed from 2 to 3",
            "confidence": 0.9,
        },
        {
            "file": "src/elsewhere.js",
            "line": 1,
            "type": "bug",
            "title": "Not in this change",
        },
    ],
    "summary": "One finding",
}


class FakeExecutor:
    """ProcessExecutor stand-in; optionally blocks until released."""

    def __init__(self, data=None, error=None, gated=False):
        self.registry = ProcessRegistry()
        self.data = REVIEW if data is None else data
        self.error = error
        self.gate = asyncio.Event()
        if not gated:
            self.gate.set()
        self.calls = []

    async def execute(self, prompt, cwd, timeout, run_id=None, label="reviewer"):
        self.calls.append(label)
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return ExecutionResult(data=self.data, raw="")


def make_service(store, executor, **settings):
    return AnalysisService(store, ReviewSettings(**settings), executor=executor)


@pytest.mark.asyncio
async def test_local_analysis_end_to_end(store, git_repo):
    executor = FakeExecutor()
    service = make_service(store, executor)

    started = await service.start_analysis(ChangeRef(path=str(git_repo)))
    assert started.status == "started"
    await service.wait_for(started.run_id)

    status = service.get_run_status(started.run_id)
    assert status["status"] == "completed"
    assert {level["status"] for level in status["levels"].values()} == {"completed"}
    assert status["summary"] == "One finding"
    assert status["total_suggestions"] == 1
    assert status["validation_bypassed"] is False

    final = service.get_suggestions(ChangeRef(path=str(git_repo)))
    assert [(s.file, s.line_start, s.stage) for s in final] == [("src/app.js", 2, None)]

    stage1 = service.get_suggestions(run_id=started.run_id, levels=["1"])
    assert [s.stage for s in stage1] == [1]

    stored = store.get_run(started.run_id)
    assert stored.status.value == "completed"

    changed = store.get_changed_files(started.change_id)
    assert {f.path for f in changed} == {"src/app.js", "src/new.js"}
    assert executor.calls[0] == "stage 1"


@pytest.mark.asyncio
async def test_second_start_while_running_is_already_running(store, git_repo):
    executor = FakeExecutor(gated=True)
    service = make_service(store, executor)

    first = await service.start_analysis(ChangeRef(path=str(git_repo)))
    second = await service.start_analysis(ChangeRef(path=str(git_repo)))

    assert second.status == "already_running"
    assert second.run_id == first.run_id
    assert service.get_change_analysis_status(ChangeRef(path=str(git_repo)))["running"]

    executor.gate.set()
    await service.wait_for(first.run_id)
    third = await service.start_analysis(ChangeRef(path=str(git_repo)))
    assert third.status == "started"
    await service.wait_for(third.run_id)


@pytest.mark.asyncio
async def test_cancel_running_then_cancel_again(store, git_repo):
    executor = FakeExecutor(gated=True)
    service = make_service(store, executor)
    started = await service.start_analysis(ChangeRef(path=str(git_repo)))
    for _ in range(50):
        if executor.calls:
            break
        await asyncio.sleep(0.01)

    cancelled = await service.cancel_analysis(started.run_id)
    executor.gate.set()
    await service.wait_for(started.run_id)

    assert cancelled["status"] == "cancelled"
    assert service.get_run_status(started.run_id)["status"] == "cancelled"
    assert store.get_run(started.run_id).status.value == "cancelled"

    again = await service.cancel_analysis(started.run_id)
    assert again["status"] == "already_terminal"
    assert service.get_run_status(started.run_id)["status"] == "cancelled"


@pytest.mark.asyncio
async def test_stage1_timeout_fails_run(store, git_repo):
    service = make_service(store, FakeExecutor(error=ProcessTimeoutError(600)))

    started = await service.start_analysis(ChangeRef(path=str(git_repo)))
    await service.wait_for(started.run_id)

    status = service.get_run_status(started.run_id)
    assert status["status"] == "failed"
    assert "timed out" in status["error"]
    assert store.get_run(started.run_id).status.value == "failed"


@pytest.mark.asyncio
async def test_skip_stage3(store, git_repo):
    service = make_service(store, FakeExecutor())

    started = await service.start_analysis(ChangeRef(path=str(git_repo)), skip_stage3=True)
    await service.wait_for(started.run_id)

    levels = service.get_run_status(started.run_id)["levels"]
    assert {k: v["status"] for k, v in levels.items()} == {
        "1": "completed",
        "2": "completed",
        "3": "skipped",
        "4": "completed",
    }


@pytest.mark.asyncio
async def test_stream_progress_ends_with_terminal_event(store, git_repo):
    executor = FakeExecutor(gated=True)
    service = make_service(store, executor)
    started = await service.start_analysis(ChangeRef(path=str(git_repo)))

    async def collect():
        return [e async for e in service.stream_progress(started.run_id)]

    collector = asyncio.create_task(collect())
    await asyncio.sleep(0.05)
    executor.gate.set()
    received = await asyncio.wait_for(collector, timeout=10)

    assert received[-1].kind.value == "completed"
    assert any(e.kind.value == "stage_started" for e in received)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [{"tier": "ludicrous"}, {"custom_instructions": "x" * 5001}],
)
async def test_invalid_requests(store, git_repo, kwargs):
    service = make_service(store, FakeExecutor())
    with pytest.raises(InvalidRequestError):
        await service.start_analysis(ChangeRef(path=str(git_repo)), **kwargs)


@pytest.mark.asyncio
async def test_instructions_at_limit_accepted(store, git_repo):
    service = make_service(store, FakeExecutor())
    started = await service.start_analysis(
        ChangeRef(path=str(git_repo)), custom_instructions="x" * 5000
    )
    await service.wait_for(started.run_id)
    assert started.status == "started"


@pytest.mark.asyncio
async def test_change_reference_errors(store, tmp_path):
    service = make_service(store, FakeExecutor())

    with pytest.raises(InvalidRequestError):
        await service.start_analysis(ChangeRef())
    with pytest.raises(InvalidRequestError):
        await service.start_analysis(ChangeRef(path=str(tmp_path)))
    with pytest.raises(InvalidRequestError):
        await service.start_analysis(ChangeRef(repository="acme/app", pr_number=3))


@pytest.mark.asyncio
async def test_pull_request_uses_stored_changed_files(store, git_repo):
    service = make_service(store, FakeExecutor())
    ref = ChangeRef(repository="Acme/App", pr_number=7, worktree=str(git_repo))

    started = await service.start_analysis(ref)
    await service.wait_for(started.run_id)

    change = store.get_change(started.change_id)
    assert change.key == "pr:acme/app#7"
    # Untracked files are not part of a pull request diff
    assert [f.path for f in store.get_changed_files(change.id)] == ["src/app.js"]
    assert len(service.get_suggestions(ref)) == 1


def test_unknown_run_and_change(store, tmp_path):
    service = make_service(store, FakeExecutor())

    with pytest.raises(RunNotFoundError):
        service.get_run_status("missing")
    with pytest.raises(ReviewNotFoundError):
        service.get_suggestions(ChangeRef(path=str(tmp_path)))
    assert service.get_change_analysis_status(ChangeRef(path=str(tmp_path)))["running"] is False


@pytest.mark.asyncio
async def test_update_suggestion_status(store, git_repo):
    service = make_service(store, FakeExecutor())
    started = await service.start_analysis(ChangeRef(path=str(git_repo)))
    await service.wait_for(started.run_id)
    (final,) = service.get_suggestions(run_id=started.run_id)

    updated = service.update_suggestion_status(final.id, "dismissed")

    assert updated.status.value == "dismissed"
    assert service.get_suggestions(run_id=started.run_id) == []
    with pytest.raises(InvalidRequestError):
        service.update_suggestion_status(final.id, "bogus")
    with pytest.raises(SuggestionNotFoundError):
        service.update_suggestion_status(9999, "adopted")


@pytest.mark.asyncio
async def test_get_suggestions_rejects_unknown_level(store, git_repo):
    service = make_service(store, FakeExecutor())
    started = await service.start_analysis(ChangeRef(path=str(git_repo)))
    await service.wait_for(started.run_id)

    with pytest.raises(InvalidRequestError):
        service.get_suggestions(run_id=started.run_id, levels=["5"])
    with pytest.raises(InvalidRequestError):
        service.get_suggestions(run_id=started.run_id, statuses=["maybe"])


@pytest.mark.asyncio
async def test_unknown_provider_rejected(store, git_repo):
    service = make_service(store, FakeExecutor())

    with pytest.raises(InvalidRequestError, match="gemini"):
        await service.start_analysis(ChangeRef(path=str(git_repo)), provider="gemini")
    assert service.list_runs(ChangeRef(path=str(git_repo))) == []


@pytest.mark.asyncio
async def test_configured_provider_recorded_on_run(store, git_repo):
    service = make_service(store, FakeExecutor(), providers={"gemini": "gemini-cli"})

    started = await service.start_analysis(ChangeRef(path=str(git_repo)), provider="gemini")
    await service.wait_for(started.run_id)

    assert store.get_run(started.run_id).provider == "gemini"


def test_executor_for_uses_provider_command(store):
    service = AnalysisService(
        store,
        ReviewSettings(reviewer_command="claude", providers={"gemini": "gemini-cli --yolo"}),
    )

    gemini = service.executor_for("gemini", "pro")
    assert gemini.command == "gemini-cli --yolo"
    assert gemini.extra_args[-2:] == ["--model", "pro"]
    assert gemini.registry is service.registry

    assert service.executor_for("claude", "sonnet").command == "claude"
    with pytest.raises(InvalidRequestError):
        service.executor_for("openai", "gpt")
