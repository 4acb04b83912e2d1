"""Tests for the REST API."""

import time

import pytest
from fastapi.testclient import TestClient

from mcp_pair_review.analysis.executor import ExecutionResult, ProcessRegistry
from mcp_pair_review.analysis.service import AnalysisService
from mcp_pair_review.api.app import create_app
from mcp_pair_review.config.settings import ReviewSettings

REVIEW = {
    "suggestions": [
        {"file": "src/app.js", "line": 3, "type": "improvement", "title": "Name c better"}
    ],
    "summary": "Minor naming issue",
}


class FakeExecutor:
    def __init__(self):
        self.registry = ProcessRegistry()

    async def execute(self, prompt, cwd, timeout, run_id=None, label="reviewer"):
        return ExecutionResult(data=REVIEW, raw="")


@pytest.fixture
def client(store):
    service = AnalysisService(store, ReviewSettings(), executor=FakeExecutor())
    with TestClient(create_app(service)) as test_client:
        yield test_client


def wait_until_finished(client, run_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = client.get(f"/api/analyze/status/{run_id}").json()
        if status["status"] != "running":
            return status
        time.sleep(0.05)
    raise AssertionError(f"run {run_id} did not finish")


@pytest.fixture
def finished_run(client, git_repo):
    response = client.post("/api/analyze", json={"path": str(git_repo)})
    assert response.status_code == 200
    run_id = response.json()["run_id"]
    return wait_until_finished(client, run_id)


def test_analyze_and_fetch_results(client, git_repo, finished_run):
    assert finished_run["status"] == "completed"
    assert finished_run["levels"]["4"]["status"] == "completed"

    response = client.get("/api/suggestions", params={"path": str(git_repo)})
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 1
    assert body["suggestions"][0]["file"] == "src/app.js"
    assert body["suggestions"][0]["stage"] is None

    levels = client.get(
        "/api/suggestions",
        params={"run_id": finished_run["id"], "levels": ["1", "2"]},
    ).json()
    assert {s["stage"] for s in levels["suggestions"]} == {1, 2}


def test_change_status_and_runs(client, git_repo, finished_run):
    status = client.get("/api/changes/analysis-status", params={"path": str(git_repo)}).json()
    assert status["running"] is False
    assert status["latest_run"]["id"] == finished_run["id"]
    assert status["stats"] == {"issues": 0, "suggestions": 1, "praise": 0}

    runs = client.get("/api/runs", params={"path": str(git_repo)}).json()
    assert runs["count"] == 1


def test_progress_stream_of_finished_run(client, finished_run):
    response = client.get(f"/api/analyze/progress/{finished_run['id']}")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert "event: completed" in response.text


def test_cancel_finished_run_is_noop(client, finished_run):
    response = client.post(f"/api/analyze/cancel/{finished_run['id']}")

    assert response.status_code == 200
    assert response.json()["status"] == "already_terminal"


def test_update_suggestion_status(client, finished_run):
    suggestions = client.get(
        "/api/suggestions", params={"run_id": finished_run["id"]}
    ).json()["suggestions"]
    suggestion_id = suggestions[0]["id"]

    response = client.patch(f"/api/suggestions/{suggestion_id}", json={"status": "adopted"})
    assert response.status_code == 200
    assert response.json()["status"] == "adopted"

    assert client.patch(f"/api/suggestions/{suggestion_id}", json={"status": "nah"}).status_code == 400
    assert client.patch("/api/suggestions/9999", json={"status": "adopted"}).status_code == 404


def test_invalid_requests(client, git_repo):
    assert client.post("/api/analyze", json={}).status_code == 400
    assert (
        client.post("/api/analyze", json={"path": str(git_repo), "tier": "ludicrous"}).status_code
        == 400
    )
    assert (
        client.post(
            "/api/analyze",
            json={"path": str(git_repo), "custom_instructions": "x" * 5001},
        ).status_code
        == 400
    )
    assert client.get("/api/suggestions").status_code == 400


def test_unknown_ids(client, tmp_path):
    assert client.get("/api/analyze/status/missing").status_code == 404
    assert client.post("/api/analyze/cancel/missing").status_code == 404
    assert client.get("/api/analyze/progress/missing").status_code == 404
    assert client.get("/api/runs", params={"path": str(tmp_path)}).status_code == 404
