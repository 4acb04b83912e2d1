"""REST API for the analysis engine.

Endpoints mirror the MCP tools and add a Server-Sent Events stream for
live progress. Errors map onto HTTP statuses: invalid input 400, unknown
run, change or suggestion 404, anything else 500.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel, Field

from ..analysis.service import AnalysisService, ChangeRef
from ..core.exceptions import (
    InvalidRequestError,
    PairReviewError,
    ReviewNotFoundError,
    RunNotFoundError,
    SuggestionNotFoundError,
)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class AnalyzeRequest(BaseModel):
    """Body of POST /api/analyze."""

    path: str | None = None
    repository: str | None = None
    pr_number: int | None = Field(default=None, ge=1)
    worktree: str | None = None
    base_ref: str = "HEAD"
    custom_instructions: str | None = None
    skip_stage3: bool = False
    tier: str | None = None
    provider: str | None = None
    model: str | None = None


class StatusUpdate(BaseModel):
    """Body of PATCH /api/suggestions/{id}."""

    status: str


def _http_error(error: Exception) -> HTTPException:
    if isinstance(error, InvalidRequestError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, (RunNotFoundError, ReviewNotFoundError, SuggestionNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    logger.error(f"Request failed: {error}")
    return HTTPException(status_code=500, detail=str(error))


def _change_ref(
    path: str | None, repository: str | None, pr_number: int | None
) -> ChangeRef:
    return ChangeRef(path=path, repository=repository, pr_number=pr_number)


def create_app(service: AnalysisService) -> FastAPI:
    """Create FastAPI application for the analysis engine.

    Args:
        service: Service every endpoint delegates to

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        yield
        await service.shutdown()

    app = FastAPI(title="MCP Pair Review", lifespan=lifespan)
    app.state.service = service

    @app.post("/api/analyze")
    async def start_analysis(body: AnalyzeRequest) -> dict[str, Any]:
        """Start an analysis; returns immediately with the run id."""
        ref = ChangeRef(
            path=body.path,
            repository=body.repository,
            pr_number=body.pr_number,
            worktree=body.worktree,
            base_ref=body.base_ref,
        )
        try:
            result = await service.start_analysis(
                ref,
                custom_instructions=body.custom_instructions,
                skip_stage3=body.skip_stage3,
                tier=body.tier,
                provider=body.provider,
                model=body.model,
            )
        except PairReviewError as e:
            raise _http_error(e) from e
        return result.to_dict()

    @app.get("/api/analyze/status/{run_id}")
    async def run_status(run_id: str) -> dict[str, Any]:
        try:
            return service.get_run_status(run_id)
        except PairReviewError as e:
            raise _http_error(e) from e

    @app.post("/api/analyze/cancel/{run_id}")
    async def cancel_analysis(run_id: str) -> dict[str, Any]:
        try:
            return await service.cancel_analysis(run_id)
        except PairReviewError as e:
            raise _http_error(e) from e

    @app.get("/api/analyze/progress/{run_id}")
    async def progress_stream(run_id: str, request: Request) -> StreamingResponse:
        """Stream progress as Server-Sent Events until the run finishes.

        The first event is the run's current state; the stream closes
        after a terminal event or when the client disconnects.
        """
        try:
            service.get_run_status(run_id)
        except PairReviewError as e:
            raise _http_error(e) from e

        async def event_source() -> AsyncGenerator[str, None]:
            events = service.stream_progress(run_id)
            try:
                async for event in events:
                    if await request.is_disconnected():
                        logger.debug(f"Progress client for {run_id} disconnected")
                        break
                    yield event.to_sse()
            except RunNotFoundError:
                return
            finally:
                await events.aclose()

        return StreamingResponse(
            event_source(), media_type="text/event-stream", headers=SSE_HEADERS
        )

    @app.get("/api/suggestions")
    async def get_suggestions(
        path: str | None = None,
        repository: str | None = None,
        pr_number: int | None = None,
        run_id: str | None = None,
        levels: list[str] | None = Query(default=None),
        file: str | None = None,
        statuses: list[str] | None = Query(default=None),
    ) -> dict[str, Any]:
        ref = None
        if path or repository:
            ref = _change_ref(path, repository, pr_number)
        try:
            suggestions = service.get_suggestions(
                ref, run_id=run_id, levels=levels, file=file, statuses=statuses
            )
        except PairReviewError as e:
            raise _http_error(e) from e
        return {
            "count": len(suggestions),
            "suggestions": [s.to_dict() for s in suggestions],
        }

    @app.patch("/api/suggestions/{suggestion_id}")
    async def update_suggestion(suggestion_id: int, body: StatusUpdate) -> dict[str, Any]:
        try:
            return service.update_suggestion_status(suggestion_id, body.status).to_dict()
        except PairReviewError as e:
            raise _http_error(e) from e

    @app.get("/api/runs")
    async def list_runs(
        path: str | None = None,
        repository: str | None = None,
        pr_number: int | None = None,
        limit: int = Query(default=20, ge=1, le=100),
    ) -> dict[str, Any]:
        try:
            runs = service.list_runs(_change_ref(path, repository, pr_number), limit=limit)
        except PairReviewError as e:
            raise _http_error(e) from e
        return {"count": len(runs), "runs": runs}

    @app.get("/api/changes/analysis-status")
    async def change_status(
        path: str | None = None,
        repository: str | None = None,
        pr_number: int | None = None,
    ) -> dict[str, Any]:
        try:
            ref = _change_ref(path, repository, pr_number)
            status = service.get_change_analysis_status(ref)
            if status.get("change_id") is not None:
                status["stats"] = service.get_stats(ref)
            return status
        except PairReviewError as e:
            raise _http_error(e) from e

    return app
