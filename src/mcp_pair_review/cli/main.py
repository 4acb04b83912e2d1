"""Command-line interface for MCP Pair Review."""

import asyncio
import json
import sys
from pathlib import Path

import typer
import uvicorn
from loguru import logger

from .. import __version__
from ..analysis.executor import ProcessExecutor
from ..analysis.service import AnalysisService, ChangeRef
from ..config.defaults import VALID_TIERS
from ..config.settings import ReviewSettings, load_settings
from ..core.exceptions import PairReviewError
from ..storage.store import ReviewStore
from .output import (
    console,
    print_error,
    print_info,
    print_success,
    print_warning,
    runs_table,
    stages_line,
    suggestions_table,
)

app = typer.Typer(
    name="pair-review",
    help="Cascading AI code review with live progress",
    no_args_is_help=True,
)


def setup_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else "WARNING",
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def version_callback(value: bool) -> None:
    if value:
        console.print(f"pair-review {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Configuration file (YAML)", exists=True, dir_okay=False
    ),
    version: bool = typer.Option(
        False, "--version", callback=version_callback, is_eager=True, help="Show version"
    ),
) -> None:
    setup_logging(verbose)
    ctx.obj = {"config": config}


def _settings(ctx: typer.Context, root: Path) -> ReviewSettings:
    try:
        return load_settings(root, config_path=(ctx.obj or {}).get("config"))
    except PairReviewError as e:
        print_error(str(e))
        raise typer.Exit(1) from e


def _service(ctx: typer.Context, root: Path) -> AnalysisService:
    settings = _settings(ctx, root)
    try:
        store = ReviewStore(settings.resolve_database_path(root))
    except PairReviewError as e:
        print_error(str(e))
        raise typer.Exit(1) from e
    return AnalysisService(store, settings)


async def _run_analysis(
    service: AnalysisService,
    ref: ChangeRef,
    tier: str | None,
    skip_stage3: bool,
    instructions: str | None,
    model: str | None,
) -> dict:
    started = await service.start_analysis(
        ref,
        custom_instructions=instructions,
        skip_stage3=skip_stage3,
        tier=tier,
        model=model,
    )
    if started.status == "already_running":
        print_warning(f"Analysis already running: {started.run_id}")
        return service.get_run_status(started.run_id)

    print_info(f"Started analysis {started.run_id}")
    with console.status("Analyzing...") as status:
        async for event in service.stream_progress(started.run_id):
            if event.state:
                status.update(f"{stages_line(event.state['levels'])}  {event.state['progress']}")
    await service.wait_for(started.run_id)
    return service.get_run_status(started.run_id)


@app.command()
def analyze(
    ctx: typer.Context,
    path: Path = typer.Argument(
        Path("."), help="Git checkout to review", exists=True, file_okay=False
    ),
    tier: str | None = typer.Option(
        None, "--tier", "-t", help=f"Review depth: {', '.join(VALID_TIERS)}"
    ),
    skip_stage3: bool = typer.Option(
        False, "--skip-stage3", help="Skip the codebase-context stage"
    ),
    instructions: str | None = typer.Option(
        None, "--instructions", "-i", help="Custom instructions for this run"
    ),
    base_ref: str = typer.Option("HEAD", "--base", help="Git ref to diff against"),
    model: str | None = typer.Option(None, "--model", "-m", help="Reviewer model"),
    json_output: bool = typer.Option(False, "--json", help="Print results as JSON"),
) -> None:
    """Review the uncommitted changes of a local checkout."""
    root = path.resolve()
    service = _service(ctx, root)
    ref = ChangeRef(path=str(root), base_ref=base_ref)

    try:
        status = asyncio.run(
            _run_analysis(service, ref, tier, skip_stage3, instructions, model)
        )
    except PairReviewError as e:
        print_error(str(e))
        raise typer.Exit(1) from e
    except KeyboardInterrupt:
        print_warning("Interrupted")
        raise typer.Exit(130)

    suggestions = service.get_suggestions(run_id=status["id"])
    if json_output:
        console.print_json(
            json.dumps({"run": status, "suggestions": [s.to_dict() for s in suggestions]})
        )
    else:
        console.print(stages_line(status["levels"]))
        if status.get("validation_bypassed"):
            print_warning("Path validation was bypassed for this run")
        if suggestions:
            console.print(suggestions_table(suggestions))
        if status.get("summary"):
            console.print(status["summary"])

    if status["status"] == "completed":
        print_success(f"Analysis complete: {status['total_suggestions']} suggestions")
    else:
        print_error(f"Analysis {status['status']}: {status.get('error') or status['progress']}")
        raise typer.Exit(1)


@app.command()
def suggestions(
    ctx: typer.Context,
    path: Path = typer.Argument(Path("."), help="Reviewed checkout", exists=True, file_okay=False),
    run_id: str | None = typer.Option(None, "--run", help="Run id (default: latest)"),
    level: list[str] = typer.Option(["final"], "--level", "-l", help="final, 1, 2 or 3"),
    file: str | None = typer.Option(None, "--file", "-f", help="Only this file"),
    include_dismissed: bool = typer.Option(False, "--all", help="Include dismissed"),
    json_output: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """Show stored suggestions for a checkout."""
    root = path.resolve()
    service = _service(ctx, root)
    statuses = ["active", "adopted", "dismissed"] if include_dismissed else None
    try:
        found = service.get_suggestions(
            ChangeRef(path=str(root)),
            run_id=run_id,
            levels=level,
            file=file,
            statuses=statuses,
        )
    except PairReviewError as e:
        print_error(str(e))
        raise typer.Exit(1) from e

    if json_output:
        console.print_json(json.dumps([s.to_dict() for s in found]))
    elif found:
        console.print(suggestions_table(found))
    else:
        print_info("No suggestions")


@app.command()
def runs(
    ctx: typer.Context,
    path: Path = typer.Argument(Path("."), help="Reviewed checkout", exists=True, file_okay=False),
    limit: int = typer.Option(20, "--limit", "-n", min=1, max=100),
) -> None:
    """List analysis runs for a checkout, newest first."""
    root = path.resolve()
    service = _service(ctx, root)
    try:
        history = service.list_runs(ChangeRef(path=str(root)), limit=limit)
    except PairReviewError as e:
        print_error(str(e))
        raise typer.Exit(1) from e
    console.print(runs_table(history))


@app.command()
def serve(
    ctx: typer.Context,
    path: Path = typer.Argument(Path("."), help="Project root", exists=True, file_okay=False),
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(7247, "--port", "-p"),
) -> None:
    """Run the REST API server."""
    from ..api.app import create_app

    root = path.resolve()
    service = _service(ctx, root)
    service.store.fail_interrupted_runs()
    print_info(f"Serving pair review API on http://{host}:{port}")
    uvicorn.run(create_app(service), host=host, port=port, log_level="warning")


@app.command()
def mcp(
    ctx: typer.Context,
    path: Path = typer.Argument(Path("."), help="Project root", exists=True, file_okay=False),
) -> None:
    """Run the MCP server over stdio."""
    from ..mcp.server import run_mcp_server

    root = path.resolve()
    settings = _settings(ctx, root)
    asyncio.run(run_mcp_server(root, settings))


@app.command()
def check(
    ctx: typer.Context,
    path: Path = typer.Argument(Path("."), help="Project root", exists=True, file_okay=False),
) -> None:
    """Check that the reviewer command is installed and responds."""
    root = path.resolve()
    settings = _settings(ctx, root)
    executor = ProcessExecutor(
        command=settings.reviewer_command,
        extra_args=settings.extra_args,
        extra_path=settings.extra_path,
    )
    if asyncio.run(executor.check_available(root)):
        print_success(f"Reviewer command '{settings.reviewer_command}' is available")
    else:
        print_error(f"Reviewer command '{settings.reviewer_command}' is not available")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
