"""Rich console output helpers for the CLI."""

from typing import Any

from rich.console import Console
from rich.table import Table

from ..analysis.models import Suggestion, SuggestionCategory

console = Console()

CATEGORY_STYLES = {
    SuggestionCategory.BUG: "bold red",
    SuggestionCategory.SECURITY: "bold red",
    SuggestionCategory.PERFORMANCE: "yellow",
    SuggestionCategory.DESIGN: "magenta",
    SuggestionCategory.IMPROVEMENT: "cyan",
    SuggestionCategory.SUGGESTION: "cyan",
    SuggestionCategory.STYLE: "dim",
    SuggestionCategory.PRAISE: "green",
}

STATUS_STYLES = {
    "pending": "dim",
    "running": "yellow",
    "completed": "green",
    "failed": "red",
    "cancelled": "magenta",
    "skipped": "dim",
}


def print_error(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_warning(message: str) -> None:
    console.print(f"[yellow]![/yellow] {message}")


def print_info(message: str) -> None:
    console.print(f"[blue]i[/blue] {message}")


def suggestions_table(suggestions: list[Suggestion]) -> Table:
    table = Table(title=f"Suggestions ({len(suggestions)})", show_lines=False)
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Location")
    table.add_column("Category")
    table.add_column("Title")
    table.add_column("Conf.", justify="right")
    table.add_column("Status", style="dim")

    for suggestion in suggestions:
        location = suggestion.file
        if not suggestion.is_file_level:
            location += f":{suggestion.line_start}"
            if suggestion.line_end and suggestion.line_end != suggestion.line_start:
                location += f"-{suggestion.line_end}"
        style = CATEGORY_STYLES.get(suggestion.category, "")
        table.add_row(
            str(suggestion.id or ""),
            location,
            f"[{style}]{suggestion.category.value}[/{style}]" if style else suggestion.category.value,
            suggestion.title,
            f"{suggestion.confidence:.2f}",
            suggestion.status.value,
        )
    return table


def runs_table(runs: list[dict[str, Any]]) -> Table:
    table = Table(title="Analysis Runs")
    table.add_column("Run ID", style="dim")
    table.add_column("Status")
    table.add_column("Tier")
    table.add_column("Model")
    table.add_column("Suggestions", justify="right")
    table.add_column("Started")

    for run in runs:
        style = STATUS_STYLES.get(run["status"], "")
        table.add_row(
            run["id"][:8],
            f"[{style}]{run['status']}[/{style}]" if style else run["status"],
            run["tier"],
            f"{run['provider']}/{run['model']}",
            str(run["total_suggestions"]),
            run["started_at"][:19].replace("T", " "),
        )
    return table


def stages_line(levels: dict[str, dict[str, str]]) -> str:
    """One-line rendering of per-stage status, e.g. ``1 ✓  2 …  3 -  4 ·``."""
    marks = {
        "pending": "·",
        "running": "…",
        "completed": "✓",
        "failed": "✗",
        "cancelled": "⊘",
        "skipped": "-",
    }
    parts = []
    for stage, state in sorted(levels.items()):
        status = state["status"]
        style = STATUS_STYLES.get(status, "")
        parts.append(f"[{style}]{stage} {marks.get(status, '?')}[/{style}]")
    return "  ".join(parts)
