"""CLI formatters — console, status indicators, result tables."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

from delegate.formatting import format_usage_stats
from delegate.orchestration.models import DispatchResult, SingleResult


def get_console(no_color: bool = False) -> Console:
    """Get a Rich Console, optionally with color disabled."""
    return Console(no_color=no_color)


def status_indicator(result: SingleResult) -> Text:
    """Map a result to a colored indicator."""
    if result.is_running:
        return Text("> ", style="green")
    if result.stop_reason == "stalled":
        return Text("~ ", style="yellow")
    if result.stop_reason == "aborted":
        return Text("- ", style="dim")
    if result.is_error:
        return Text("x ", style="red")
    return Text("✓ ", style="green")


def build_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    """Build a Rich table with standard styling."""
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(v if isinstance(v, Text) else str(v) for v in row))
    return table


def results_table(dispatch: DispatchResult) -> Table:
    rows = []
    for index, result in enumerate(dispatch.results, 1):
        rows.append([
            str(result.step or index),
            status_indicator(result) + Text(result.agent),
            result.model or "-",
            str(result.exit_code),
            format_usage_stats(result.usage) or "-",
        ])
    return build_table(
        f"{dispatch.mode} ({len(dispatch.results)} results)",
        ["#", "Agent", "Model", "Exit", "Usage"],
        rows,
    )


def render_dispatch(console: Console, dispatch: DispatchResult, verbose: bool = False) -> None:
    if dispatch.mode in ("parallel", "centipede") and dispatch.results:
        console.print(results_table(dispatch))
        console.print()
    style = "red" if dispatch.is_error else None
    console.print(Text(dispatch.text, style=style))
    if verbose:
        for result in dispatch.results:
            if result.stderr.strip():
                console.print(Text(f"[{result.agent}] stderr:", style="bold"))
                console.print(Text(result.stderr.strip(), style="dim"))
    if dispatch.mode == "single" and dispatch.results:
        usage = format_usage_stats(dispatch.results[0].usage, dispatch.results[0].model)
        if usage:
            console.print(Text(usage, style="dim"))
