"""Shared utilities for CLI commands."""

from __future__ import annotations

import sys
import time
from pathlib import Path

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from ..config import EngineSettings
from ..engine import Engine, RequestHandle
from ..ipc import OptimisationResponse, OptimisationResponseError
from ..logging_setup import setup_logging
from ..optimiser import OptimiserSnapshot

console = Console()


def handle_generic_error(command_name: str, error: Exception) -> None:
    """Handle generic command errors with consistent formatting."""
    click.echo(f"❌ {command_name} failed: {error}", err=True)
    sys.exit(1)


def handle_keyboard_interrupt(command_name: str) -> None:
    """Handle keyboard interrupt with consistent formatting."""
    click.echo(f"\n⏹️  {command_name} interrupted by user", err=True)
    sys.exit(1)


def build_settings(ctx: click.Context) -> EngineSettings:
    """Settings for this invocation, honouring ``--work-dir`` and ``--verbose``."""
    obj = ctx.find_root().obj or {}
    work_dir = obj.get("work_dir")
    settings = EngineSettings(WORK_DIR=work_dir) if work_dir else EngineSettings()
    setup_logging(settings.logs_dir, "DEBUG" if obj.get("verbose") else "WARNING")
    return settings


def parse_size(value: str | None) -> tuple[int, int] | None:
    """Parse ``WIDTHxHEIGHT``; a missing side copies the other (``800x`` -> 800x800)."""
    if value is None:
        return None
    width, _, height = value.lower().partition("x")
    try:
        w = int(width) if width else int(height)
        h = int(height) if height else w
    except ValueError:
        raise click.BadParameter(f"expected WIDTHxHEIGHT, got {value!r}") from None
    if w <= 0 or h <= 0:
        raise click.BadParameter("size must be positive")
    return w, h


def format_bytes(count: int) -> str:
    if count < 0:
        return "-"
    size = float(count)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1000 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1000
    return f"{size:.1f} GB"


def format_dimensions(size: tuple[int, int] | None) -> str:
    return f"{size[0]}x{size[1]}" if size else ""


def wait_with_progress(engine: Engine, handles: list[RequestHandle]) -> list[OptimiserSnapshot | None]:
    """Show one progress bar per request until every handle has settled."""
    with Progress(
        TextColumn("[cyan]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        tasks = {handle.id: progress.add_task(Path(handle.id).name, total=None) for handle in handles}
        while not all(handle.done for handle in handles):
            for handle in handles:
                snapshot = engine.snapshot(handle.id)
                if snapshot is None:
                    continue
                current = snapshot.progress
                if current.indeterminate or current.total_units <= 0:
                    progress.update(tasks[handle.id], total=None)
                else:
                    progress.update(tasks[handle.id], total=current.total_units, completed=current.completed_units)
            time.sleep(0.1)
    return [handle.snapshot for handle in handles]


def display_snapshots(snapshots: list[OptimiserSnapshot | None]) -> bool:
    """Print a results table; returns ``True`` when nothing failed."""
    table = Table(title="📦 Results", show_header=True, header_style="bold magenta")
    table.add_column("File", style="cyan", no_wrap=True)
    table.add_column("Before", justify="right")
    table.add_column("After", justify="right")
    table.add_column("Saved", justify="right", style="green")
    table.add_column("Size", style="dim")
    table.add_column("Status")

    ok = True
    for snapshot in snapshots:
        if snapshot is None:
            continue
        path = snapshot.result_path or snapshot.source_path
        name = path.name if path else snapshot.id
        if snapshot.error is not None:
            ok = False
            status = f"[red]❌ {snapshot.error}[/red]"
        elif snapshot.notice is not None:
            status = f"[yellow]ℹ️ {snapshot.notice}[/yellow]"
        elif snapshot.new_bytes >= 0:
            status = "[green]✅ Done[/green]"
        elif snapshot.is_original:
            status = "[blue]↩️ Restored[/blue]"
        else:
            status = f"[dim]⏹️ {snapshot.operation}[/dim]"
        saved = snapshot.saved_bytes
        table.add_row(
            name,
            format_bytes(snapshot.old_bytes),
            format_bytes(snapshot.new_bytes),
            format_bytes(saved) if saved > 0 else "",
            format_dimensions(snapshot.new_size or snapshot.old_size),
            status,
        )
    console.print(table)
    return ok


def display_responses(responses: list[OptimisationResponse | OptimisationResponseError]) -> bool:
    """Results table for responses received from a running server."""
    table = Table(title="📦 Results", show_header=True, header_style="bold magenta")
    table.add_column("File", style="cyan", no_wrap=True)
    table.add_column("Before", justify="right")
    table.add_column("After", justify="right")
    table.add_column("Status")

    ok = True
    for response in responses:
        match response:
            case OptimisationResponseError(error=error, for_url=url):
                ok = False
                table.add_row(Path(url).name, "", "", f"[red]❌ {error}[/red]")
            case OptimisationResponse():
                table.add_row(
                    Path(response.path).name,
                    format_bytes(response.old_bytes),
                    format_bytes(response.new_bytes),
                    "[green]✅ Done[/green]",
                )
    console.print(table)
    return ok
