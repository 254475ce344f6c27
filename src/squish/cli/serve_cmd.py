"""Long-running commands: the IPC server and the folder watcher."""

from __future__ import annotations

import threading
from pathlib import Path

import click

from ..engine import Engine
from ..errors import SquishError
from ..ipc import IPCServer
from ..registry import AssetChanged, RegistryEvent
from ..watcher import DirectoryWatcher
from .utils import build_settings, console, format_bytes, handle_generic_error, handle_keyboard_interrupt

KINDS = ("image", "video", "pdf")


def _report(event: RegistryEvent) -> None:
    match event:
        case AssetChanged(snapshot=snapshot, removed=False) if not snapshot.running:
            name = (snapshot.result_path or snapshot.source_path or Path(snapshot.id)).name
            if snapshot.error is not None:
                console.print(f"❌ {name}: {snapshot.error}")
            elif snapshot.notice is not None:
                console.print(f"ℹ️ {name}: {snapshot.notice}")
            elif snapshot.new_bytes >= 0:
                console.print(
                    f"✅ {name}: {format_bytes(snapshot.old_bytes)} -> {format_bytes(snapshot.new_bytes)}"
                )
        case _:
            pass


def _watchers(engine: Engine, dirs: tuple[Path, ...], kinds: tuple[str, ...], recursive: bool) -> list[DirectoryWatcher]:
    if not dirs:
        return []
    return [DirectoryWatcher(engine, dirs, kinds or KINDS, recursive=recursive).start()]


@click.command()
@click.option(
    "--watch",
    "-w",
    "watch_dirs",
    multiple=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Also watch this folder (repeatable)",
)
@click.option("--kind", "kinds", multiple=True, type=click.Choice(KINDS), help="Media kinds to watch (default: all)")
@click.option("--recursive", "-r", is_flag=True, help="Watch sub-folders too")
@click.pass_context
def serve(ctx: click.Context, watch_dirs: tuple[Path, ...], kinds: tuple[str, ...], recursive: bool) -> None:
    """📡 Run the engine and accept requests from other squish processes."""
    try:
        settings = build_settings(ctx)
        with Engine(settings) as engine:
            engine.registry.subscribe(_report)
            watchers = _watchers(engine, watch_dirs, kinds, recursive)
            with IPCServer(engine) as server:
                click.echo(f"📡 squish server listening on {server.address}")
                try:
                    server.serve_forever()
                finally:
                    for watcher in watchers:
                        watcher.stop()
    except KeyboardInterrupt:
        handle_keyboard_interrupt("Serve")
    except (SquishError, OSError) as e:
        handle_generic_error("Serve", e)


@click.command()
@click.argument("dirs", nargs=-1, required=True, type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--kind", "kinds", multiple=True, type=click.Choice(KINDS), help="Media kinds to optimise (default: all)")
@click.option("--recursive", "-r", is_flag=True, help="Watch sub-folders too")
@click.pass_context
def watch(ctx: click.Context, dirs: tuple[Path, ...], kinds: tuple[str, ...], recursive: bool) -> None:
    """👀 Optimise new files as they appear in DIRS.

    DIRS: Folders to watch
    """
    try:
        settings = build_settings(ctx)
        with Engine(settings) as engine:
            engine.registry.subscribe(_report)
            watchers = _watchers(engine, dirs, kinds, recursive)
            click.echo("👀 Watching for new files, press Ctrl+C to stop")
            try:
                threading.Event().wait()
            finally:
                for watcher in watchers:
                    watcher.stop()
    except KeyboardInterrupt:
        handle_keyboard_interrupt("Watch")
    except (SquishError, OSError) as e:
        handle_generic_error("Watch", e)
