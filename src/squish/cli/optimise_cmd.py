"""Commands that transform files: optimise, downscale, crop and restore."""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path

import click

from ..asset_types import is_remote
from ..engine import Engine, OptimiseOptions, RequestHandle
from ..errors import SquishError
from ..ipc import IPCClient, OptimisationRequest
from .utils import (
    build_settings,
    display_responses,
    display_snapshots,
    handle_generic_error,
    handle_keyboard_interrupt,
    parse_size,
    wait_with_progress,
)

items_argument = click.argument("items", nargs=-1, required=True)
local_option = click.option(
    "--local",
    is_flag=True,
    help="Process in this process even if a squish server is running",
)
aggressive_option = click.option(
    "--aggressive",
    "-a",
    is_flag=True,
    default=None,
    help="Trade more quality for a smaller file",
)
output_option = click.option(
    "--output",
    "-o",
    type=str,
    default=None,
    help="Output path template (%f stem, %e extension, %i counter, %y/%m/%d date); default replaces in place",
)


def _normalise(item: str) -> str:
    return item if is_remote(item) else str(Path(item).expanduser().resolve())


def _run(
    ctx: click.Context,
    command_name: str,
    items: tuple[str, ...],
    submit: Callable[[Engine, str], RequestHandle],
    request: OptimisationRequest | None,
    local: bool,
) -> None:
    try:
        settings = build_settings(ctx)
        urls = [_normalise(item) for item in items]

        if request is not None and not local:
            client = IPCClient(settings)
            if client.is_running():
                click.echo("📡 Sending to the running squish server")
                request.urls = urls
                if not display_responses(client.optimise(request)):
                    sys.exit(1)
                return

        with Engine(settings) as engine:
            handles = []
            for url in urls:
                try:
                    handles.append(submit(engine, url))
                except (SquishError, ValueError) as e:
                    click.echo(f"⚠️ Skipping {url}: {e}", err=True)
            if not handles:
                sys.exit(1)
            ok = display_snapshots(wait_with_progress(engine, handles))
        if not ok:
            sys.exit(1)
    except KeyboardInterrupt:
        handle_keyboard_interrupt(command_name)
    except (SquishError, OSError) as e:
        handle_generic_error(command_name, e)


@click.command()
@items_argument
@aggressive_option
@output_option
@click.option("--force", is_flag=True, help="Optimise even files marked as already optimised")
@click.option("--allow-larger", is_flag=True, help="Keep the result even if it is bigger")
@click.option("--adaptive/--no-adaptive", default=None, help="Try PNG<->JPEG conversion when it saves more")
@click.option("--speed-up", type=float, default=None, help="Speed videos up by this factor")
@click.option("--remove-audio", is_flag=True, help="Drop the audio track of videos")
@local_option
@click.pass_context
def optimise(
    ctx: click.Context,
    items: tuple[str, ...],
    aggressive: bool | None,
    output: str | None,
    force: bool,
    allow_larger: bool,
    adaptive: bool | None,
    speed_up: float | None,
    remove_audio: bool,
    local: bool,
) -> None:
    """🗜️ Optimise images, videos and PDFs (paths or URLs) in place.

    ITEMS: Files or http(s) URLs to optimise
    """
    options = OptimiseOptions(
        aggressive=aggressive,
        output_path_template=output,
        allow_larger=allow_larger,
        adaptive=adaptive,
        force=force,
        remove_after_ms=0,
        source="cli",
    )

    def submit(engine: Engine, url: str) -> RequestHandle:
        if speed_up is not None:
            return engine.request_speed_up(url, speed_up, options)
        if remove_audio:
            return engine.request_remove_audio(url, options)
        return engine.request_optimise(url, options=options)

    request = None
    if not (force or allow_larger or adaptive is not None):
        request = OptimisationRequest(
            urls=[],
            speed_up_factor=speed_up,
            remove_audio=remove_audio,
            aggressive_optimisation=aggressive,
            output=output,
        )
    _run(ctx, "Optimise", items, submit, request, local)


@click.command()
@items_argument
@click.option("--factor", "-f", type=click.FloatRange(0.01, 1.0), default=None, help="Scale factor relative to the original")
@click.option("--size", "-s", type=str, default=None, help="Fit inside WIDTHxHEIGHT")
@aggressive_option
@output_option
@local_option
@click.pass_context
def downscale(
    ctx: click.Context,
    items: tuple[str, ...],
    factor: float | None,
    size: str | None,
    aggressive: bool | None,
    output: str | None,
    local: bool,
) -> None:
    """📐 Downscale images, videos and PDFs.

    Without --factor or --size each run steps the scale down (75%, 50%, 40%...).

    ITEMS: Files to downscale
    """
    target = parse_size(size)
    options = OptimiseOptions(aggressive=aggressive, output_path_template=output, remove_after_ms=0, source="cli")

    def submit(engine: Engine, url: str) -> RequestHandle:
        return engine.request_downscale(url, factor=factor, target_size=target, options=options)

    request = None
    if factor is not None and target is None:
        request = OptimisationRequest(urls=[], downscale_factor=factor, aggressive_optimisation=aggressive, output=output)
    _run(ctx, "Downscale", items, submit, request, local)


@click.command()
@items_argument
@click.option("--size", "-s", type=str, required=True, help="Crop to WIDTHxHEIGHT (points for PDFs)")
@aggressive_option
@output_option
@local_option
@click.pass_context
def crop(
    ctx: click.Context,
    items: tuple[str, ...],
    size: str,
    aggressive: bool | None,
    output: str | None,
    local: bool,
) -> None:
    """✂️ Crop to an exact size, keeping the most interesting region.

    ITEMS: Files to crop
    """
    target = parse_size(size)
    options = OptimiseOptions(aggressive=aggressive, output_path_template=output, remove_after_ms=0, source="cli")

    def submit(engine: Engine, url: str) -> RequestHandle:
        return engine.request_crop(url, target, options)

    request = OptimisationRequest(urls=[], size=target, aggressive_optimisation=aggressive, output=output)
    _run(ctx, "Crop", items, submit, request, local)


@click.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def restore(ctx: click.Context, paths: tuple[Path, ...]) -> None:
    """↩️ Put the original (pre-optimisation) files back.

    PATHS: Files previously optimised by squish
    """
    try:
        settings = build_settings(ctx)
        with Engine(settings) as engine:
            snapshots = [engine.request_restore(path) for path in paths]
        if not display_snapshots(snapshots):
            sys.exit(1)
    except KeyboardInterrupt:
        handle_keyboard_interrupt("Restore")
    except (SquishError, OSError) as e:
        handle_generic_error("Restore", e)
