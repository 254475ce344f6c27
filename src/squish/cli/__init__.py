"""CLI module for squish commands."""

from pathlib import Path

import click

from .optimise_cmd import crop, downscale, optimise, restore
from .serve_cmd import serve, watch
from .tools_cmd import tools


@click.group()
@click.version_option(version="0.1.0", prog_name="squish")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output (tool command lines, captured stderr)")
@click.option(
    "--work-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    envvar="SQUISH_WORK_DIR",
    help="Where backups, scratch files and sockets live",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, work_dir: Path | None) -> None:
    """🗜️ squish: keep images, videos and PDFs small."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["work_dir"] = work_dir


main.add_command(optimise)
main.add_command(downscale)
main.add_command(crop)
main.add_command(restore)
main.add_command(serve)
main.add_command(watch)
main.add_command(tools)

__all__ = [
    "crop",
    "downscale",
    "main",
    "optimise",
    "restore",
    "serve",
    "tools",
    "watch",
]
