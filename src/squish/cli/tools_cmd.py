"""External tool diagnostics."""

from __future__ import annotations

import json
import sys

import click
from rich.panel import Panel
from rich.table import Table

from ..system_tools import TOOLS_BY_KIND, get_available_tools
from .utils import console

_INSTALL_HINTS = {
    "pngquant": "brew install pngquant / apt install pngquant",
    "jpegoptim": "brew install jpegoptim / apt install jpegoptim",
    "gifsicle": "brew install gifsicle / apt install gifsicle",
    "vipsthumbnail": "brew install vips / apt install libvips-tools",
    "ffmpeg": "brew install ffmpeg / apt install ffmpeg",
    "ffprobe": "ships with ffmpeg",
    "ghostscript": "brew install ghostscript / apt install ghostscript",
}


@click.command()
@click.option("--json", "json_output", is_flag=True, help="Output results in JSON format")
def tools(json_output: bool) -> None:
    """🔍 Check which external compressors are available."""
    available = get_available_tools()

    if json_output:
        payload = {
            kind: {key: {"available": available[key].available, "version": available[key].version} for key in keys}
            for kind, keys in TOOLS_BY_KIND.items()
        }
        click.echo(json.dumps(payload, indent=2))
        return

    console.print("\n🔍 [bold blue]squish Tool Check[/bold blue]\n")
    missing = []
    for kind, keys in TOOLS_BY_KIND.items():
        table = Table(title=f"📦 {kind.title()}", show_header=True, header_style="bold magenta")
        table.add_column("Tool", style="cyan", no_wrap=True)
        table.add_column("Status", justify="center")
        table.add_column("Version", style="dim")
        for key in keys:
            info = available[key]
            if info.available:
                table.add_row(key, "✅", info.version or "unknown")
            else:
                table.add_row(key, "❌", "")
                missing.append(key)
        console.print(table)
        console.print()

    if missing:
        hints = "\n".join(f"• {key}: {_INSTALL_HINTS.get(key, 'see your package manager')}" for key in missing)
        console.print(Panel(hints, title="💡 Missing tools", border_style="yellow"))
        sys.exit(1)
    console.print(Panel("All tools available", title="✅ Ready", border_style="green"))
