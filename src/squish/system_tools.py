from __future__ import annotations

"""Utility helpers for locating the external compressors.

These lightweight checks make sure pngquant, jpegoptim, gifsicle, ffmpeg,
ghostscript and friends are present *before* a transform is queued, so a
missing binary fails fast with a clear message instead of after the retries.
"""

import os
import re
import subprocess
from dataclasses import dataclass
from functools import lru_cache
from shutil import which


@dataclass(frozen=True, slots=True)
class ToolInfo:
    """Metadata for an external binary discovered on the system."""

    name: str
    available: bool
    version: str | None = None

    def require(self) -> None:
        """Raise *RuntimeError* if the tool isn't available."""
        if not self.available:
            raise RuntimeError(
                f"Required tool '{self.name}' not found in PATH.\n"
                "Install it or point SQUISH_<TOOL>_PATH at the binary."
            )


# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------


def _which(cmd: str) -> str | None:
    """Return full path if *cmd* is executable in $PATH, else *None*."""
    return which(cmd)


def _extract_version(output: str, pattern: str) -> str | None:
    match = re.search(pattern, output)
    if match:
        return match.group(1)
    return None


def _run_version_cmd(cmd: list[str], regex: str) -> str | None:
    try:
        # Some tools print their version with a non-zero exit code
        completed = subprocess.run(cmd, capture_output=True, text=True, timeout=5)
    except (OSError, subprocess.SubprocessError):
        return None

    version = _extract_version(completed.stdout, regex) or _extract_version(
        completed.stderr, regex
    )
    if version:
        return version
    if completed.returncode != 0:
        return None
    return version


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_FALLBACK_TOOLS: dict[str, list[str]] = {
    "pngquant": ["pngquant"],
    "jpegoptim": ["jpegoptim"],
    "gifsicle": ["gifsicle"],
    "vipsthumbnail": ["vipsthumbnail"],
    "ffmpeg": ["ffmpeg"],
    "ffprobe": ["ffprobe"],
    "ghostscript": ["gs", "gswin64c"],
}

_VERSION_FLAGS: dict[str, str] = {
    "pngquant": "--version",
    "jpegoptim": "--version",
    "gifsicle": "--version",
    "vipsthumbnail": "--vips-version",
    "ffmpeg": "-version",
    "ffprobe": "-version",
    "ghostscript": "--version",
}

_VERSION_PATTERNS: dict[str, str] = {
    "pngquant": r"^(\d+\.\d+(?:\.\d+)?)",
    "jpegoptim": r"jpegoptim v?(\S+)",
    "gifsicle": r"LCDF Gifsicle (\S+)",
    "vipsthumbnail": r"vips-(\S+)",
    "ffmpeg": r"ffmpeg version (\S+)",
    "ffprobe": r"ffprobe version (\S+)",
    "ghostscript": r"^(\d+\.\d+(?:\.\d+)?)",
}

_CONFIG_MAPPING: dict[str, str] = {
    "pngquant": "PNGQUANT_PATH",
    "jpegoptim": "JPEGOPTIM_PATH",
    "gifsicle": "GIFSICLE_PATH",
    "vipsthumbnail": "VIPSTHUMBNAIL_PATH",
    "ffmpeg": "FFMPEG_PATH",
    "ffprobe": "FFPROBE_PATH",
    "ghostscript": "GHOSTSCRIPT_PATH",
}

#: Which tools each queue needs
TOOLS_BY_KIND: dict[str, tuple[str, ...]] = {
    "image": ("pngquant", "jpegoptim", "gifsicle", "vipsthumbnail"),
    "video": ("ffmpeg", "ffprobe"),
    "pdf": ("ghostscript",),
}


def discover_tool(tool_key: str, engine_config=None) -> ToolInfo:
    """Return *ToolInfo* for *tool_key* using configuration and PATH discovery.

    Args:
        tool_key: Tool identifier (pngquant, jpegoptim, gifsicle, ffmpeg, ...)
        engine_config: EngineConfig instance (uses DEFAULT_ENGINE_CONFIG if None)

    Returns:
        ToolInfo with availability and version information
    """
    if tool_key not in _CONFIG_MAPPING:
        raise ValueError(f"Unknown tool: {tool_key}")

    if engine_config is None:
        from .config import DEFAULT_ENGINE_CONFIG

        engine_config = DEFAULT_ENGINE_CONFIG

    version_regex = _VERSION_PATTERNS.get(tool_key, r"(\d+\.\d+\.\d+)")
    version_flag = _VERSION_FLAGS.get(tool_key, "--version")

    configured_path = getattr(engine_config, _CONFIG_MAPPING[tool_key], None)
    if configured_path:
        resolved = _which(configured_path)
        if resolved:
            version = _run_version_cmd([configured_path, version_flag], version_regex)
            return ToolInfo(name=configured_path, available=True, version=version)

    for candidate in _FALLBACK_TOOLS[tool_key]:
        if candidate == configured_path:
            continue
        if _which(candidate):
            version = _run_version_cmd([candidate, version_flag], version_regex)
            return ToolInfo(name=candidate, available=True, version=version)

    return ToolInfo(name=configured_path or _FALLBACK_TOOLS[tool_key][0], available=False)


@lru_cache(maxsize=None)
def _cached_binary(tool_key: str, configured_path: str) -> str:
    from .config import EngineConfig

    config = EngineConfig(**{_CONFIG_MAPPING[tool_key]: configured_path})
    info = discover_tool(tool_key, config)
    info.require()
    return info.name


def tool_binary(tool_key: str, engine_config=None) -> str:
    """Return the executable to launch for *tool_key*, raising if missing.

    Absolute configured paths are trusted as-is so that a binary can be
    swapped in without a PATH lookup.
    """
    if engine_config is None:
        from .config import DEFAULT_ENGINE_CONFIG

        engine_config = DEFAULT_ENGINE_CONFIG

    configured_path = getattr(engine_config, _CONFIG_MAPPING[tool_key])
    if os.path.isabs(configured_path) and os.access(configured_path, os.X_OK):
        return configured_path
    return _cached_binary(tool_key, configured_path)


def get_available_tools(engine_config=None) -> dict[str, ToolInfo]:
    """Get availability status for all supported tools without requiring them."""
    return {key: discover_tool(key, engine_config) for key in _CONFIG_MAPPING}


def verify_required_tools(kinds: tuple[str, ...] = ("image", "video", "pdf"), engine_config=None) -> dict[str, ToolInfo]:
    """Ensure every binary needed by *kinds* is available - raise on failure."""
    results: dict[str, ToolInfo] = {}
    for kind in kinds:
        for key in TOOLS_BY_KIND[kind]:
            info = discover_tool(key, engine_config)
            info.require()
            results[key] = info
    return results
