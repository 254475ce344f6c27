from __future__ import annotations

from pathlib import Path

from ..asset_types import AssetType
from ..errors import ResultNotSmaller, ToolLaunchFailed
from ..system_tools import tool_binary
from ..tool_interfaces import TransformJob, TransformResult

__all__ = [
    "binary_for",
    "even",
    "ensure_smaller",
    "make_result",
    "pick_smaller",
    "scaled_size",
]


def binary_for(tool_key: str, job: TransformJob) -> str:
    """Resolve the executable for *tool_key* from the job's engine config."""
    try:
        return tool_binary(tool_key, job.engine_config)
    except RuntimeError as e:
        raise ToolLaunchFailed(tool_key, "not installed") from e


def make_result(
    path: Path,
    asset_type: AssetType,
    *,
    size: tuple[int, int] | None = None,
    converted_from: Path | None = None,
) -> TransformResult:
    """Wrap a finished scratch file into a :class:`TransformResult`.

    Raises *RuntimeError* when the tool exited 0 but left no output behind.
    """
    try:
        nbytes = path.stat().st_size
    except OSError as e:
        raise RuntimeError(f"Transform produced no output at {path}") from e
    if nbytes == 0:
        raise RuntimeError(f"Transform produced an empty file at {path}")
    return TransformResult(path=path, bytes=nbytes, type=asset_type, size=size, converted_from=converted_from)


def pick_smaller(primary: TransformResult, alternative: TransformResult | None, margin: int = 100_000) -> TransformResult:
    """Keep *alternative* only when it beats *primary* by more than *margin* bytes.

    The loser's scratch file is deleted.
    """
    if alternative is None:
        return primary
    if alternative.bytes + margin < primary.bytes:
        primary.path.unlink(missing_ok=True)
        return alternative
    if alternative.path != primary.path:
        alternative.path.unlink(missing_ok=True)
    return primary


def ensure_smaller(old_bytes: int, result: TransformResult, allow_larger: bool, source: Path | None = None) -> TransformResult:
    """Raise :class:`ResultNotSmaller` unless *result* is strictly smaller."""
    if allow_larger or old_bytes < 0 or result.bytes < old_bytes:
        return result
    result.path.unlink(missing_ok=True)
    raise ResultNotSmaller(source or result.path, old_bytes, result.bytes)


def even(value: float) -> int:
    """Round down to an even integer of at least 2 (libx264 needs even sizes)."""
    return max(int(value) // 2 * 2, 2)


def scaled_size(size: tuple[int, int], factor: float) -> tuple[int, int]:
    width, height = size
    return (max(round(width * factor), 1), max(round(height * factor), 1))
