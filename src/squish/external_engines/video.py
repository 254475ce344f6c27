from __future__ import annotations

import logging
from pathlib import Path

from ..asset_types import Video as VideoType
from ..asset_types import unsupported
from ..meta import VideoInfo, probe_video
from ..progress import FFMPEG_GRAMMAR
from ..tool_interfaces import Transformer, TransformJob, TransformResult
from .common import binary_for, ensure_smaller, even, make_result

__all__ = [
    "VideoTransformer",
    "atempo_chain",
    "ffmpeg_args",
]

logger = logging.getLogger(__name__)


def atempo_chain(factor: float) -> str:
    """``atempo`` only accepts 0.5-2.0 per instance; chain it for other factors."""
    if factor <= 0:
        raise ValueError("speed factor must be positive")
    parts = []
    remaining = factor
    while remaining > 2.0:
        parts.append("atempo=2.0")
        remaining /= 2.0
    while remaining < 0.5:
        parts.append("atempo=0.5")
        remaining /= 0.5
    parts.append(f"atempo={remaining:g}")
    return ",".join(parts)


def ffmpeg_args(
    input_path: Path,
    output_path: Path,
    *,
    aggressive: bool,
    scale: tuple[int, int] | None = None,
    crop: tuple[int, int] | None = None,
    speed: float | None = None,
    remove_audio: bool = False,
    max_fps: int | None = None,
) -> list[str]:
    """Build an ffmpeg command line producing an H.264 MP4.

    *crop* is the target size; the frame is centre-cropped to its aspect ratio
    and then scaled to it.
    """
    args = ["-y", "-hide_banner", "-nostats", "-progress", "pipe:2", "-i", str(input_path)]
    args += ["-vcodec", "libx264", "-tag:v", "avc1"]
    if aggressive:
        args += ["-preset", "slower", "-crf", "26"]
    if max_fps:
        args += ["-fpsmax", str(max_fps)]

    filters = []
    if crop is not None:
        w, h = crop
        filters.append(f"crop='min(iw,ih*{w}/{h})':'min(ih,iw*{h}/{w})'")
        filters.append(f"scale={even(w)}:{even(h)}")
    elif scale is not None:
        filters.append(f"scale={even(scale[0])}:{even(scale[1])}")
    if speed is not None and speed != 1:
        filters.append(f"setpts=PTS/{speed:g}")
    if filters:
        args += ["-vf", ",".join(filters)]

    if remove_audio:
        args.append("-an")
    elif speed is not None and speed != 1:
        args += ["-af", atempo_chain(speed)]

    args += ["-movflags", "+faststart", str(output_path)]
    return args


class VideoTransformer(Transformer):
    NAME = "video"
    TOOLS = ("ffmpeg", "ffprobe")

    def _info(self, job: TransformJob) -> VideoInfo | None:
        return probe_video(job.input_path, job.engine_config)

    def _max_fps(self, job: TransformJob, info: VideoInfo | None) -> int | None:
        if not job.settings.CAP_VIDEO_FPS:
            return None
        target = job.settings.TARGET_VIDEO_FPS
        if info is not None and info.fps is not None and info.fps <= target:
            return None
        return max(target, job.settings.MIN_VIDEO_FPS)

    def _encode(
        self,
        job: TransformJob,
        info: VideoInfo | None,
        *,
        speed: float | None = None,
        allow_larger: bool | None = None,
        **options,
    ) -> TransformResult:
        output = job.scratch_path("mp4", "ffmpeg")
        total = info.duration_us if info is not None else None
        if total and speed:
            total = int(total / speed)

        job.run_tool(
            binary_for("ffmpeg", job),
            ffmpeg_args(
                job.input_path,
                output,
                aggressive=job.aggressive,
                speed=speed,
                max_fps=self._max_fps(job, info),
                **options,
            ),
            grammar=FFMPEG_GRAMMAR,
            total=total,
        )

        match job.type:
            case VideoType(subformat=sub):
                converted_from = None if sub == "mp4" else job.input_path
            case _:
                unsupported(job.type)

        size = None
        if options.get("crop"):
            size = tuple(even(v) for v in options["crop"])
        elif options.get("scale"):
            size = tuple(even(v) for v in options["scale"])
        elif info is not None:
            size = info.size

        result = make_result(output, VideoType("mp4"), size=size, converted_from=converted_from)
        allow = job.allow_larger if allow_larger is None else allow_larger
        return ensure_smaller(job.input_path.stat().st_size, result, allow, job.input_path)

    def optimise(self, job: TransformJob) -> TransformResult:
        return self._encode(job, self._info(job))

    def downscale(self, job: TransformJob, factor: float) -> TransformResult:
        if not 0 < factor <= 1:
            raise ValueError("factor must be in (0, 1]")
        info = self._info(job)
        size = job.current_size or (info.size if info else None)
        if size is None:
            raise RuntimeError(f"Cannot read the size of {job.input_path}")
        return self._encode(job, info, scale=(size[0] * factor, size[1] * factor), allow_larger=True)

    def crop(self, job: TransformJob, size: tuple[int, int]) -> TransformResult:
        return self._encode(job, self._info(job), crop=size, allow_larger=True)

    def change_speed(self, job: TransformJob, factor: float) -> TransformResult:
        if factor <= 0:
            raise ValueError("speed factor must be positive")
        info = self._info(job)
        return self._encode(job, info, speed=factor, remove_audio=info is not None and not info.has_audio, allow_larger=True)

    def remove_audio(self, job: TransformJob) -> TransformResult:
        return self._encode(job, self._info(job), remove_audio=True, allow_larger=True)
