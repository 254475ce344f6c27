"""Metadata extraction and hashing for media files."""

from __future__ import annotations

import hashlib
import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pikepdf
from PIL import Image, UnidentifiedImageError

from .asset_types import PDF, AssetType
from .asset_types import Image as ImageType
from .asset_types import Video as VideoType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VideoInfo:
    """What ffprobe tells us about a video's first video stream."""

    width: int
    height: int
    duration_us: int | None
    fps: float | None
    has_audio: bool

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)


def compute_file_sha256(file_path: Path) -> str:
    """Compute SHA256 hash of a file.

    Args:
        file_path: Path to the file to hash

    Returns:
        Hexadecimal SHA256 hash string
    """
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        # Read file in chunks to handle large files
        for chunk in iter(lambda: f.read(65536), b""):
            sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


def file_size(path: Path) -> int:
    return Path(path).stat().st_size


def image_size(path: Path) -> tuple[int, int] | None:
    try:
        with Image.open(path) as img:
            return img.size
    except (OSError, UnidentifiedImageError) as e:
        logger.debug("Could not read image size of %s: %s", path, e)
        return None


def make_thumbnail(source: Path, destination: Path, max_side: int) -> Path | None:
    """Write a PNG preview of *source* no larger than *max_side* on either side."""
    try:
        with Image.open(source) as img:
            img.thumbnail((max_side, max_side))
            if img.mode not in ("RGB", "RGBA", "L", "LA", "P"):
                img = img.convert("RGBA")
            destination.parent.mkdir(parents=True, exist_ok=True)
            img.save(destination, "PNG")
    except (OSError, UnidentifiedImageError) as e:
        logger.debug("No thumbnail for %s: %s", source, e)
        return None
    return destination


def has_transparency(path: Path) -> bool:
    """Return True if the image has at least one non-opaque pixel."""
    try:
        with Image.open(path) as img:
            if img.mode == "P":
                return "transparency" in img.info
            if "A" not in img.getbands():
                return False
            alpha = np.asarray(img.getchannel("A"))
    except (OSError, UnidentifiedImageError):
        return False
    return bool(alpha.size) and int(alpha.min()) < 255


def _parse_rate(rate: str | None) -> float | None:
    if not rate or rate == "0/0":
        return None
    if "/" in rate:
        num, den = rate.split("/", 1)
        try:
            return float(num) / float(den) if float(den) else None
        except ValueError:
            return None
    try:
        return float(rate)
    except ValueError:
        return None


def parse_ffprobe_json(payload: str) -> VideoInfo | None:
    """Build :class:`VideoInfo` from ``ffprobe -show_streams -show_format`` JSON."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return None

    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        return None
    has_audio = any(s.get("codec_type") == "audio" for s in streams)

    duration = video.get("duration") or (data.get("format") or {}).get("duration")
    try:
        duration_us = int(float(duration) * 1_000_000) if duration else None
    except ValueError:
        duration_us = None

    return VideoInfo(
        width=int(video.get("width") or 0),
        height=int(video.get("height") or 0),
        duration_us=duration_us,
        fps=_parse_rate(video.get("avg_frame_rate")) or _parse_rate(video.get("r_frame_rate")),
        has_audio=has_audio,
    )


def probe_video(path: Path, engine_config=None) -> VideoInfo | None:
    """Run ffprobe on *path*; ``None`` if ffprobe is missing or fails."""
    if engine_config is None:
        from .config import DEFAULT_ENGINE_CONFIG

        engine_config = DEFAULT_ENGINE_CONFIG

    cmd = [
        engine_config.FFPROBE_PATH,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        str(path),
    ]
    try:
        completed = subprocess.run(cmd, capture_output=True, text=True, timeout=30)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("ffprobe failed for %s: %s", path, e)
        return None
    if completed.returncode != 0:
        logger.debug("ffprobe exited %d for %s: %s", completed.returncode, path, completed.stderr.strip())
        return None
    return parse_ffprobe_json(completed.stdout)


def pdf_page_count(path: Path) -> int | None:
    try:
        with pikepdf.open(path) as pdf:
            return len(pdf.pages)
    except (pikepdf.PdfError, OSError) as e:
        logger.debug("Could not count pages of %s: %s", path, e)
        return None


def pdf_page_size(path: Path) -> tuple[int, int] | None:
    """Size of the first page in points (from its MediaBox)."""
    try:
        with pikepdf.open(path) as pdf:
            if not pdf.pages:
                return None
            box = [float(v) for v in pdf.pages[0].mediabox]
    except (pikepdf.PdfError, OSError) as e:
        logger.debug("Could not read page size of %s: %s", path, e)
        return None
    return (round(box[2] - box[0]), round(box[3] - box[1]))


def media_size(path: Path, asset_type: AssetType, engine_config=None) -> tuple[int, int] | None:
    """Pixel size for images/videos, first page size in points for PDFs."""
    match asset_type:
        case ImageType():
            return image_size(path)
        case VideoType():
            info = probe_video(path, engine_config)
            return info.size if info else None
        case PDF():
            return pdf_page_size(path)
        case _:
            return None
