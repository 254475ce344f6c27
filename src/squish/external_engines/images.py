from __future__ import annotations

"""Image transforms: pngquant, jpegoptim, gifsicle and vipsthumbnail.

Formats the compressors do not understand (TIFF, WebP, HEIC, BMP, ...) are
converted to PNG with Pillow first and then go through the PNG chain.
"""

import logging
import math
from pathlib import Path

from PIL import Image

from ..asset_types import Image as ImageType
from ..asset_types import unsupported
from ..errors import ResultNotSmaller, ToolExitedNonZero
from ..meta import has_transparency, image_size
from ..tool_interfaces import Transformer, TransformJob, TransformResult
from .common import binary_for, ensure_smaller, make_result, pick_smaller, scaled_size

__all__ = [
    "ImageTransformer",
    "gifsicle_args",
    "jpegoptim_args",
    "pngquant_args",
    "vipsthumbnail_args",
]

logger = logging.getLogger(__name__)

#: pngquant exit codes that will not change on retry (quality too low, not smaller)
PNGQUANT_DETERMINISTIC_EXITS = frozenset({98, 99})

#: Pillow quality used when a PNG is re-encoded as JPEG for adaptive sizing
_ADAPTIVE_JPEG_QUALITY = {False: 90, True: 70}


# ---------------------------------------------------------------------------
# Argument profiles
# ---------------------------------------------------------------------------


def pngquant_args(input_path: Path, output_path: Path, *, aggressive: bool, strip: bool = True) -> list[str]:
    args = ["--force"]
    if strip:
        args.insert(0, "--strip")
    if aggressive:
        args += ["--speed", "1", "--quality", "0-90"]
    else:
        args += ["--speed", "3", "--quality", "0-100"]
    return [*args, "--output", str(output_path), "--", str(input_path)]


def jpegoptim_args(input_path: Path, dest_dir: Path, *, aggressive: bool, strip: bool = True) -> list[str]:
    args = ["--strip-all"] if strip else []
    args += ["--force", "--max", "70" if aggressive else "90", "--all-progressive"]
    return [*args, "--dest", str(dest_dir), str(input_path)]


def gifsicle_args(
    input_path: Path,
    output_path: Path,
    *,
    aggressive: bool,
    resize: tuple[int, int] | None = None,
    crop: tuple[int, int, int, int] | None = None,
) -> list[str]:
    if aggressive:
        args = ["-O3", "--lossy=80", "--colors=256"]
    else:
        args = ["-O2", "--lossy=30"]
    if crop is not None:
        x, y, w, h = crop
        args.append(f"--crop={x},{y}+{w}x{h}")
    if resize is not None:
        args.append(f"--resize={resize[0]}x{resize[1]}")
    return [*args, "-o", str(output_path), str(input_path)]


def vipsthumbnail_args(input_path: Path, output_path: Path, size: tuple[int, int], *, smartcrop: bool) -> list[str]:
    if smartcrop:
        args = [str(input_path), "-s", f"{size[0]}x{size[1]}", "--linear", "--smartcrop", "attention"]
    else:
        args = [str(input_path), "-s", f"{size[0]}x{size[1]}!", "--linear"]
    return [*args, "-o", str(output_path)]


def center_crop_box(size: tuple[int, int], target: tuple[int, int]) -> tuple[int, int, int, int]:
    """Largest box with *target*'s aspect ratio centred in *size*: (x, y, w, h)."""
    width, height = size
    tw, th = target
    if width * th > height * tw:
        w, h = math.floor(height * tw / th), height
    else:
        w, h = width, math.floor(width * th / tw)
    return ((width - w) // 2, (height - h) // 2, max(w, 1), max(h, 1))


# ---------------------------------------------------------------------------
# Transformer
# ---------------------------------------------------------------------------


class ImageTransformer(Transformer):
    NAME = "image"
    TOOLS = ("pngquant", "jpegoptim", "gifsicle", "vipsthumbnail")

    # -- single tool chains ------------------------------------------------

    def _pngquant(self, job: TransformJob, input_path: Path, aggressive: bool) -> TransformResult:
        output = job.scratch_path("png", "pngquant")
        try:
            job.run_tool(
                binary_for("pngquant", job),
                pngquant_args(input_path, output, aggressive=aggressive, strip=job.settings.STRIP_METADATA),
                no_retry_exit_codes=PNGQUANT_DETERMINISTIC_EXITS,
            )
        except ToolExitedNonZero as e:
            if e.returncode in PNGQUANT_DETERMINISTIC_EXITS:
                size = input_path.stat().st_size
                raise ResultNotSmaller(job.input_path, size, size) from e
            raise
        return make_result(output, ImageType("png"), size=image_size(output))

    def _jpegoptim(self, job: TransformJob, input_path: Path, aggressive: bool) -> TransformResult:
        dest = job.scratch_path("d", "jpegoptim")
        dest.mkdir(parents=True)
        job.run_tool(
            binary_for("jpegoptim", job),
            jpegoptim_args(input_path, dest, aggressive=aggressive, strip=job.settings.STRIP_METADATA),
        )
        output = dest / input_path.name
        return make_result(output, ImageType("jpeg"), size=image_size(output))

    def _gifsicle(self, job: TransformJob, input_path: Path, aggressive: bool, **geometry) -> TransformResult:
        output = job.scratch_path("gif", "gifsicle")
        job.run_tool(binary_for("gifsicle", job), gifsicle_args(input_path, output, aggressive=aggressive, **geometry))
        return make_result(output, ImageType("gif"), size=image_size(output))

    def _convert(self, job: TransformJob, input_path: Path, subformat: str) -> Path:
        """Re-encode *input_path* with Pillow as PNG or JPEG in scratch space."""
        suffix = "jpg" if subformat == "jpeg" else subformat
        output = job.scratch_path(suffix, f"to-{subformat}")
        with Image.open(input_path) as img:
            if subformat == "jpeg":
                img = img.convert("RGB")
                img.save(output, "JPEG", quality=_ADAPTIVE_JPEG_QUALITY[job.aggressive], optimize=True)
            else:
                if img.mode not in ("RGB", "RGBA", "L", "LA", "P"):
                    img = img.convert("RGBA")
                img.save(output, "PNG")
        return output

    # -- public API ------------------------------------------------------------

    def optimise(self, job: TransformJob) -> TransformResult:
        match job.type:
            case ImageType(subformat="png"):
                result = self._optimise_png(job, job.input_path)
            case ImageType(subformat="jpeg"):
                result = self._optimise_jpeg(job, job.input_path)
            case ImageType(subformat="gif"):
                result = self._gifsicle(job, job.input_path, job.aggressive)
            case ImageType():
                converted = self._convert(job, job.input_path, "png")
                result = self._optimise_png(job, converted)
                result = TransformResult(
                    path=result.path,
                    bytes=result.bytes,
                    type=result.type,
                    size=result.size,
                    converted_from=job.input_path,
                )
            case _:
                unsupported(job.type)
        return ensure_smaller(job.input_path.stat().st_size, result, job.allow_larger, job.input_path)

    def _optimise_png(self, job: TransformJob, input_path: Path) -> TransformResult:
        if not (job.adaptive and not has_transparency(input_path)):
            return self._pngquant(job, input_path, job.aggressive)

        def _alternative() -> TransformResult:
            jpeg = self._convert(job, input_path, "jpeg")
            result = self._jpegoptim(job, jpeg, job.aggressive)
            return TransformResult(result.path, result.bytes, result.type, result.size, converted_from=job.input_path)

        primary, alternative = job.run_candidates([lambda: self._pngquant(job, input_path, job.aggressive), _alternative])
        return self._decide(job, primary, alternative)

    def _optimise_jpeg(self, job: TransformJob, input_path: Path) -> TransformResult:
        if not job.adaptive:
            return self._jpegoptim(job, input_path, job.aggressive)

        def _alternative() -> TransformResult:
            png = self._convert(job, input_path, "png")
            result = self._pngquant(job, png, job.aggressive)
            return TransformResult(result.path, result.bytes, result.type, result.size, converted_from=job.input_path)

        primary, alternative = job.run_candidates([lambda: self._jpegoptim(job, input_path, job.aggressive), _alternative])
        return self._decide(job, primary, alternative)

    def _decide(self, job: TransformJob, primary, alternative) -> TransformResult:
        if isinstance(primary, BaseException):
            if isinstance(alternative, TransformResult):
                alternative.path.unlink(missing_ok=True)
            raise primary
        if isinstance(alternative, BaseException):
            logger.debug("Adaptive candidate for %s failed: %s", job.asset_id, alternative)
            alternative = None
        chosen = pick_smaller(primary, alternative, job.settings.ADAPTIVE_SIZE_MARGIN_BYTES)
        if chosen is not primary:
            logger.info("🔀 %s: %s is smaller, converting", job.asset_id, chosen.type.subformat)
        return chosen

    def downscale(self, job: TransformJob, factor: float) -> TransformResult:
        if not 0 < factor <= 1:
            raise ValueError("factor must be in (0, 1]")
        size = job.current_size or image_size(job.input_path)
        if size is None:
            raise RuntimeError(f"Cannot read the size of {job.input_path}")
        target = scaled_size(size, factor)

        match job.type:
            case ImageType(subformat="gif"):
                return self._gifsicle(job, job.input_path, job.aggressive, resize=target)
            case ImageType():
                return self._resize_then_optimise(job, target, smartcrop=False)
            case _:
                unsupported(job.type, "downscale")

    def crop(self, job: TransformJob, size: tuple[int, int]) -> TransformResult:
        current = job.current_size or image_size(job.input_path)
        if current is None:
            raise RuntimeError(f"Cannot read the size of {job.input_path}")

        match job.type:
            case ImageType(subformat="gif"):
                box = center_crop_box(current, size)
                return self._gifsicle(job, job.input_path, job.aggressive, crop=box, resize=size)
            case ImageType():
                return self._resize_then_optimise(job, size, smartcrop=True)
            case _:
                unsupported(job.type, "crop")

    def _resize_then_optimise(self, job: TransformJob, size: tuple[int, int], *, smartcrop: bool) -> TransformResult:
        subformat = job.type.subformat
        suffix = subformat if subformat in ("png", "jpeg") else "png"
        resized = job.scratch_path("jpg" if suffix == "jpeg" else suffix, "resized")
        job.run_tool(binary_for("vipsthumbnail", job), vipsthumbnail_args(job.input_path, resized, size, smartcrop=smartcrop))

        if suffix == "jpeg":
            result = self._jpegoptim(job, resized, job.aggressive)
        else:
            result = self._pngquant(job, resized, job.aggressive)
        converted_from = job.input_path if suffix != subformat else None
        return TransformResult(result.path, result.bytes, result.type, image_size(result.path), converted_from)
