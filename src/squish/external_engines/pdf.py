from __future__ import annotations

import logging
from pathlib import Path

from ..asset_types import PDF
from ..meta import pdf_page_count, pdf_page_size
from ..progress import GHOSTSCRIPT_GRAMMAR
from ..tool_interfaces import Transformer, TransformJob, TransformResult
from .common import binary_for, ensure_smaller, make_result

__all__ = [
    "LOSSLESS_PROFILE",
    "LOSSY_PROFILE",
    "PDFTransformer",
    "ghostscript_args",
]

logger = logging.getLogger(__name__)

_BASE_ARGS = [
    "-sDEVICE=pdfwrite",
    "-dNOPAUSE",
    "-dBATCH",
    "-dSAFER",
    "-dCompatibilityLevel=1.5",
    "-dDetectDuplicateImages=true",
    "-dCompressFonts=true",
    "-dSubsetFonts=true",
]

LOSSLESS_PROFILE = [
    "-dPDFSETTINGS=/default",
    "-dPassThroughJPEGImages=true",
    "-dDownsampleColorImages=false",
    "-dDownsampleGrayImages=false",
    "-dDownsampleMonoImages=false",
]

LOSSY_PROFILE = [
    "-dPDFSETTINGS=/ebook",
    "-dDownsampleColorImages=true",
    "-dDownsampleGrayImages=true",
    "-dColorImageResolution=150",
    "-dGrayImageResolution=150",
    "-dMonoImageResolution=300",
]

#: Image resolution the lossy profile targets; downscale multiplies it
BASE_DPI = 150
MIN_DPI = 36


def ghostscript_args(
    input_path: Path,
    output_path: Path,
    *,
    aggressive: bool,
    dpi: int | None = None,
    fit_to: tuple[int, int] | None = None,
) -> list[str]:
    """Build a ghostscript ``pdfwrite`` command line.

    *dpi* forces image downsampling to that resolution; *fit_to* fixes the
    media size (in points) and fits every page into it.
    """
    args = list(_BASE_ARGS)
    if dpi is not None:
        args += [
            "-dPDFSETTINGS=/ebook",
            "-dDownsampleColorImages=true",
            "-dDownsampleGrayImages=true",
            "-dDownsampleMonoImages=true",
            "-dColorImageDownsampleThreshold=1.0",
            "-dGrayImageDownsampleThreshold=1.0",
            f"-dColorImageResolution={dpi}",
            f"-dGrayImageResolution={dpi}",
            f"-dMonoImageResolution={max(dpi * 2, MIN_DPI)}",
        ]
    else:
        args += LOSSY_PROFILE if aggressive else LOSSLESS_PROFILE

    if fit_to is not None:
        width, height = fit_to
        args += [
            "-dFIXEDMEDIA",
            "-dPDFFitPage",
            f"-dDEVICEWIDTHPOINTS={width}",
            f"-dDEVICEHEIGHTPOINTS={height}",
        ]
    return [*args, f"-sOutputFile={output_path}", str(input_path)]


class PDFTransformer(Transformer):
    NAME = "pdf"
    TOOLS = ("ghostscript",)

    def _distill(self, job: TransformJob, *, allow_larger: bool | None = None, **options) -> TransformResult:
        output = job.scratch_path("pdf", "gs")
        job.run_tool(
            binary_for("ghostscript", job),
            ghostscript_args(job.input_path, output, aggressive=job.aggressive, **options),
            grammar=GHOSTSCRIPT_GRAMMAR,
            total=pdf_page_count(job.input_path),
        )
        result = make_result(output, PDF(), size=pdf_page_size(output))
        allow = job.allow_larger if allow_larger is None else allow_larger
        return ensure_smaller(job.input_path.stat().st_size, result, allow, job.input_path)

    def optimise(self, job: TransformJob) -> TransformResult:
        return self._distill(job)

    def downscale(self, job: TransformJob, factor: float) -> TransformResult:
        if not 0 < factor <= 1:
            raise ValueError("factor must be in (0, 1]")
        dpi = max(int(BASE_DPI * factor), MIN_DPI)
        logger.debug("Downsampling images in %s to %d dpi", job.input_path, dpi)
        return self._distill(job, dpi=dpi, allow_larger=True)

    def crop(self, job: TransformJob, size: tuple[int, int]) -> TransformResult:
        return self._distill(job, fit_to=size, allow_larger=True)
