"""Tests for the command-line builders and helpers in squish.external_engines."""

from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import wait_for, write_script

from squish.asset_types import PDF, Image, RemoteURL, Unknown, Video
from squish.capability_registry import supports, transformer_for
from squish.config import EngineConfig
from squish.errors import ResultNotSmaller, ToolLaunchFailed, UnsupportedType
from squish.external_engines import ImageTransformer, PDFTransformer, VideoTransformer
from squish.external_engines.common import binary_for, ensure_smaller, even, pick_smaller, scaled_size
from squish.external_engines.images import (
    center_crop_box,
    gifsicle_args,
    jpegoptim_args,
    pngquant_args,
    vipsthumbnail_args,
)
from squish.external_engines.pdf import MIN_DPI, ghostscript_args
from squish.external_engines.video import atempo_chain, ffmpeg_args
from squish.process_runner import ToolRunner
from squish.progress import FFMPEG_GRAMMAR
from squish.tool_interfaces import TransformJob, TransformResult

IN = Path("/in/photo.png")
OUT = Path("/out/photo.png")


def result_file(tmp_path: Path, name: str, size: int) -> TransformResult:
    path = tmp_path / name
    path.write_bytes(b"x" * size)
    return TransformResult(path=path, bytes=size, type=Image("png"))


@pytest.mark.fast
class TestImageArgs:
    def test_pngquant_default(self):
        args = pngquant_args(IN, OUT, aggressive=False)

        assert args[:2] == ["--strip", "--force"]
        assert args[args.index("--quality") + 1] == "0-100"
        assert args[-4:] == ["--output", str(OUT), "--", str(IN)]

    def test_pngquant_aggressive_lowers_quality(self):
        args = pngquant_args(IN, OUT, aggressive=True, strip=False)

        assert "--strip" not in args
        assert args[args.index("--quality") + 1] == "0-90"
        assert args[args.index("--speed") + 1] == "1"

    def test_jpegoptim(self):
        args = jpegoptim_args(Path("/in/a.jpg"), Path("/scratch"), aggressive=True)

        assert "--strip-all" in args
        assert args[args.index("--max") + 1] == "70"
        assert args[-3:] == ["--dest", "/scratch", "/in/a.jpg"]

    def test_gifsicle_geometry(self):
        args = gifsicle_args(Path("a.gif"), Path("b.gif"), aggressive=False, crop=(10, 0, 80, 80), resize=(40, 40))

        assert "--crop=10,0+80x80" in args
        assert "--resize=40x40" in args
        assert args[-3:] == ["-o", "b.gif", "a.gif"]

    def test_vipsthumbnail_smartcrop(self):
        args = vipsthumbnail_args(IN, OUT, (100, 50), smartcrop=True)

        assert args[:3] == [str(IN), "-s", "100x50"]
        assert "--smartcrop" in args

    def test_vipsthumbnail_exact_size(self):
        args = vipsthumbnail_args(IN, OUT, (100, 50), smartcrop=False)

        assert "100x50!" in args
        assert "--smartcrop" not in args

    @pytest.mark.parametrize(
        "size, target, expected",
        [
            ((200, 100), (50, 50), (50, 0, 100, 100)),
            ((100, 200), (50, 50), (0, 50, 100, 100)),
            ((300, 200), (3, 2), (0, 0, 300, 200)),
        ],
    )
    def test_center_crop_box(self, size, target, expected):
        assert center_crop_box(size, target) == expected


@pytest.mark.fast
class TestVideoArgs:
    @pytest.mark.parametrize(
        "factor, expected",
        [
            (1.5, "atempo=1.5"),
            (4, "atempo=2.0,atempo=2"),
            (0.25, "atempo=0.5,atempo=0.5"),
        ],
    )
    def test_atempo_chain(self, factor, expected):
        assert atempo_chain(factor) == expected

    def test_atempo_rejects_non_positive(self):
        with pytest.raises(ValueError):
            atempo_chain(0)

    def test_default_encode(self):
        args = ffmpeg_args(Path("in.mov"), Path("out.mp4"), aggressive=False)

        assert args[args.index("-i") + 1] == "in.mov"
        assert "-progress" in args
        assert "-crf" not in args
        assert "-vf" not in args
        assert args[-1] == "out.mp4"

    def test_scale_uses_even_dimensions(self):
        args = ffmpeg_args(Path("in.mov"), Path("out.mp4"), aggressive=True, scale=(641, 361))

        assert args[args.index("-vf") + 1] == "scale=640:360"
        assert args[args.index("-crf") + 1] == "26"

    def test_crop_then_scale(self):
        args = ffmpeg_args(Path("in.mov"), Path("out.mp4"), aggressive=False, crop=(100, 100))

        filters = args[args.index("-vf") + 1]
        assert filters.startswith("crop=")
        assert filters.endswith("scale=100:100")

    def test_speed_adjusts_audio(self):
        args = ffmpeg_args(Path("in.mov"), Path("out.mp4"), aggressive=False, speed=2)

        assert "setpts=PTS/2" in args[args.index("-vf") + 1]
        assert args[args.index("-af") + 1] == "atempo=2"

    def test_remove_audio_wins_over_atempo(self):
        args = ffmpeg_args(Path("in.mov"), Path("out.mp4"), aggressive=False, speed=2, remove_audio=True)

        assert "-an" in args
        assert "-af" not in args

    def test_fps_cap(self):
        args = ffmpeg_args(Path("in.mov"), Path("out.mp4"), aggressive=False, max_fps=30)

        assert args[args.index("-fpsmax") + 1] == "30"


@pytest.mark.fast
class TestPdfArgs:
    def test_lossless_profile(self):
        args = ghostscript_args(Path("in.pdf"), Path("out.pdf"), aggressive=False)

        assert "-sDEVICE=pdfwrite" in args
        assert "-dPDFSETTINGS=/default" in args
        assert args[-2:] == ["-sOutputFile=out.pdf", "in.pdf"]

    def test_lossy_profile(self):
        args = ghostscript_args(Path("in.pdf"), Path("out.pdf"), aggressive=True)

        assert "-dPDFSETTINGS=/ebook" in args

    def test_dpi(self):
        args = ghostscript_args(Path("in.pdf"), Path("out.pdf"), aggressive=False, dpi=75)

        assert "-dColorImageResolution=75" in args
        assert f"-dMonoImageResolution={max(150, MIN_DPI)}" in args

    def test_fit_to_page(self):
        args = ghostscript_args(Path("in.pdf"), Path("out.pdf"), aggressive=False, fit_to=(595, 842))

        assert "-dFIXEDMEDIA" in args
        assert "-dDEVICEWIDTHPOINTS=595" in args
        assert "-dDEVICEHEIGHTPOINTS=842" in args


@pytest.mark.fast
class TestCommon:
    def test_pick_smaller_needs_margin(self, tmp_path):
        """Test that the alternative must win by more than the margin."""
        primary = result_file(tmp_path, "primary.png", 1000)
        close = result_file(tmp_path, "close.jpg", 950)

        assert pick_smaller(primary, close, margin=100) is primary
        assert not close.path.exists()

    def test_pick_smaller_switches(self, tmp_path):
        primary = result_file(tmp_path, "primary.png", 1000)
        much_smaller = result_file(tmp_path, "small.jpg", 100)

        assert pick_smaller(primary, much_smaller, margin=100) is much_smaller
        assert not primary.path.exists()

    def test_pick_smaller_without_alternative(self, tmp_path):
        primary = result_file(tmp_path, "primary.png", 1000)

        assert pick_smaller(primary, None) is primary

    def test_ensure_smaller(self, tmp_path):
        result = result_file(tmp_path, "out.png", 500)

        assert ensure_smaller(1000, result, allow_larger=False) is result

    def test_ensure_smaller_rejects_equal(self, tmp_path):
        result = result_file(tmp_path, "out.png", 1000)

        with pytest.raises(ResultNotSmaller, match="not smaller"):
            ensure_smaller(1000, result, allow_larger=False)
        assert not result.path.exists()

    def test_allow_larger(self, tmp_path):
        result = result_file(tmp_path, "out.png", 2000)

        assert ensure_smaller(1000, result, allow_larger=True) is result

    @pytest.mark.parametrize("value, expected", [(7, 6), (8, 8), (1, 2), (0.5, 2), (641.9, 640)])
    def test_even(self, value, expected):
        assert even(value) == expected

    def test_scaled_size(self):
        assert scaled_size((1920, 1080), 0.5) == (960, 540)
        assert scaled_size((3, 3), 0.1) == (1, 1)

    @patch("squish.system_tools._which", return_value=None)
    def test_binary_for_missing_tool(self, mock_which, tmp_path, settings):
        """Test that a missing compressor surfaces as ToolLaunchFailed."""
        job = TransformJob(
            asset_id="a.png",
            input_path=tmp_path / "a.png",
            type=Image("png"),
            scratch_dir=tmp_path,
            runner=ToolRunner(settings),
            engine_config=EngineConfig(PNGQUANT_PATH="definitely-not-installed-pngquant"),
            settings=settings,
        )

        with pytest.raises(ToolLaunchFailed, match="not installed"):
            binary_for("pngquant", job)


class TestTransformJob:
    def test_progress_survives_a_retry(self, tmp_path, settings):
        """Test that a failed attempt does not move reported progress backwards."""
        counter = tmp_path / "attempts"
        ffmpeg = write_script(
            tmp_path / "ffmpeg",
            f'n=$(cat "{counter}" 2>/dev/null || echo 0)\n'
            'n=$((n + 1))\n'
            f'echo $n > "{counter}"\n'
            'echo "  Duration: 00:00:10.00, start: 0.000000" >&2\n'
            'if [ "$n" -eq 1 ]; then\n'
            '  echo "out_time_us=8000000" >&2\n'
            '  sleep 0.3\n'
            '  exit 1\n'
            'fi\n'
            'sleep 0.3\n'
            'echo "out_time_us=2000000" >&2\n'
            'sleep 0.3\n'
            'echo "out_time_us=9000000" >&2\n',
        )
        updates = []
        job = TransformJob(
            asset_id="clip.mp4",
            input_path=tmp_path / "clip.mp4",
            type=Video("mp4"),
            scratch_dir=tmp_path / "scratch",
            runner=ToolRunner(settings),
            settings=settings,
            report_progress=updates.append,
        )

        result = job.run_tool(str(ffmpeg), [], grammar=FFMPEG_GRAMMAR)

        assert result.attempts == 2
        assert wait_for(lambda: bool(updates) and updates[-1].completed_units == 9_000_000)
        completed = [p.completed_units for p in updates]
        assert completed == sorted(completed)
        assert 2_000_000 not in completed


class TestCapabilities:
    def test_dispatch(self):
        assert isinstance(transformer_for(Image("png")), ImageTransformer)
        assert isinstance(transformer_for(Video("mp4")), VideoTransformer)
        assert isinstance(transformer_for(PDF()), PDFTransformer)

    @pytest.mark.parametrize("asset_type", [RemoteURL("https://example.com/a.png"), Unknown()])
    def test_no_transformer(self, asset_type):
        with pytest.raises(UnsupportedType):
            transformer_for(asset_type)

    def test_video_only_operations(self):
        assert supports(Video("mov"), "change_speed")
        assert supports(Video("mov"), "remove_audio")
        assert not supports(Image("png"), "change_speed")
        assert not supports(PDF(), "remove_audio")
        assert supports(PDF(), "crop")
        assert not supports(Unknown(), "optimise")

    def test_unsupported_operation_on_transformer(self, tmp_path, settings):
        job = TransformJob(
            asset_id="a.png",
            input_path=tmp_path / "a.png",
            type=Image("png"),
            scratch_dir=tmp_path,
            runner=ToolRunner(settings),
            settings=settings,
        )

        with pytest.raises(UnsupportedType, match="change speed"):
            ImageTransformer().change_speed(job, 2.0)


class TestImageTransformer:
    """End-to-end through the image transformer with stand-in compressors."""

    def _job(self, tmp_path, settings, engine_config, input_path, **kwargs):
        return TransformJob(
            asset_id=str(input_path),
            input_path=input_path,
            type=Image("png"),
            scratch_dir=tmp_path / "scratch",
            runner=ToolRunner(settings),
            engine_config=engine_config,
            settings=settings,
            **kwargs,
        )

    def test_optimise_png(self, tmp_path, settings, engine_config, noisy_png):
        job = self._job(tmp_path, settings, engine_config, noisy_png)

        result = ImageTransformer().optimise(job)

        assert result.path.is_relative_to(tmp_path / "scratch")
        assert result.bytes < noisy_png.stat().st_size
        assert result.size == (4, 4)
        assert result.type == Image("png")
        assert not result.converted

    def test_deterministic_pngquant_exit_is_not_smaller(self, tmp_path, settings, fake_tools, noisy_png):
        """Test that pngquant's quality exit maps to ResultNotSmaller without retries."""
        config = EngineConfig(PNGQUANT_PATH=str(fake_tools["tools"]["stubborn_pngquant"]))
        job = self._job(tmp_path, settings, config, noisy_png)

        with pytest.raises(ResultNotSmaller):
            ImageTransformer().optimise(job)

        log = fake_tools["logs"]["stubborn_pngquant"]
        assert len(log.read_text().splitlines()) == 1

    def test_downscale_resizes_then_quantises(self, tmp_path, settings, engine_config, fake_tools, noisy_png):
        job = self._job(tmp_path, settings, engine_config, noisy_png, current_size=(200, 200))

        result = ImageTransformer().downscale(job, 0.5)

        assert result.type == Image("png")
        assert len(fake_tools["logs"]["vipsthumbnail"].read_text().splitlines()) == 1
        assert len(fake_tools["logs"]["pngquant"].read_text().splitlines()) == 1

    def test_downscale_rejects_bad_factor(self, tmp_path, settings, engine_config, noisy_png):
        job = self._job(tmp_path, settings, engine_config, noisy_png)

        with pytest.raises(ValueError):
            ImageTransformer().downscale(job, 1.5)
