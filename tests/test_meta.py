"""Tests for squish.meta module."""

import hashlib
import json
from unittest.mock import patch

import pikepdf
import pytest
from PIL import Image

from squish.asset_types import PDF, Video
from squish.asset_types import Image as ImageType
from squish.meta import (
    compute_file_sha256,
    has_transparency,
    image_size,
    make_thumbnail,
    media_size,
    parse_ffprobe_json,
    pdf_page_count,
    pdf_page_size,
)


@pytest.fixture
def two_page_pdf(tmp_path):
    path = tmp_path / "doc.pdf"
    pdf = pikepdf.new()
    pdf.add_blank_page(page_size=(595, 842))
    pdf.add_blank_page(page_size=(595, 842))
    pdf.save(path)
    return path


def ffprobe_payload(**video_overrides) -> str:
    video = {
        "codec_type": "video",
        "width": 1920,
        "height": 1080,
        "avg_frame_rate": "30000/1001",
        "duration": "12.5",
    }
    video.update(video_overrides)
    return json.dumps(
        {
            "streams": [video, {"codec_type": "audio"}],
            "format": {"duration": "13.0"},
        }
    )


@pytest.mark.fast
class TestParseFfprobeJson:
    def test_video_with_audio(self):
        info = parse_ffprobe_json(ffprobe_payload())

        assert info.size == (1920, 1080)
        assert info.duration_us == 12_500_000
        assert info.fps == pytest.approx(29.97, abs=0.01)
        assert info.has_audio

    def test_duration_falls_back_to_format(self):
        info = parse_ffprobe_json(ffprobe_payload(duration=None))

        assert info.duration_us == 13_000_000

    def test_zero_rate_falls_back_to_r_frame_rate(self):
        info = parse_ffprobe_json(ffprobe_payload(avg_frame_rate="0/0", r_frame_rate="25/1"))

        assert info.fps == 25.0

    def test_no_video_stream(self):
        assert parse_ffprobe_json(json.dumps({"streams": [{"codec_type": "audio"}]})) is None

    def test_garbage(self):
        assert parse_ffprobe_json("not json") is None


@pytest.mark.fast
class TestImages:
    def test_image_size(self, noisy_png):
        assert image_size(noisy_png) == (200, 200)

    def test_image_size_of_non_image(self, tmp_path):
        path = tmp_path / "fake.png"
        path.write_text("definitely not a png")

        assert image_size(path) is None

    def test_transparency(self, transparent_png, noisy_png):
        assert has_transparency(transparent_png)
        assert not has_transparency(noisy_png)

    def test_opaque_alpha_channel(self, tmp_path):
        path = tmp_path / "opaque.png"
        Image.new("RGBA", (5, 5), (1, 2, 3, 255)).save(path)

        assert not has_transparency(path)

    def test_thumbnail(self, noisy_png, tmp_path):
        thumbnail = make_thumbnail(noisy_png, tmp_path / "thumbs" / "noise.png", 64)

        assert thumbnail == tmp_path / "thumbs" / "noise.png"
        assert image_size(thumbnail) == (64, 64)

    def test_thumbnail_of_non_image(self, tmp_path):
        path = tmp_path / "fake.png"
        path.write_text("definitely not a png")

        assert make_thumbnail(path, tmp_path / "thumb.png", 64) is None

    def test_sha256(self, noisy_png):
        assert compute_file_sha256(noisy_png) == hashlib.sha256(noisy_png.read_bytes()).hexdigest()


class TestPdf:
    def test_page_count_and_size(self, two_page_pdf):
        assert pdf_page_count(two_page_pdf) == 2
        assert pdf_page_size(two_page_pdf) == (595, 842)

    def test_broken_pdf(self, tmp_path):
        path = tmp_path / "broken.pdf"
        path.write_bytes(b"%PDF-1.4 nonsense")

        assert pdf_page_count(path) is None
        assert pdf_page_size(path) is None


class TestMediaSize:
    def test_image(self, noisy_png):
        assert media_size(noisy_png, ImageType("png")) == (200, 200)

    def test_pdf(self, two_page_pdf):
        assert media_size(two_page_pdf, PDF()) == (595, 842)

    def test_video_uses_ffprobe(self, tmp_path):
        from squish.meta import VideoInfo

        info = VideoInfo(width=640, height=360, duration_us=None, fps=None, has_audio=False)
        with patch("squish.meta.probe_video", return_value=info) as mock_probe:
            assert media_size(tmp_path / "clip.mp4", Video("mp4")) == (640, 360)
            mock_probe.assert_called_once()

    def test_video_without_ffprobe(self, tmp_path):
        with patch("squish.meta.probe_video", return_value=None):
            assert media_size(tmp_path / "clip.mp4", Video("mp4")) is None
