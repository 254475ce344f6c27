"""Tests for squish.asset_types and squish.errors."""

import pytest

from squish.asset_types import (
    PDF,
    Image,
    RemoteURL,
    Unknown,
    Video,
    asset_type_for,
    asset_type_from_mime,
    asset_type_from_path,
    can_change_speed,
    describe,
    is_remote,
    kind_of,
    normalise_extension,
)
from squish.errors import (
    AlreadyOptimised,
    Cancelled,
    ResultNotSmaller,
    SourceNotFound,
    ToolTimedOut,
    UnsupportedType,
    human_summary,
    is_notice,
)


@pytest.mark.fast
class TestFromPath:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("shot.png", Image("png")),
            ("photo.JPG", Image("jpeg")),
            ("scan.tif", Image("tiff")),
            ("icon@2x.png", Image("png")),
            ("clip.mov", Video("mov")),
            ("movie.qt", Video("mov")),
            ("recording.webm", Video("webm")),
            ("paper.pdf", PDF()),
            ("notes.txt", Unknown()),
            ("no-extension", Unknown()),
        ],
    )
    def test_asset_type_from_path(self, name, expected):
        assert asset_type_from_path(name) == expected

    def test_normalise_extension(self):
        assert normalise_extension(".JPEG") == "jpeg"
        assert normalise_extension("png@3x") == "png"
        assert normalise_extension("jpe") == "jpeg"

    def test_extension(self):
        assert Image("jpeg").extension == "jpg"
        assert Video("mp4").extension == "mp4"
        assert PDF().extension == "pdf"


@pytest.mark.fast
class TestFromMime:
    @pytest.mark.parametrize(
        "mime, expected",
        [
            ("image/png", Image("png")),
            ("image/jpeg; charset=binary", Image("jpeg")),
            ("video/quicktime", Video("mov")),
            ("application/pdf", PDF()),
            ("text/html; charset=utf-8", RemoteURL()),
            ("application/zip", Unknown()),
        ],
    )
    def test_asset_type_from_mime(self, mime, expected):
        assert asset_type_from_mime(mime) == expected


class TestClassification:
    def test_remote(self):
        assert is_remote("https://example.com/a.png")
        assert is_remote("http://example.com/a.png")
        assert not is_remote("/Users/me/a.png")
        assert asset_type_for("https://example.com/a.png") == RemoteURL("https://example.com/a.png")

    def test_local_string_uses_extension(self):
        assert asset_type_for("/tmp/a.gif") == Image("gif")

    def test_kind_of(self):
        assert kind_of(Image("png")) == "image"
        assert kind_of(Video("mp4")) == "video"
        assert kind_of(PDF()) == "pdf"

    @pytest.mark.parametrize("asset_type", [Unknown(), RemoteURL("https://example.com")])
    def test_kind_of_unschedulable(self, asset_type):
        with pytest.raises(UnsupportedType, match="Cannot schedule"):
            kind_of(asset_type)

    def test_capabilities(self):
        assert can_change_speed(Video("mp4"))
        assert not can_change_speed(Image("gif"))

    def test_describe(self):
        assert describe(Image("png")) == "image (png)"
        assert describe(RemoteURL("https://x.test/a")) == "url (https://x.test/a)"
        assert describe(Unknown()) == "unknown"


class TestErrors:
    """Tests for the notice / error split and the short summaries."""

    @pytest.mark.parametrize(
        "error",
        [AlreadyOptimised("/a.png", 10), ResultNotSmaller("/a.png", 10, 12), Cancelled("pngquant", 42)],
    )
    def test_notices(self, error):
        assert is_notice(error)

    def test_failures_are_not_notices(self):
        assert not is_notice(SourceNotFound("/a.png"))
        assert not is_notice(ValueError("boom"))

    def test_human_summary(self):
        assert human_summary(SourceNotFound("/a.png")) == "File not found"
        assert human_summary(FileNotFoundError("/a.png")) == "File not found"
        assert human_summary(ToolTimedOut("ffmpeg", [], 60)) == "Compressor timed out"
        assert human_summary(RuntimeError("anything")) == "Optimisation failed"

    def test_timed_out_message(self):
        error = ToolTimedOut("/usr/bin/ffmpeg", ["-i", "a.mov"], 60)

        assert str(error) == "ffmpeg timed out after 60s"
        assert error.command_line == "/usr/bin/ffmpeg -i a.mov"
