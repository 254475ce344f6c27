"""Tests for squish.downloads module."""

import threading
from unittest.mock import MagicMock

import pytest
import requests

from squish.asset_types import PDF, Image
from squish.downloads import download, filename_for
from squish.errors import Cancelled, DownloadFailed


def fake_session(chunks=(b"abc", b"def"), headers=None, error=None):
    response = MagicMock()
    response.headers = {"Content-Type": "image/png", **(headers or {})}
    response.iter_content.return_value = iter(chunks)
    session = MagicMock()
    if error is not None:
        session.get.side_effect = error
    else:
        session.get.return_value = response
    return session


@pytest.mark.fast
class TestFilenameFor:
    @pytest.mark.parametrize(
        "url, disposition, expected",
        [
            ("https://x.test/img/cat.png", None, "cat.png"),
            ("https://x.test/img/my%20cat.png?w=200", None, "my cat.png"),
            ("https://x.test/", None, "download"),
            ("https://x.test/get?id=3", 'attachment; filename="report.pdf"', "report.pdf"),
            ("https://x.test/get", "attachment; filename*=UTF-8''na%C3%AFve.jpg", "naïve.jpg"),
            ("https://x.test/a.png", 'attachment; filename="../../etc/passwd"', "passwd"),
        ],
    )
    def test_filename_for(self, url, disposition, expected):
        assert filename_for(url, disposition) == expected


class TestDownload:
    def test_success(self, tmp_path):
        session = fake_session()

        path, asset_type = download("https://x.test/cat.png", tmp_path, session=session)

        assert path.read_bytes() == b"abcdef"
        assert path.name == "cat.png"
        assert path.parent.parent == tmp_path
        assert asset_type == Image("png")
        session.get.assert_called_once_with("https://x.test/cat.png", stream=True, timeout=30.0)

    def test_content_type_wins_over_extension(self, tmp_path):
        session = fake_session(headers={"Content-Type": "application/pdf"})

        path, asset_type = download("https://x.test/paper.png", tmp_path, session=session)

        assert asset_type == PDF()

    def test_extension_added_from_content_type(self, tmp_path):
        session = fake_session(headers={"Content-Type": "image/jpeg"})

        path, _ = download("https://x.test/photo", tmp_path, session=session)

        assert path.name == "photo.jpg"

    def test_html_is_rejected(self, tmp_path):
        session = fake_session(headers={"Content-Type": "text/html; charset=utf-8"})

        with pytest.raises(DownloadFailed, match="not an image, video or PDF"):
            download("https://x.test/page", tmp_path, session=session)

    def test_network_error(self, tmp_path):
        session = fake_session(error=requests.ConnectionError("refused"))

        with pytest.raises(DownloadFailed, match="refused"):
            download("https://x.test/cat.png", tmp_path, session=session)

    def test_http_error(self, tmp_path):
        session = fake_session()
        session.get.return_value.raise_for_status.side_effect = requests.HTTPError("404 Not Found")

        with pytest.raises(DownloadFailed, match="404"):
            download("https://x.test/cat.png", tmp_path, session=session)

    def test_cancelled_removes_partial_file(self, tmp_path):
        cancelled = threading.Event()
        cancelled.set()

        with pytest.raises(Cancelled):
            download("https://x.test/cat.png", tmp_path, session=fake_session(), cancelled=cancelled)

        assert list(tmp_path.rglob("*.png")) == []

    def test_progress(self, tmp_path):
        updates = []
        session = fake_session(headers={"Content-Length": "6"})

        download("https://x.test/cat.png", tmp_path, session=session, on_progress=updates.append)

        assert [(p.completed_units, p.total_units) for p in updates] == [(3, 6), (6, 6)]
        assert updates[-1].fraction == 1.0

    def test_progress_without_length(self, tmp_path):
        updates = []

        download("https://x.test/cat.png", tmp_path, session=fake_session(), on_progress=updates.append)

        assert all(p.indeterminate for p in updates)
