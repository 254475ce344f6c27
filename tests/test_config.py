"""Tests for squish.config module."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from squish.config import (
    DEFAULT_ENGINE_CONFIG,
    DEFAULT_QUEUE_CONFIG,
    DEFAULT_SETTINGS,
    EngineConfig,
    EngineSettings,
    QueueConfig,
)


class TestEngineSettings:
    """Tests for EngineSettings class."""

    def test_default_initialization(self):
        """Test that default values are set correctly."""
        settings = EngineSettings()

        assert settings.MAX_ATTEMPTS == 3
        assert settings.FS_EVENT_DEBOUNCE_MS == 500
        assert settings.REMOVE_FINISHED_AFTER_MS == 5000
        assert settings.REMOVE_FAILED_AFTER_MS == 2500
        assert settings.REMOVED_HISTORY_SIZE == 20
        assert settings.IPC_REQUEST_SOCKET == "optimisation-service.sock"

    def test_work_dir_layout(self, tmp_path):
        settings = EngineSettings(WORK_DIR=tmp_path)

        assert settings.backups_dir == tmp_path / "backups"
        assert settings.scratch_dir == tmp_path / "scratch"
        assert settings.process_dir == tmp_path / "proc"
        assert settings.sockets_dir == tmp_path / "ipc"
        assert settings.thumbnails_dir == tmp_path / "thumbnails"

    def test_work_dir_string_is_converted(self):
        assert EngineSettings(WORK_DIR="/tmp/elsewhere").WORK_DIR == Path("/tmp/elsewhere")

    def test_environment_overrides(self):
        """Test that environment variables override the defaults."""
        with patch.dict(os.environ, {"SQUISH_WORK_DIR": "/srv/squish", "SQUISH_MAX_ATTEMPTS": "5"}):
            settings = EngineSettings()

        assert settings.WORK_DIR == Path("/srv/squish")
        assert settings.MAX_ATTEMPTS == 5

    @pytest.mark.parametrize(
        "overrides",
        [
            {"MAX_ATTEMPTS": 0},
            {"IMAGE_TIMEOUT": 0},
            {"VIDEO_TIMEOUT": -1.0},
            {"FS_EVENT_DEBOUNCE_MS": -1},
            {"REMOVED_HISTORY_SIZE": -1},
            {"THUMBNAIL_SIZE": -1},
            {"MIN_VIDEO_FPS": 90, "TARGET_VIDEO_FPS": 60},
        ],
    )
    def test_validation(self, overrides):
        with pytest.raises(ValueError):
            EngineSettings(**overrides)

    def test_timeouts_can_be_disabled(self):
        assert EngineSettings(VIDEO_TIMEOUT=None).VIDEO_TIMEOUT is None


class TestQueueConfig:
    """Tests for QueueConfig class."""

    def test_explicit_limits(self):
        config = QueueConfig(IMAGE_WORKERS=2, VIDEO_WORKERS=1, PDF_WORKERS=3)

        assert (config.image_workers, config.video_workers, config.pdf_workers) == (2, 1, 3)

    @patch("squish.config._cpu_count", return_value=8)
    def test_derived_limits(self, mock_cpu_count):
        config = QueueConfig()

        assert config.image_workers == 7
        assert config.video_workers == 4
        assert config.pdf_workers == 4

    @patch("squish.config._cpu_count", return_value=1)
    def test_single_core(self, mock_cpu_count):
        config = QueueConfig()

        assert (config.image_workers, config.video_workers, config.pdf_workers) == (1, 1, 1)

    def test_media_engine_units_size_video_queue(self):
        assert QueueConfig(MEDIA_ENGINE_UNITS=2).video_workers == 2

    def test_invalid_limits(self):
        with pytest.raises(ValueError, match="IMAGE_WORKERS"):
            QueueConfig(IMAGE_WORKERS=0)


class TestEngineConfig:
    """Tests for EngineConfig class."""

    def test_default_tool_paths(self):
        config = EngineConfig()

        assert config.PNGQUANT_PATH == "pngquant"
        assert config.GHOSTSCRIPT_PATH == "gs"

    def test_environment_variable_override(self):
        """Test that environment variables override default paths."""
        with patch.dict(os.environ, {"SQUISH_PNGQUANT_PATH": "/opt/pngquant", "SQUISH_FFMPEG_PATH": "/opt/ffmpeg"}):
            config = EngineConfig()

        assert config.PNGQUANT_PATH == "/opt/pngquant"
        assert config.FFMPEG_PATH == "/opt/ffmpeg"
        assert config.GIFSICLE_PATH == "gifsicle"

    def test_empty_environment_variable_is_ignored(self):
        with patch.dict(os.environ, {"SQUISH_GIFSICLE_PATH": ""}):
            assert EngineConfig().GIFSICLE_PATH == "gifsicle"


def test_default_instances():
    assert isinstance(DEFAULT_ENGINE_CONFIG, EngineConfig)
    assert isinstance(DEFAULT_QUEUE_CONFIG, QueueConfig)
    assert isinstance(DEFAULT_SETTINGS, EngineSettings)
