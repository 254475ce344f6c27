"""Configuration settings for Squish."""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path


def _cpu_count() -> int:
    return os.cpu_count() or 1


@dataclass
class EngineConfig:
    """Configuration for compressor binary paths with environment variable overrides."""

    PNGQUANT_PATH: str = "pngquant"

    JPEGOPTIM_PATH: str = "jpegoptim"

    GIFSICLE_PATH: str = "gifsicle"

    VIPSTHUMBNAIL_PATH: str = "vipsthumbnail"

    FFMPEG_PATH: str = "ffmpeg"

    FFPROBE_PATH: str = "ffprobe"

    GHOSTSCRIPT_PATH: str = "gs"

    def __post_init__(self) -> None:
        """Apply environment variable overrides after initialization."""
        env_overrides = {
            "PNGQUANT_PATH": "SQUISH_PNGQUANT_PATH",
            "JPEGOPTIM_PATH": "SQUISH_JPEGOPTIM_PATH",
            "GIFSICLE_PATH": "SQUISH_GIFSICLE_PATH",
            "VIPSTHUMBNAIL_PATH": "SQUISH_VIPSTHUMBNAIL_PATH",
            "FFMPEG_PATH": "SQUISH_FFMPEG_PATH",
            "FFPROBE_PATH": "SQUISH_FFPROBE_PATH",
            "GHOSTSCRIPT_PATH": "SQUISH_GHOSTSCRIPT_PATH",
        }

        for attr_name, env_var_name in env_overrides.items():
            env_value = os.getenv(env_var_name)
            if env_value:
                setattr(self, attr_name, env_value)


@dataclass
class QueueConfig:
    """Concurrency limits of the three bounded execution queues.

    ``None`` means "derive from the machine": the image queue leaves one core
    free for the coordinator, the video queue is sized to the number of media
    encoder units and the PDF queue is capped at four.
    """

    IMAGE_WORKERS: int | None = None
    VIDEO_WORKERS: int | None = None
    PDF_WORKERS: int | None = None

    # Hardware encoder units available for video (0 = use CPU heuristic)
    MEDIA_ENGINE_UNITS: int = 0

    def __post_init__(self) -> None:
        for name in ("IMAGE_WORKERS", "VIDEO_WORKERS", "PDF_WORKERS"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ValueError(f"{name} must be >= 1, got {value}")
        if self.MEDIA_ENGINE_UNITS < 0:
            raise ValueError("MEDIA_ENGINE_UNITS must be non-negative")

    @property
    def image_workers(self) -> int:
        if self.IMAGE_WORKERS is not None:
            return self.IMAGE_WORKERS
        return max(_cpu_count() - 1, 1)

    @property
    def video_workers(self) -> int:
        if self.VIDEO_WORKERS is not None:
            return self.VIDEO_WORKERS
        if self.MEDIA_ENGINE_UNITS:
            return self.MEDIA_ENGINE_UNITS
        return max(min(4, _cpu_count()), 1)

    @property
    def pdf_workers(self) -> int:
        if self.PDF_WORKERS is not None:
            return self.PDF_WORKERS
        return max(min(4, _cpu_count()), 1)


@dataclass
class EngineSettings:
    """Behavioural settings of the optimisation engine."""

    # Scratch space: backups, temp outputs, process captures, sockets
    WORK_DIR: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "squish")

    # Total attempts per external tool invocation
    MAX_ATTEMPTS: int = 3

    # Hard wall-clock timeouts per tool invocation in seconds (None disables)
    IMAGE_TIMEOUT: float | None = 300.0
    VIDEO_TIMEOUT: float | None = 3600.0
    PDF_TIMEOUT: float | None = 900.0

    # Seconds to wait after SIGTERM before escalating to SIGKILL
    TERMINATE_GRACE: float = 2.0

    # Debounce windows (milliseconds)
    FS_EVENT_DEBOUNCE_MS: int = 500
    DOWNSCALE_DEBOUNCE_MS: int = 500

    # Auto-removal delays (milliseconds, 0 = keep until dismissed)
    REMOVE_FINISHED_AFTER_MS: int = 5000
    REMOVE_FAILED_AFTER_MS: int = 2500
    EDITING_MIN_REMOVE_AFTER_MS: int = 120_000

    # Removed-asset history used for bring-back
    REMOVED_HISTORY_SIZE: int = 20
    REMOVED_HISTORY_TTL_MS: int = 600_000

    # Optimisation behaviour
    ADAPTIVE_IMAGE_SIZE: bool = True
    ADAPTIVE_SIZE_MARGIN_BYTES: int = 100_000
    AGGRESSIVE_IMAGES: bool = False
    AGGRESSIVE_VIDEO: bool = False
    AGGRESSIVE_PDF: bool = False
    STRIP_METADATA: bool = True
    CAP_VIDEO_FPS: bool = False
    TARGET_VIDEO_FPS: int = 60
    MIN_VIDEO_FPS: int = 30

    # Longest side of the preview kept for optimised images (0 disables)
    THUMBNAIL_SIZE: int = 256

    # Watcher limits (megabytes)
    MAX_IMAGE_SIZE_MB: int = 50
    MAX_VIDEO_SIZE_MB: int = 500
    MAX_PDF_SIZE_MB: int = 100

    # Backups older than this are pruned at engine start (0 disables)
    BACKUP_RETENTION_DAYS: float = 7.0

    # Inter-process channel
    IPC_REQUEST_SOCKET: str = "optimisation-service.sock"
    IPC_RESPONSE_SOCKET: str = "optimisation-service-response.sock"
    IPC_AUTHKEY: bytes = b"squish"

    def __post_init__(self) -> None:
        """Apply environment overrides and validate values."""
        work_dir = os.getenv("SQUISH_WORK_DIR")
        if work_dir:
            self.WORK_DIR = Path(work_dir)
        self.WORK_DIR = Path(self.WORK_DIR)

        attempts = os.getenv("SQUISH_MAX_ATTEMPTS")
        if attempts:
            self.MAX_ATTEMPTS = int(attempts)

        if self.MAX_ATTEMPTS < 1:
            raise ValueError(f"MAX_ATTEMPTS must be >= 1, got {self.MAX_ATTEMPTS}")

        for name in ("IMAGE_TIMEOUT", "VIDEO_TIMEOUT", "PDF_TIMEOUT"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive or None, got {value}")

        for name in (
            "FS_EVENT_DEBOUNCE_MS",
            "DOWNSCALE_DEBOUNCE_MS",
            "REMOVE_FINISHED_AFTER_MS",
            "REMOVE_FAILED_AFTER_MS",
            "REMOVED_HISTORY_TTL_MS",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")

        if self.REMOVED_HISTORY_SIZE < 0:
            raise ValueError("REMOVED_HISTORY_SIZE must be non-negative")

        if self.THUMBNAIL_SIZE < 0:
            raise ValueError("THUMBNAIL_SIZE must be non-negative")

        if self.MIN_VIDEO_FPS > self.TARGET_VIDEO_FPS > 0:
            raise ValueError("MIN_VIDEO_FPS must be <= TARGET_VIDEO_FPS")

    # Work directory layout ------------------------------------------------

    @property
    def backups_dir(self) -> Path:
        return self.WORK_DIR / "backups"

    @property
    def scratch_dir(self) -> Path:
        return self.WORK_DIR / "scratch"

    @property
    def process_dir(self) -> Path:
        return self.WORK_DIR / "proc"

    @property
    def downloads_dir(self) -> Path:
        return self.WORK_DIR / "downloads"

    @property
    def thumbnails_dir(self) -> Path:
        return self.WORK_DIR / "thumbnails"

    @property
    def sockets_dir(self) -> Path:
        return self.WORK_DIR / "ipc"

    @property
    def logs_dir(self) -> Path:
        return self.WORK_DIR / "logs"


DEFAULT_ENGINE_CONFIG = EngineConfig()
DEFAULT_QUEUE_CONFIG = QueueConfig()
DEFAULT_SETTINGS = EngineSettings()
