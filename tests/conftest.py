import os
import shutil
import tempfile
import time
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from squish.config import EngineConfig, EngineSettings, QueueConfig
from squish.coordinator import Coordinator
from squish.registry import OptimisationRegistry

_ENV_OVERRIDES = (
    "SQUISH_WORK_DIR",
    "SQUISH_MAX_ATTEMPTS",
    "SQUISH_PNGQUANT_PATH",
    "SQUISH_JPEGOPTIM_PATH",
    "SQUISH_GIFSICLE_PATH",
    "SQUISH_VIPSTHUMBNAIL_PATH",
    "SQUISH_FFMPEG_PATH",
    "SQUISH_FFPROBE_PATH",
    "SQUISH_GHOSTSCRIPT_PATH",
)


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    """Keep the developer's SQUISH_* overrides out of the tests."""
    for name in _ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def write_script(path: Path, body: str) -> Path:
    """Write an executable ``/bin/sh`` script standing in for a compressor."""
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)
    return path


def supports_xattr(directory: Path) -> bool:
    probe = directory / ".xattr-probe"
    probe.write_bytes(b"x")
    try:
        os.setxattr(str(probe), "user.squish.probe", b"1")
    except OSError:
        return False
    finally:
        probe.unlink(missing_ok=True)
    return True


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll *predicate* until it returns truthy or *timeout* elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def run_count(log: Path) -> int:
    return len(log.read_text().splitlines()) if log.exists() else 0


# ---------------------------------------------------------------------------
# Media fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def noisy_png(tmp_path):
    """200x200 random noise; large enough that any real quantiser shrinks it."""
    path = tmp_path / "media" / "noise.png"
    path.parent.mkdir(parents=True, exist_ok=True)
    rng = np.random.default_rng(42)
    pixels = rng.integers(0, 256, size=(200, 200, 3), dtype=np.uint8)
    Image.fromarray(pixels, "RGB").save(path)
    return path


@pytest.fixture
def tiny_png(tmp_path):
    path = tmp_path / "tools" / "tiny.png"
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (4, 4), (255, 0, 0)).save(path)
    return path


@pytest.fixture
def noisy_tiff(tmp_path):
    """Uncompressed TIFF noise; optimising converts it to PNG."""
    path = tmp_path / "media" / "scan.tiff"
    path.parent.mkdir(parents=True, exist_ok=True)
    rng = np.random.default_rng(7)
    pixels = rng.integers(0, 256, size=(120, 120, 3), dtype=np.uint8)
    Image.fromarray(pixels, "RGB").save(path)
    return path


@pytest.fixture
def transparent_png(tmp_path):
    path = tmp_path / "media" / "alpha.png"
    path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.new("RGBA", (10, 10), (0, 0, 255, 255))
    img.putpixel((0, 0), (0, 0, 0, 0))
    img.save(path)
    return path


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def work_dir():
    # AF_UNIX socket paths are limited to ~100 bytes, pytest's tmp_path is too deep
    directory = Path(tempfile.mkdtemp(prefix="sq"))
    yield directory
    shutil.rmtree(directory, ignore_errors=True)


@pytest.fixture
def settings(work_dir):
    return EngineSettings(
        WORK_DIR=work_dir,
        TERMINATE_GRACE=0.5,
        DOWNSCALE_DEBOUNCE_MS=200,
        FS_EVENT_DEBOUNCE_MS=100,
        REMOVE_FINISHED_AFTER_MS=0,
        REMOVE_FAILED_AFTER_MS=0,
        ADAPTIVE_IMAGE_SIZE=False,
        IMAGE_TIMEOUT=30.0,
    )


@pytest.fixture
def fake_tools(tmp_path, tiny_png):
    """Shell scripts that mimic the compressors' command lines.

    Each appends a line to ``<name>.log`` per run so tests can count launches.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    logs = {name: bin_dir / f"{name}.log" for name in ("pngquant", "vipsthumbnail", "slow_pngquant", "stubborn_pngquant")}

    tools = {
        "pngquant": write_script(
            bin_dir / "pngquant",
            f'echo run >> "{logs["pngquant"]}"\n'
            'out=""\n'
            'while [ $# -gt 0 ]; do\n'
            '  case "$1" in\n'
            '    --output) out="$2"; shift 2 ;;\n'
            '    --) shift; break ;;\n'
            '    *) shift ;;\n'
            '  esac\n'
            'done\n'
            f'cp "{tiny_png}" "$out"\n',
        ),
        "slow_pngquant": write_script(
            bin_dir / "slow_pngquant",
            f'echo run >> "{logs["slow_pngquant"]}"\nsleep 30\n',
        ),
        "stubborn_pngquant": write_script(
            bin_dir / "stubborn_pngquant",
            f'echo run >> "{logs["stubborn_pngquant"]}"\necho "quality too low" >&2\nexit 99\n',
        ),
        "vipsthumbnail": write_script(
            bin_dir / "vipsthumbnail",
            f'echo run >> "{logs["vipsthumbnail"]}"\n'
            'in="$1"\n'
            'out=""\n'
            'while [ $# -gt 0 ]; do\n'
            '  case "$1" in\n'
            '    -o) out="$2"; shift 2 ;;\n'
            '    *) shift ;;\n'
            '  esac\n'
            'done\n'
            'cp "$in" "$out"\n',
        ),
    }
    return {"tools": tools, "logs": logs}


@pytest.fixture
def engine_config(fake_tools):
    tools = fake_tools["tools"]
    return EngineConfig(
        PNGQUANT_PATH=str(tools["pngquant"]),
        VIPSTHUMBNAIL_PATH=str(tools["vipsthumbnail"]),
    )


@pytest.fixture
def engine(settings, engine_config):
    from squish.engine import Engine

    with Engine(settings, engine_config, QueueConfig(IMAGE_WORKERS=2, VIDEO_WORKERS=1, PDF_WORKERS=1)) as running:
        yield running


@pytest.fixture
def coordinator():
    running = Coordinator(name="test-coordinator")
    yield running
    running.stop()


@pytest.fixture
def registry(coordinator, settings):
    reg = OptimisationRegistry(
        coordinator,
        settings=settings,
        queue_config=QueueConfig(IMAGE_WORKERS=1, VIDEO_WORKERS=1, PDF_WORKERS=1),
    )
    yield reg
    reg.shutdown(wait=False)
