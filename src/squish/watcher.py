"""Watch folders and optimise new or changed media as it lands."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .asset_types import AssetType, Unknown, asset_type_from_path, kind_of
from .backup import BackupStore, MarkerValue
from .config import EngineSettings
from .engine import Engine, OptimiseOptions
from .errors import SquishError

__all__ = ["DirectoryWatcher", "WatchFilter"]

logger = logging.getLogger(__name__)

_SKIP_MARKERS = {marker.value for marker in MarkerValue}


class WatchFilter:
    """Decides whether a changed path should be handed to the engine."""

    def __init__(self, settings: EngineSettings, kinds: Iterable[str], backups: BackupStore | None = None) -> None:
        self.settings = settings
        self.kinds = frozenset(kinds)
        self.backups = backups or BackupStore(settings)

    def _max_bytes(self, kind: str) -> int:
        limit_mb = {
            "image": self.settings.MAX_IMAGE_SIZE_MB,
            "video": self.settings.MAX_VIDEO_SIZE_MB,
            "pdf": self.settings.MAX_PDF_SIZE_MB,
        }[kind]
        return limit_mb * 1024 * 1024

    def asset_type(self, path: Path) -> AssetType | None:
        """The asset type to optimise *path* as, or ``None`` to ignore it."""
        if path.name.startswith("."):
            return None
        if path.resolve().is_relative_to(self.settings.WORK_DIR.resolve()):
            return None

        asset_type = asset_type_from_path(path)
        if isinstance(asset_type, Unknown):
            return None
        kind = kind_of(asset_type)
        if kind not in self.kinds:
            return None

        try:
            size = path.stat().st_size
        except OSError:
            return None
        if size == 0 or size > self._max_bytes(kind):
            return None
        if self.backups.marker(path) in _SKIP_MARKERS:
            return None
        return asset_type


class _Handler(FileSystemEventHandler):
    def __init__(self, watcher: DirectoryWatcher) -> None:
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.file_changed(Path(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.file_changed(Path(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.file_removed(Path(event.src_path))
            self.watcher.file_changed(Path(event.dest_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.file_removed(Path(event.src_path))


class DirectoryWatcher:
    """Forward file-system events in *dirs* to :meth:`Engine.request_optimise`.

    Events are debounced per file by the engine (``FS_EVENT_DEBOUNCE_MS``), so
    a file that is still being written triggers one optimisation once it
    settles.
    """

    def __init__(
        self,
        engine: Engine,
        dirs: Iterable[Path | str],
        kinds: Iterable[str] = ("image", "video", "pdf"),
        recursive: bool = False,
    ) -> None:
        self.engine = engine
        self.dirs = [Path(d).expanduser().resolve() for d in dirs]
        self.filter = WatchFilter(engine.settings, kinds, engine.backups)
        self.recursive = recursive
        self._observer: Observer | None = None

    def start(self) -> DirectoryWatcher:
        if self._observer is not None:
            return self
        self._observer = Observer()
        handler = _Handler(self)
        for directory in self.dirs:
            self._observer.schedule(handler, str(directory), recursive=self.recursive)
        self._observer.start()
        logger.info("👀 Watching %s", ", ".join(str(d) for d in self.dirs))
        return self

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("Stopped watching")

    def __enter__(self) -> DirectoryWatcher:
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def file_changed(self, path: Path) -> None:
        asset_type = self.filter.asset_type(path)
        if asset_type is None:
            return
        snapshot = self.engine.snapshot(str(path))
        if snapshot is not None and snapshot.running:
            return

        logger.debug("File event for %s", path)
        options = OptimiseOptions(debounce_ms=self.engine.settings.FS_EVENT_DEBOUNCE_MS, source="watcher")
        try:
            self.engine.request_optimise(path, type=asset_type, source_path=path, options=options)
        except SquishError as e:
            logger.warning("⚠️ Ignoring %s: %s", path.name, e)

    def file_removed(self, path: Path) -> None:
        self.engine.request_cancel_pending(str(path))
