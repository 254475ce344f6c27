"""Process-wide table of live assets, bounded queues and observer hub."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

from .asset_types import AssetType, kind_of
from .backup import BackupStore
from .config import DEFAULT_QUEUE_CONFIG, DEFAULT_SETTINGS, EngineSettings, QueueConfig
from .coordinator import Coordinator
from .optimiser import AssetOptimiser, OptimiserSnapshot
from .process_runner import ToolRunner

__all__ = [
    "AggregateChanged",
    "AssetChanged",
    "BoundedQueue",
    "OptimisationRegistry",
    "RegistryEvent",
]


@dataclass(frozen=True)
class AssetChanged:
    snapshot: OptimiserSnapshot
    removed: bool = False


@dataclass(frozen=True)
class AggregateChanged:
    visible_count: int
    done_count: int
    failed_count: int
    running_count: int


RegistryEvent = Union[AssetChanged, AggregateChanged]


class BoundedQueue:
    """A fixed-size worker pool that knows how much work it holds."""

    def __init__(self, name: str, max_workers: int) -> None:
        self.name = name
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"squish-{name}")
        self._lock = threading.Lock()
        self._pending = 0
        self._active = 0

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        with self._lock:
            self._pending += 1

        def _run() -> Any:
            with self._lock:
                self._pending -= 1
                self._active += 1
            try:
                return fn(*args, **kwargs)
            finally:
                with self._lock:
                    self._active -= 1

        return self._executor.submit(_run)

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def __repr__(self) -> str:
        return f"BoundedQueue({self.name!r}, max_workers={self.max_workers})"


class OptimisationRegistry:
    """Assets keyed by id.

    A second request for an id that is already present returns the existing
    :class:`AssetOptimiser`. Mutating methods run on the coordinator thread;
    observers get :class:`AssetChanged` / :class:`AggregateChanged` events
    carrying immutable snapshots.
    """

    def __init__(
        self,
        coordinator: Coordinator,
        runner: ToolRunner | None = None,
        backups: BackupStore | None = None,
        settings: EngineSettings | None = None,
        queue_config: QueueConfig | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.settings = settings or DEFAULT_SETTINGS
        self.runner = runner or ToolRunner(self.settings)
        self.backups = backups or BackupStore(self.settings)
        self.logger = logging.getLogger(__name__)

        queue_config = queue_config or DEFAULT_QUEUE_CONFIG
        self.queues: dict[str, BoundedQueue] = {
            "image": BoundedQueue("image", queue_config.image_workers),
            "video": BoundedQueue("video", queue_config.video_workers),
            "pdf": BoundedQueue("pdf", queue_config.pdf_workers),
        }

        self._assets: dict[str, AssetOptimiser] = {}
        self._removed: deque[tuple[float, AssetOptimiser]] = deque(maxlen=self.settings.REMOVED_HISTORY_SIZE)
        self._subscribers: list[Callable[[RegistryEvent], None]] = []
        self._subscribers_lock = threading.Lock()

        self.visible_count = 0
        self.done_count = 0
        self.failed_count = 0
        self.running_count = 0

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def get_or_create(
        self,
        id: str,
        type: AssetType,
        operation: str = "Optimising",
        hidden: bool = False,
        source: str | None = None,
        source_path: Path | None = None,
    ) -> AssetOptimiser:
        existing = self._assets.get(id)
        if existing is not None:
            if not hidden and existing.hidden:
                existing.hidden = False
            return existing

        self._drop_from_history(id)
        optimiser = AssetOptimiser(
            id,
            type,
            coordinator=self.coordinator,
            runner=self.runner,
            backups=self.backups,
            settings=self.settings,
            operation=operation,
            hidden=hidden,
            source=source,
            source_path=source_path,
            on_change=self._asset_changed,
            on_remove=self.remove,
        )
        self._assets[id] = optimiser
        self.logger.debug("Registered %s (%s)", id, type)
        self._asset_changed(optimiser)
        return optimiser

    def get(self, id: str) -> AssetOptimiser | None:
        return self._assets.get(id)

    def __contains__(self, id: object) -> bool:
        return id in self._assets

    def __len__(self) -> int:
        return len(self._assets)

    def all(self) -> list[AssetOptimiser]:
        return list(self._assets.values())

    def visible(self) -> list[AssetOptimiser]:
        return [o for o in self._assets.values() if not o.hidden]

    def snapshots(self) -> list[OptimiserSnapshot]:
        return [o.snapshot() for o in self._assets.values()]

    def queue_for(self, asset_type: AssetType) -> BoundedQueue:
        return self.queues[kind_of(asset_type)]

    # ------------------------------------------------------------------
    # Removal and history
    # ------------------------------------------------------------------
    def remove(self, id: str) -> AssetOptimiser | None:
        optimiser = self._assets.pop(id, None)
        if optimiser is None:
            return None
        if optimiser.running:
            optimiser.stop(remove=False)
        optimiser.cancel_removal()
        self._removed.append((time.monotonic(), optimiser))
        optimiser._on_change = None
        optimiser.mark_removed()
        self._emit(AssetChanged(optimiser.snapshot(), removed=True))
        self._recount()
        self.logger.debug("Removed %s", id)
        return optimiser

    def _prune_history(self) -> None:
        ttl = self.settings.REMOVED_HISTORY_TTL_MS / 1000
        now = time.monotonic()
        while self._removed and now - self._removed[0][0] > ttl:
            self._removed.popleft()

    def _drop_from_history(self, id: str) -> AssetOptimiser | None:
        for entry in self._removed:
            if entry[1].id == id:
                self._removed.remove(entry)
                return entry[1]
        return None

    def removed(self) -> list[AssetOptimiser]:
        """Recently removed assets, newest last."""
        self._prune_history()
        return [optimiser for _, optimiser in self._removed]

    def bring_back(self, id: str | None = None) -> AssetOptimiser | None:
        """Re-insert a removed asset (the most recent one when *id* is None)."""
        self._prune_history()
        if id is None:
            if not self._removed:
                return None
            optimiser = self._removed.pop()[1]
        else:
            optimiser = self._drop_from_history(id)
            if optimiser is None:
                return None
        if optimiser.id in self._assets:
            return self._assets[optimiser.id]

        self._assets[optimiser.id] = optimiser
        optimiser._on_change = self._asset_changed
        optimiser.revive()
        self.logger.info("↩️ Brought back %s", optimiser.id)
        return optimiser

    def clear_finished(self, stop_running: bool = False) -> int:
        """Remove every asset that is not running; optionally stop running ones first."""
        count = 0
        for optimiser in list(self._assets.values()):
            if optimiser.running:
                if not stop_running:
                    continue
                optimiser.stop(remove=False)
            self.remove(optimiser.id)
            count += 1
        return count

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    def subscribe(self, callback: Callable[[RegistryEvent], None]) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it.

        Callbacks run on the coordinator thread and must not block.
        """
        with self._subscribers_lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._subscribers_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def subscribe_queue(self, maxsize: int = 0) -> queue.Queue[RegistryEvent]:
        """Subscribe with a queue that receives every event (for other threads)."""
        events: queue.Queue[RegistryEvent] = queue.Queue(maxsize)
        self.subscribe(events.put_nowait)
        return events

    def _emit(self, event: RegistryEvent) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                self.logger.exception("Observer %r failed", callback)

    def _asset_changed(self, optimiser: AssetOptimiser) -> None:
        self._emit(AssetChanged(optimiser.snapshot()))
        self._recount()

    def _recount(self) -> None:
        visible = done = failed = running = 0
        for optimiser in self._assets.values():
            if optimiser.hidden:
                continue
            visible += 1
            snapshot = optimiser.snapshot()
            if snapshot.running:
                running += 1
            elif snapshot.error is not None:
                failed += 1
            elif snapshot.done:
                done += 1

        counts = (visible, done, failed, running)
        if counts != (self.visible_count, self.done_count, self.failed_count, self.running_count):
            self.visible_count, self.done_count, self.failed_count, self.running_count = counts
            self._emit(AggregateChanged(*counts))

    def shutdown(self, wait: bool = True) -> None:
        for optimiser in list(self._assets.values()):
            for handle in list(optimiser.processes):
                self.runner.terminate(handle)
            optimiser.cancel_removal()
        for bounded in self.queues.values():
            bounded.shutdown(wait=wait)
