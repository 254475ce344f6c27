"""Per-asset state machine.

An :class:`AssetOptimiser` owns one asset's lifecycle::

    IDLE -> RUNNING -> FINISHED | FAILED -> AUTO_REMOVING -> REMOVED
                ^__________________|   (re-optimise, restore)

Every method here must be called on the coordinator thread. Observers never
see the object itself, only the immutable :class:`OptimiserSnapshot` produced
by :meth:`AssetOptimiser.snapshot`.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .asset_types import AssetType, asset_type_from_path
from .backup import BackupStore
from .config import DEFAULT_SETTINGS, EngineSettings
from .coordinator import Coordinator
from .errors import BackupOrRestoreFailed, human_summary
from .process_runner import ProcessHandle, ToolRunner
from .progress import Progress

__all__ = [
    "AssetOptimiser",
    "OptimiserSnapshot",
    "OptimiserState",
]


class OptimiserState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"
    AUTO_REMOVING = "auto_removing"
    REMOVED = "removed"


@dataclass(frozen=True)
class OptimiserSnapshot:
    id: str
    type: AssetType
    state: OptimiserState
    running: bool
    progress: Progress
    error: str | None
    notice: str | None
    old_bytes: int
    new_bytes: int
    old_size: tuple[int, int] | None
    new_size: tuple[int, int] | None
    source_path: Path | None
    result_path: Path | None
    backup_path: Path | None
    operation: str
    hidden: bool
    is_original: bool
    aggressive: bool
    converted_from_path: Path | None = None
    url: str | None = None
    thumbnail_path: Path | None = None
    copy_to_clipboard: bool = False

    @property
    def done(self) -> bool:
        return self.state in (OptimiserState.FINISHED, OptimiserState.AUTO_REMOVING) and self.error is None

    @property
    def failed(self) -> bool:
        return self.state is OptimiserState.FAILED or (self.error is not None and not self.running)

    @property
    def saved_bytes(self) -> int:
        if self.old_bytes < 0 or self.new_bytes < 0:
            return 0
        return self.old_bytes - self.new_bytes


class AssetOptimiser:
    def __init__(
        self,
        id: str,
        type: AssetType,
        *,
        coordinator: Coordinator,
        runner: ToolRunner,
        backups: BackupStore,
        settings: EngineSettings | None = None,
        operation: str = "Optimising",
        hidden: bool = False,
        source: str | None = None,
        source_path: Path | None = None,
        on_change: Callable[[AssetOptimiser], None] | None = None,
        on_remove: Callable[[str], None] | None = None,
    ) -> None:
        self.id = id
        self.type = type
        self.started_at = time.time()
        self.settings = settings or DEFAULT_SETTINGS
        self.coordinator = coordinator
        self.runner = runner
        self.backups = backups
        self._on_change = on_change
        self._on_remove = on_remove
        self.logger = logging.getLogger(__name__)

        self.running = False
        self.error: str | None = None
        self.notice: str | None = None
        self.old_bytes = -1
        self.new_bytes = -1
        self.old_size: tuple[int, int] | None = None
        self.new_size: tuple[int, int] | None = None
        self.progress = Progress.indeterminate_with(operation)
        self.operation = operation

        self.source_path = Path(source_path) if source_path else None
        self.starting_path = self.source_path
        self.result_path: Path | None = None
        self.backup_path: Path | None = None
        self.converted_from_path: Path | None = None
        self.url: str | None = None
        self.thumbnail_path: Path | None = None

        self.processes: set[ProcessHandle] = set()
        self.aggressive = False
        self.copy_to_clipboard = False
        self.hidden = hidden
        self.source = source
        self.is_original = False
        self.downscale_factor = 1.0
        self.speed_up_factor = 1.0

        self.hovering = False
        self.editing_filename = False
        self.dragging = False
        self.in_removal = False
        self.removed = False
        self.last_remove_after_ms = 0
        self.run_started_at: float | None = None

        self.removal_timer: threading.Timer | None = None
        self._removal_generation = 0

    def __repr__(self) -> str:
        return f"AssetOptimiser({self.id!r}, state={self.state.value})"

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------
    @property
    def state(self) -> OptimiserState:
        if self.removed:
            return OptimiserState.REMOVED
        if self.in_removal:
            return OptimiserState.AUTO_REMOVING
        if self.running:
            return OptimiserState.RUNNING
        if self.error is not None:
            return OptimiserState.FAILED
        if self.new_bytes >= 0 or self.notice is not None:
            return OptimiserState.FINISHED
        return OptimiserState.IDLE

    @property
    def path(self) -> Path | None:
        return self.result_path or self.source_path

    @property
    def interacting(self) -> bool:
        return self.hovering or self.editing_filename or self.dragging

    def snapshot(self) -> OptimiserSnapshot:
        return OptimiserSnapshot(
            id=self.id,
            type=self.type,
            state=self.state,
            running=self.running,
            progress=self.progress,
            error=self.error,
            notice=self.notice,
            old_bytes=self.old_bytes,
            new_bytes=self.new_bytes,
            old_size=self.old_size,
            new_size=self.new_size,
            source_path=self.source_path,
            result_path=self.result_path,
            backup_path=self.backup_path,
            operation=self.operation,
            hidden=self.hidden,
            is_original=self.is_original,
            aggressive=self.aggressive,
            converted_from_path=self.converted_from_path,
            url=self.url,
            thumbnail_path=self.thumbnail_path,
            copy_to_clipboard=self.copy_to_clipboard,
        )

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def start(self, operation: str = "Optimising", aggressive: bool | None = None) -> None:
        """Enter RUNNING for a new transform.

        Clears the previous outcome; metrics of the previous run are dropped
        only here, so they stay stable between runs.
        """
        self.cancel_removal()
        self.in_removal = False
        self.running = True
        self.error = None
        self.notice = None
        self.old_bytes = -1
        self.new_bytes = -1
        self.new_size = None
        self.operation = operation
        self.progress = Progress.indeterminate_with(operation)
        self.run_started_at = time.monotonic()
        if aggressive is not None:
            self.aggressive = aggressive
        self.logger.debug("▶️ %s: %s", self.id, operation)
        self._changed()

    def finish_success(
        self,
        old_bytes: int,
        new_bytes: int,
        old_size: tuple[int, int] | None = None,
        new_size: tuple[int, int] | None = None,
        result_path: Path | None = None,
        remove_after_ms: int | None = None,
    ) -> None:
        if self.in_removal or self.removed:
            self.logger.debug("Ignoring result for %s, already being removed", self.id)
            return

        self.running = False
        self.processes.clear()
        self.error = None
        self.notice = None
        self.old_bytes = old_bytes
        self.new_bytes = new_bytes
        self.old_size = old_size if old_size is not None else self.old_size
        self.new_size = new_size
        if result_path is not None:
            self.result_path = Path(result_path)
        self.is_original = False
        self.progress = Progress(
            completed_units=1,
            total_units=1,
            indeterminate=False,
            description=self.operation,
        )
        self._changed()

        delay = self.settings.REMOVE_FINISHED_AFTER_MS if remove_after_ms is None else remove_after_ms
        if not self.hidden:
            self.remove_after(delay)

    def finish_error(self, error: str | BaseException, remove_after_ms: int | None = None) -> None:
        if self.removed:
            return
        self.running = False
        self.processes.clear()
        self.notice = None
        self.error = human_summary(error) if isinstance(error, BaseException) else error
        self.progress = Progress.indeterminate_with(self.operation)
        self.logger.warning("⚠️ %s failed: %s", self.id, self.error)
        self._changed()

        delay = self.settings.REMOVE_FAILED_AFTER_MS if remove_after_ms is None else remove_after_ms
        if not self.hidden:
            self.remove_after(delay)

    def finish_notice(
        self,
        notice: str,
        old_bytes: int | None = None,
        new_bytes: int | None = None,
        remove_after_ms: int | None = None,
    ) -> None:
        """Finish with a recoverable condition (already optimised, not smaller)."""
        if self.removed:
            return
        self.running = False
        self.processes.clear()
        self.error = None
        self.notice = notice
        if old_bytes is not None:
            self.old_bytes = old_bytes
        if new_bytes is not None:
            self.new_bytes = new_bytes
        self.progress = Progress.indeterminate_with(self.operation)
        self.logger.info("ℹ️ %s: %s", self.id, notice)
        self._changed()

        delay = self.settings.REMOVE_FAILED_AFTER_MS if remove_after_ms is None else remove_after_ms
        if not self.hidden:
            self.remove_after(delay)

    def stop(self, remove: bool = True) -> None:
        """Terminate owned processes; never records an error."""
        for handle in list(self.processes):
            self.runner.terminate(handle)
        self.processes.clear()
        was_running = self.running
        self.running = False
        if was_running:
            self.progress = Progress.indeterminate_with(self.operation)
            self.logger.info("⏹️ Stopped %s", self.id)
        self._changed()
        if remove:
            self.remove_now()

    def restore_original(self) -> Path:
        """Put the pristine backup back in place and reset the metrics.

        A converted asset goes back to the file it was converted from; the
        converted sibling is deleted.
        """
        path = self.converted_from_path or self.path
        if path is None:
            raise BackupOrRestoreFailed(self.id, "asset has no file")
        if self.converted_from_path is not None:
            backup_path = self.backups.backup_path_for(path)
        else:
            backup_path = self.backup_path or self.backups.backup_path_for(path)

        self.cancel_removal()
        self.backups.restore(path, backup_path)
        if self.converted_from_path is not None:
            converted = self.result_path
            if converted is not None and converted != path:
                converted.unlink(missing_ok=True)
                self.backups.discard(converted)
            self.result_path = None
            self.source_path = path
            self.backup_path = backup_path
            self.type = asset_type_from_path(path)
            self.converted_from_path = None
        self.is_original = True
        self.running = False
        self.error = None
        self.notice = None
        self.new_bytes = -1
        self.new_size = None
        self.old_bytes = path.stat().st_size
        self.downscale_factor = 1.0
        self.speed_up_factor = 1.0
        self.operation = "Original"
        self._changed()
        return path

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------
    def remove_after(self, ms: int) -> None:
        """(Re)arm the auto-removal timer; ``ms <= 0`` keeps the asset."""
        self.cancel_removal()
        if ms <= 0:
            return
        self.last_remove_after_ms = ms
        self._arm(ms)

    def _arm(self, ms: int) -> None:
        self._removal_generation += 1
        generation = self._removal_generation
        timer = threading.Timer(ms / 1000, self.coordinator.post, args=(self._removal_fired, generation))
        timer.daemon = True
        self.removal_timer = timer
        timer.start()

    def reset_remover(self) -> None:
        """Restart the removal countdown with the last delay, if one was set."""
        if self.last_remove_after_ms > 0 and not self.running and not self.removed:
            self.cancel_removal()
            self._arm(self.last_remove_after_ms)

    def cancel_removal(self) -> None:
        if self.removal_timer is not None:
            self.removal_timer.cancel()
            self.removal_timer = None
        self._removal_generation += 1

    def _removal_fired(self, generation: int) -> None:
        if generation != self._removal_generation or self.removed:
            return
        self.removal_timer = None
        if self.running:
            return
        if self.editing_filename:
            self._arm(max(self.last_remove_after_ms, self.settings.EDITING_MIN_REMOVE_AFTER_MS))
            return
        if self.hovering or self.dragging:
            self._arm(self.last_remove_after_ms)
            return

        self.in_removal = True
        self._changed()
        self.remove_now()

    def remove_now(self) -> None:
        self.cancel_removal()
        if self._on_remove is not None:
            self._on_remove(self.id)
        else:
            self.mark_removed()

    def mark_removed(self) -> None:
        self.removed = True
        self.in_removal = False
        self._changed()

    def revive(self) -> None:
        """Undo :meth:`mark_removed` when an asset is brought back."""
        self.removed = False
        self.in_removal = False
        self.last_remove_after_ms = 0
        self._changed()

    # ------------------------------------------------------------------
    # Interaction
    # ------------------------------------------------------------------
    def _interaction_changed(self) -> None:
        if self.interacting:
            self.cancel_removal()
        else:
            self.reset_remover()
        self._changed()

    def set_hovering(self, hovering: bool) -> None:
        self.hovering = hovering
        self._interaction_changed()

    def set_editing_filename(self, editing: bool) -> None:
        self.editing_filename = editing
        if not editing and self.last_remove_after_ms:
            self.last_remove_after_ms = max(self.last_remove_after_ms, self.settings.EDITING_MIN_REMOVE_AFTER_MS)
        self._interaction_changed()

    def set_dragging(self, dragging: bool) -> None:
        self.dragging = dragging
        self._interaction_changed()

    def rename(self, new_name: str) -> Path:
        """Rename the asset's file within its folder, keeping the id."""
        current = self.path
        if current is None:
            raise BackupOrRestoreFailed(self.id, "asset has no file")
        if Path(new_name).name != new_name:
            raise ValueError(f"Invalid file name: {new_name!r}")
        target = current.with_name(new_name)
        if not Path(new_name).suffix:
            target = target.with_suffix(current.suffix)
        if target.exists() and target != current:
            raise FileExistsError(target)

        current.rename(target)
        if self.backup_path is not None:
            new_backup = self.backups.backup_path_for(target)
            if new_backup != self.backup_path and self.backup_path.exists():
                new_backup.parent.mkdir(parents=True, exist_ok=True)
                self.backup_path.rename(new_backup)
                self.backup_path = new_backup
        if self.result_path is not None:
            self.result_path = target
        else:
            self.source_path = target
        self.logger.info("✏️ Renamed %s -> %s", current.name, target.name)
        self._changed()
        return target

    # ------------------------------------------------------------------
    # Processes and progress
    # ------------------------------------------------------------------
    def attach_process(self, handle: ProcessHandle) -> None:
        self.processes.add(handle)

    def detach_process(self, handle: ProcessHandle) -> None:
        self.processes.discard(handle)

    def update_progress(self, progress: Progress) -> None:
        if not self.running:
            return
        current = self.progress
        if (
            not progress.indeterminate
            and not current.indeterminate
            and progress.total_units == current.total_units
            and progress.completed_units < current.completed_units
        ):
            return
        self.progress = progress
        self._changed()
