"""The optimisation engine: the entry point callers talk to.

Requests can be issued from any thread. Each one is handed to the
coordinator, which creates or looks up the asset in the registry and
schedules the work through the :class:`~squish.debounce.DebounceCoalescer`.
When the debounce window elapses the transform is submitted to the asset
type's bounded queue; the worker reports back to the coordinator, which is
the only place asset state changes.

Example::

    with Engine() as engine:
        handle = engine.request_optimise("~/Desktop/screenshot.png")
        snapshot = handle.wait()
        print(snapshot.old_bytes, snapshot.new_bytes)
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path

from .asset_types import AssetType, RemoteURL, Unknown, asset_type_for, is_image, is_remote, kind_of
from .backup import BackupStore, MarkerValue, atomic_replace
from .capability_registry import supports, transformer_for
from .config import (
    DEFAULT_ENGINE_CONFIG,
    DEFAULT_QUEUE_CONFIG,
    DEFAULT_SETTINGS,
    EngineConfig,
    EngineSettings,
    QueueConfig,
)
from .coordinator import Coordinator
from .debounce import DebounceCoalescer
from .downloads import download
from .errors import (
    AlreadyOptimised,
    Cancelled,
    ResultNotSmaller,
    SourceNotFound,
    SquishError,
    UnsupportedType,
    is_notice,
)
from .meta import compute_file_sha256, make_thumbnail, media_size
from .optimiser import AssetOptimiser, OptimiserSnapshot
from .process_runner import CancellationRegistry, ProcessHandle, ToolRunner
from .progress import Progress
from .registry import OptimisationRegistry
from .tool_interfaces import TransformJob, TransformResult

__all__ = [
    "Engine",
    "OptimiseOptions",
    "RequestHandle",
    "next_downscale_factor",
    "render_output_path",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OptimiseOptions:
    """Per-request options.

    ``None`` for ``aggressive``/``adaptive`` means "use the configured default
    for the asset kind".
    """

    aggressive: bool | None = None
    copy_to_clipboard: bool = False
    output_path_template: str | None = None
    remove_after_ms: int | None = None
    allow_larger: bool = False
    hidden: bool = False
    debounce_ms: int = 0
    from_original: bool = False
    adaptive: bool | None = None
    source: str = "api"
    #: Optimise even if the file carries the "already optimised" marker
    force: bool = False


class RequestHandle:
    """Returned by every ``request_*`` call; :meth:`wait` parks on a done flag."""

    def __init__(self, id: str, options: OptimiseOptions | None = None) -> None:
        self.id = id
        self.options = options or OptimiseOptions()
        self._done = threading.Event()
        self._snapshot: OptimiserSnapshot | None = None

    def __repr__(self) -> str:
        return f"RequestHandle({self.id!r}, done={self.done})"

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def snapshot(self) -> OptimiserSnapshot | None:
        return self._snapshot

    def _complete(self, snapshot: OptimiserSnapshot | None) -> None:
        if not self._done.is_set():
            self._snapshot = snapshot
            self._done.set()

    def wait(self, timeout: float | None = None) -> OptimiserSnapshot | None:
        """Block until the asset's work for this request settled.

        Returns the asset snapshot at that moment (``None`` if the asset was
        dropped before it ever ran). Raises *TimeoutError* on timeout.
        """
        if not self._done.wait(timeout):
            raise TimeoutError(f"Timed out waiting for {self.id}")
        return self._snapshot


@dataclass(frozen=True)
class _Operation:
    kind: str
    options: OptimiseOptions = field(default_factory=OptimiseOptions)
    factor: float | None = None
    size: tuple[int, int] | None = None

    @property
    def label(self) -> str:
        match self.kind:
            case "optimise":
                return "Optimising"
            case "downscale" if self.size is not None:
                return f"Scaling to {self.size[0]}x{self.size[1]}"
            case "downscale":
                return f"Scaling to {round((self.factor or 1) * 100)}%"
            case "crop":
                return f"Cropping to {self.size[0]}x{self.size[1]}"
            case "change_speed":
                return f"Speeding up {self.factor:g}x"
            case "remove_audio":
                return "Removing audio"
            case _:
                return self.kind


@dataclass
class _JobContext:
    """Everything a worker needs, copied off the coordinator."""

    id: str
    type: AssetType
    path: Path
    backup_path: Path | None
    current_size: tuple[int, int] | None
    cancelled: threading.Event


@dataclass
class _Outcome:
    old_bytes: int = -1
    new_bytes: int = -1
    old_size: tuple[int, int] | None = None
    new_size: tuple[int, int] | None = None
    result_path: Path | None = None
    backup_path: Path | None = None
    type: AssetType | None = None
    converted_from: Path | None = None
    thumbnail_path: Path | None = None
    error: BaseException | None = None


@dataclass(frozen=True)
class _CachedResult:
    path: Path
    bytes: int
    type: AssetType
    size: tuple[int, int] | None = None


def next_downscale_factor(current: float) -> float:
    """Step down by 0.25 while above 0.5, then by 0.1, never below 0.1."""
    step = 0.25 if current > 0.5 else 0.1
    return round(max(current - step, 0.1), 2)


def render_output_path(template: str, source: Path, extension: str | None = None, now: datetime | None = None) -> Path:
    """Expand an output template for *source*.

    Tokens: ``%f`` source stem, ``%e`` extension, ``%y``/``%m``/``%d`` date and
    ``%i`` an auto-incrementing number picking the first free path. Relative
    templates are resolved against the source's folder.
    """
    now = now or datetime.now()
    ext = (extension or source.suffix).lstrip(".")
    text = (
        template.replace("%y", f"{now:%Y}")
        .replace("%m", f"{now:%m}")
        .replace("%d", f"{now:%d}")
        .replace("%f", source.stem)
        .replace("%e", ext)
    )

    def _resolve(candidate: str) -> Path:
        path = Path(candidate).expanduser()
        if not path.is_absolute():
            path = source.parent / path
        if not path.suffix and ext:
            path = path.with_name(f"{path.name}.{ext}")
        return path

    if "%i" not in text:
        return _resolve(text)
    i = 1
    while (path := _resolve(text.replace("%i", str(i)))).exists():
        i += 1
    return path


class Engine:
    """Coordinator, registry, queues and workers wired together."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        engine_config: EngineConfig | None = None,
        queue_config: QueueConfig | None = None,
    ) -> None:
        self.settings = settings or DEFAULT_SETTINGS
        self.engine_config = engine_config or DEFAULT_ENGINE_CONFIG
        self.logger = logging.getLogger(__name__)

        self.coordinator = Coordinator()
        self.cancellations = CancellationRegistry()
        self.runner = ToolRunner(self.settings, self.cancellations)
        self.backups = BackupStore(self.settings)
        self.registry = OptimisationRegistry(
            self.coordinator,
            runner=self.runner,
            backups=self.backups,
            settings=self.settings,
            queue_config=queue_config or DEFAULT_QUEUE_CONFIG,
        )
        self.debouncer = DebounceCoalescer()
        self._downloads = ThreadPoolExecutor(max_workers=4, thread_name_prefix="squish-download")

        # coordinator-owned
        self._waiting: dict[str, list[RequestHandle]] = {}
        # requests parked behind a running job, promoted when it finishes
        self._parked: dict[str, list[RequestHandle]] = {}
        self._owned: dict[str, list[RequestHandle]] = {}
        self._jobs: dict[str, threading.Event] = {}
        self._skip_begin: set[str] = set()

        # shared with workers
        self._output_digests: set[str] = set()
        # (source digest, aggressive, adaptive) -> result
        self._results_by_source: dict[tuple[str, bool, bool], _CachedResult] = {}
        self._hash_lock = threading.Lock()
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> Engine:
        for directory in (self.settings.backups_dir, self.settings.scratch_dir, self.settings.process_dir):
            directory.mkdir(parents=True, exist_ok=True)
        self.backups.cleanup()
        return self

    def shutdown(self, wait: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        self.debouncer.cancel_all()
        self.coordinator.call(self._complete_all_waiting)
        self.registry.shutdown(wait=wait)
        self._downloads.shutdown(wait=wait, cancel_futures=True)
        self.coordinator.stop(wait=wait)

    def __enter__(self) -> Engine:
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Requests (any thread)
    # ------------------------------------------------------------------
    def _identify(self, id_or_path: str | Path, asset_type: AssetType | None, source_path: Path | str | None):
        if asset_type is None and isinstance(id_or_path, str) and is_remote(id_or_path):
            return id_or_path, RemoteURL(id_or_path), None
        if source_path is not None:
            path = Path(source_path).expanduser().resolve()
            return str(id_or_path), asset_type or asset_type_for(path), path

        existing = self.coordinator.call(self.registry.get, str(id_or_path))
        if existing is not None:
            return existing.id, asset_type or existing.type, existing.path
        path = Path(id_or_path).expanduser().resolve()
        return str(path), asset_type or asset_type_for(path), path

    def _request(self, id_or_path, asset_type, source_path, op: _Operation) -> RequestHandle:
        id, asset_type, path = self._identify(id_or_path, asset_type, source_path)
        match asset_type:
            case RemoteURL():
                if op.kind != "optimise":
                    raise UnsupportedType(asset_type, op.kind.replace("_", " "))
            case Unknown():
                raise UnsupportedType(asset_type, op.kind.replace("_", " "))
            case _:
                if not supports(asset_type, op.kind):
                    raise UnsupportedType(asset_type, op.kind.replace("_", " "))

        handle = RequestHandle(id, op.options)
        self.coordinator.post(self._schedule, id, asset_type, path, op, handle)
        return handle

    def request_optimise(
        self,
        id_or_path: str | Path,
        type: AssetType | None = None,
        source_path: Path | str | None = None,
        options: OptimiseOptions | None = None,
    ) -> RequestHandle:
        return self._request(id_or_path, type, source_path, _Operation("optimise", options or OptimiseOptions()))

    def request_downscale(
        self,
        id: str | Path,
        factor: float | None = None,
        target_size: tuple[int, int] | None = None,
        options: OptimiseOptions | None = None,
    ) -> RequestHandle:
        """Downscale relative to the original; no factor steps the current one down."""
        if factor is not None and not 0 < factor <= 1:
            raise ValueError("factor must be in (0, 1]")
        options = options or OptimiseOptions(debounce_ms=self.settings.DOWNSCALE_DEBOUNCE_MS)
        return self._request(id, None, None, _Operation("downscale", options, factor=factor, size=target_size))

    def request_crop(self, id: str | Path, size: tuple[int, int], options: OptimiseOptions | None = None) -> RequestHandle:
        if size[0] <= 0 or size[1] <= 0:
            raise ValueError("crop size must be positive")
        return self._request(id, None, None, _Operation("crop", options or OptimiseOptions(), size=tuple(size)))

    def request_speed_up(self, id: str | Path, factor: float, options: OptimiseOptions | None = None) -> RequestHandle:
        if factor <= 0:
            raise ValueError("speed factor must be positive")
        return self._request(id, None, None, _Operation("change_speed", options or OptimiseOptions(), factor=factor))

    def request_remove_audio(self, id: str | Path, options: OptimiseOptions | None = None) -> RequestHandle:
        return self._request(id, None, None, _Operation("remove_audio", options or OptimiseOptions()))

    def request_stop(self, id: str, remove: bool = False) -> OptimiserSnapshot | None:
        """Cancel pending work and terminate running processes for *id*."""
        return self.coordinator.call(self._stop, str(id), remove)

    def request_restore(self, id_or_path: str | Path) -> OptimiserSnapshot | None:
        """Put the backed-up original back; works for paths not seen before."""
        id, asset_type, path = self._identify(id_or_path, None, None)
        return self.coordinator.call(self._restore, id, asset_type, path)

    def request_cancel_pending(self, id: str) -> None:
        """Drop debounced work for *id* without touching running processes."""
        self.coordinator.post(self._cancel_pending, str(id))

    def bring_back(self, id: str | None = None) -> OptimiserSnapshot | None:
        optimiser = self.coordinator.call(self.registry.bring_back, id)
        return optimiser.snapshot() if optimiser is not None else None

    def clear_finished(self, stop_running: bool = False) -> int:
        def _clear() -> int:
            if stop_running:
                for optimiser in self.registry.all():
                    self._cancel_pending(optimiser.id)
                    self._signal_job(optimiser.id)
            return self.registry.clear_finished(stop_running)

        return self.coordinator.call(_clear)

    def snapshot(self, id: str) -> OptimiserSnapshot | None:
        optimiser = self.coordinator.call(self.registry.get, str(id))
        return optimiser.snapshot() if optimiser is not None else None

    def snapshots(self) -> list[OptimiserSnapshot]:
        return self.coordinator.call(self.registry.snapshots)

    def interact(self, id: str, *, hovering: bool | None = None, editing: bool | None = None, dragging: bool | None = None) -> None:
        """Forward UI interaction flags that suspend auto-removal."""

        def _apply() -> None:
            optimiser = self.registry.get(str(id))
            if optimiser is None:
                return
            if hovering is not None:
                optimiser.set_hovering(hovering)
            if editing is not None:
                optimiser.set_editing_filename(editing)
            if dragging is not None:
                optimiser.set_dragging(dragging)

        self.coordinator.post(_apply)

    # ------------------------------------------------------------------
    # Coordinator side
    # ------------------------------------------------------------------
    def _schedule(self, id: str, asset_type: AssetType, path: Path | None, op: _Operation, handle: RequestHandle) -> None:
        options = op.options
        optimiser = self.registry.get_or_create(
            id,
            asset_type,
            operation=op.label,
            hidden=options.hidden,
            source=options.source,
            source_path=path,
        )
        optimiser.cancel_removal()

        if op.kind == "downscale" and op.factor is None and op.size is None:
            factor = next_downscale_factor(optimiser.downscale_factor)
            op = replace(op, factor=factor)
        if op.kind == "downscale" and op.factor is not None:
            optimiser.downscale_factor = op.factor
        if op.kind == "change_speed":
            op = replace(op, factor=round(optimiser.speed_up_factor * (op.factor or 1), 3))
            optimiser.speed_up_factor = op.factor

        delay = max(options.debounce_ms, 0) / 1000
        parked = self.debouncer.schedule(id, delay, lambda: self.coordinator.post(self._begin, id, op))
        (self._parked if parked else self._waiting).setdefault(id, []).append(handle)

    def _begin(self, id: str, op: _Operation) -> None:
        # Requests made from here on belong to the follow-up run
        self._owned.setdefault(id, []).extend(self._waiting.pop(id, []))
        if id in self._skip_begin:
            self._skip_begin.discard(id)
            self._finish_job(id, None)
            return
        optimiser = self.registry.get(id)
        if optimiser is None:
            self._finish_job(id, None)
            return

        match optimiser.type:
            case RemoteURL(url=url):
                self._begin_download(optimiser, url or id, op)
                return
            case _:
                pass

        path = optimiser.path
        if path is None:
            optimiser.finish_error(SourceNotFound(id))
            self._finish_job(id, None)
            return

        options = op.options
        kind = kind_of(optimiser.type)
        aggressive = options.aggressive
        if aggressive is None:
            aggressive = {
                "image": self.settings.AGGRESSIVE_IMAGES,
                "video": self.settings.AGGRESSIVE_VIDEO,
                "pdf": self.settings.AGGRESSIVE_PDF,
            }[kind]

        optimiser.copy_to_clipboard = options.copy_to_clipboard
        optimiser.start(op.label, aggressive=aggressive)
        cancelled = threading.Event()
        self._jobs[id] = cancelled
        context = _JobContext(
            id=id,
            type=optimiser.type,
            path=path,
            backup_path=optimiser.backup_path,
            current_size=optimiser.old_size,
            cancelled=cancelled,
        )
        self.registry.queue_for(optimiser.type).submit(self._run_job, context, op, aggressive)

    def _finish_job(self, id: str, outcome: _Outcome | None) -> None:
        self._jobs.pop(id, None)
        optimiser = self.registry.get(id)
        snapshot = optimiser.snapshot() if optimiser is not None else None
        for handle in self._owned.pop(id, []):
            handle._complete(snapshot)
        if optimiser is not None and optimiser.hidden and not optimiser.running and id not in self._parked:
            self.registry.remove(id)
        if id in self._parked:
            self._waiting.setdefault(id, []).extend(self._parked.pop(id))
        self.debouncer.finished(id)

    def _complete(self, id: str, op: _Operation, outcome: _Outcome) -> None:
        optimiser = self.registry.get(id)
        if optimiser is None:
            self._finish_job(id, outcome)
            return

        if outcome.backup_path is not None:
            optimiser.backup_path = outcome.backup_path
        if outcome.old_size is not None:
            optimiser.old_size = outcome.old_size

        error = outcome.error
        options = op.options
        if error is None:
            if outcome.type is not None and outcome.type != optimiser.type:
                optimiser.type = outcome.type
            if outcome.converted_from is not None:
                optimiser.converted_from_path = outcome.converted_from
            if outcome.thumbnail_path is not None:
                optimiser.thumbnail_path = outcome.thumbnail_path
            optimiser.finish_success(
                outcome.old_bytes,
                outcome.new_bytes,
                old_size=outcome.old_size,
                new_size=outcome.new_size,
                result_path=outcome.result_path,
                remove_after_ms=options.remove_after_ms,
            )
        elif isinstance(error, Cancelled):
            if optimiser.running:
                optimiser.stop(remove=False)
        elif isinstance(error, AlreadyOptimised):
            optimiser.finish_notice(error.summary, error.size_bytes, error.size_bytes, options.remove_after_ms)
        elif isinstance(error, ResultNotSmaller):
            optimiser.finish_notice(error.summary, error.old_bytes, error.old_bytes, options.remove_after_ms)
        elif is_notice(error):
            optimiser.finish_notice(str(error), remove_after_ms=options.remove_after_ms)
        else:
            if not isinstance(error, SquishError):
                self.logger.error("💥 %s failed", id, exc_info=error)
            optimiser.finish_error(error, options.remove_after_ms)
        self._finish_job(id, outcome)

    def _stop(self, id: str, remove: bool) -> OptimiserSnapshot | None:
        self._drop_scheduled(id)
        self._signal_job(id)
        optimiser = self.registry.get(id)
        if optimiser is None:
            self._complete_waiting(id, None)
            return None
        optimiser.stop(remove=remove)
        snapshot = optimiser.snapshot()
        self._complete_waiting(id, snapshot)
        return snapshot

    def _drop_scheduled(self, id: str) -> None:
        self.debouncer.cancel(id)
        if self.debouncer.is_running(id) and id not in self._jobs:
            # Dispatched, but _begin has not run yet
            self._skip_begin.add(id)

    def _signal_job(self, id: str) -> None:
        event = self._jobs.get(id)
        if event is not None:
            event.set()

    def _cancel_pending(self, id: str) -> None:
        if self.debouncer.cancel(id):
            optimiser = self.registry.get(id)
            self._complete_waiting(id, optimiser.snapshot() if optimiser else None)

    def _restore(self, id: str, asset_type: AssetType, path: Path | None) -> OptimiserSnapshot | None:
        optimiser = self.registry.get(id)
        if optimiser is None:
            if path is None:
                return None
            optimiser = self.registry.get_or_create(id, asset_type, operation="Restoring", source="api", source_path=path)
        self._drop_scheduled(id)
        if optimiser.running:
            self._signal_job(id)
            optimiser.stop(remove=False)
        try:
            optimiser.restore_original()
        except (SquishError, OSError) as e:
            self.logger.error("❌ Restore of %s failed: %s", id, e)
            optimiser.finish_error(e)
        return optimiser.snapshot()

    def _complete_waiting(self, id: str, snapshot: OptimiserSnapshot | None) -> None:
        for handle in self._waiting.pop(id, []) + self._parked.pop(id, []):
            handle._complete(snapshot)

    def _complete_all_waiting(self) -> None:
        for id in set(self._waiting) | set(self._parked) | set(self._owned):
            optimiser = self.registry.get(id)
            snapshot = optimiser.snapshot() if optimiser else None
            self._complete_waiting(id, snapshot)
            for handle in self._owned.pop(id, []):
                handle._complete(snapshot)

    def _attach(self, id: str, handle: ProcessHandle) -> None:
        optimiser = self.registry.get(id)
        event = self._jobs.get(id)
        if optimiser is None or not optimiser.running or event is None or event.is_set():
            self.runner.terminate(handle)
            return
        optimiser.attach_process(handle)

    def _detach(self, id: str, handle: ProcessHandle) -> None:
        optimiser = self.registry.get(id)
        if optimiser is not None:
            optimiser.detach_process(handle)

    def _progress(self, id: str, progress: Progress) -> None:
        optimiser = self.registry.get(id)
        if optimiser is not None:
            optimiser.update_progress(progress)

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------
    def _begin_download(self, optimiser: AssetOptimiser, url: str, op: _Operation) -> None:
        optimiser.url = url
        optimiser.start("Downloading")
        cancelled = threading.Event()
        self._jobs[optimiser.id] = cancelled

        def _report(progress: Progress) -> None:
            self.coordinator.post(self._progress, optimiser.id, progress)

        def _fetch() -> None:
            try:
                path, asset_type = download(url, self.settings.downloads_dir, on_progress=_report, cancelled=cancelled)
            except BaseException as e:
                self.coordinator.post(self._complete, optimiser.id, op, _Outcome(error=e))
                return
            self.coordinator.post(self._downloaded, optimiser.id, path, asset_type, op)

        self._downloads.submit(_fetch)

    def _downloaded(self, id: str, path: Path, asset_type: AssetType, op: _Operation) -> None:
        optimiser = self.registry.get(id)
        self._jobs.pop(id, None)
        if optimiser is None or not optimiser.running:
            path.unlink(missing_ok=True)
            self._finish_job(id, None)
            return
        optimiser.type = asset_type
        optimiser.source_path = path
        optimiser.starting_path = path
        # Still "running" for the debouncer: go straight to the transform
        optimiser.running = False
        self._begin(id, op)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------
    def _run_job(self, context: _JobContext, op: _Operation, aggressive: bool) -> None:
        try:
            outcome = self._transform(context, op, aggressive)
        except BaseException as e:
            outcome = _Outcome(error=e, backup_path=context.backup_path)
        self.coordinator.post(self._complete, context.id, op, outcome)

    def _timeout_for(self, asset_type: AssetType) -> float | None:
        return {
            "image": self.settings.IMAGE_TIMEOUT,
            "video": self.settings.VIDEO_TIMEOUT,
            "pdf": self.settings.PDF_TIMEOUT,
        }[kind_of(asset_type)]

    def _check_already_optimised(self, path: Path) -> str:
        """Raise *AlreadyOptimised* for marked or known-output files; return the content digest."""
        size = path.stat().st_size
        if self.backups.has_optimisation_marker(path):
            raise AlreadyOptimised(path, size)
        digest = compute_file_sha256(path)
        with self._hash_lock:
            known = digest in self._output_digests
        if known:
            raise AlreadyOptimised(path, size)
        return digest

    def _cached_result(self, digest: str | None, job: TransformJob) -> TransformResult | None:
        """Copy a previous result for identical source content into scratch."""
        if digest is None:
            return None
        with self._hash_lock:
            cached = self._results_by_source.get((digest, job.aggressive, job.adaptive))
        if cached is None or not cached.path.exists() or cached.path.stat().st_size != cached.bytes:
            return None
        target = job.scratch_path(cached.path.suffix, "cached")
        shutil.copy2(cached.path, target)
        self.logger.info("♻️ Reusing earlier result for %s", job.input_path.name)
        return TransformResult(path=target, bytes=cached.bytes, type=cached.type, size=cached.size)

    def _transform(self, context: _JobContext, op: _Operation, aggressive: bool) -> _Outcome:
        path = context.path
        options = op.options
        if not path.exists():
            raise SourceNotFound(path)

        digest = None
        if op.kind == "optimise" and not options.force and not options.from_original:
            digest = self._check_already_optimised(path)

        backup_path = self.backups.backup(path)
        outcome = _Outcome(backup_path=backup_path)
        reads_original = options.from_original or op.kind in ("downscale", "crop", "change_speed")
        input_path = backup_path if reads_original else path

        old_bytes = path.stat().st_size
        old_size = media_size(input_path, context.type, self.engine_config)
        previous_marker = self.backups.marker(path)
        self.backups.set_optimisation_marker(path, MarkerValue.PENDING)

        scratch_dir = self.settings.scratch_dir / f"{hashlib.sha1(context.id.encode()).hexdigest()[:12]}-{uuid.uuid4().hex[:8]}"
        job = TransformJob(
            asset_id=context.id,
            input_path=input_path,
            type=context.type,
            scratch_dir=scratch_dir,
            runner=self.runner,
            engine_config=self.engine_config,
            settings=self.settings,
            aggressive=aggressive,
            adaptive=self.settings.ADAPTIVE_IMAGE_SIZE if options.adaptive is None else options.adaptive,
            allow_larger=options.allow_larger,
            timeout=self._timeout_for(context.type),
            description=op.label,
            current_size=old_size,
            attach_process=lambda h: self.coordinator.post(self._attach, context.id, h),
            detach_process=lambda h: self.coordinator.post(self._detach, context.id, h),
            report_progress=lambda p: self.coordinator.post(self._progress, context.id, p),
        )

        try:
            result = self._cached_result(digest, job) or self._dispatch(job, op, old_size)
            if context.cancelled.is_set():
                raise Cancelled(context.id)
            destination = self._destination(path, result, options)
            atomic_replace(destination, result.path, keep_source=False, marker=MarkerValue.OPTIMISED)
        except BaseException:
            self._restore_marker(path, previous_marker)
            raise
        finally:
            shutil.rmtree(scratch_dir, ignore_errors=True)

        if destination != path:
            self._restore_marker(path, previous_marker)
        self._remember(digest, job, destination, result)
        if is_image(result.type) and self.settings.THUMBNAIL_SIZE > 0:
            name = f"{hashlib.sha1(context.id.encode()).hexdigest()[:12]}.png"
            outcome.thumbnail_path = make_thumbnail(
                destination, self.settings.thumbnails_dir / name, self.settings.THUMBNAIL_SIZE
            )

        outcome.old_bytes = old_bytes
        outcome.new_bytes = result.bytes
        outcome.old_size = old_size
        outcome.new_size = result.size
        outcome.result_path = destination
        outcome.type = result.type
        outcome.converted_from = path if result.converted else None
        self.logger.info(
            "✅ %s: %s -> %s bytes (%s)",
            destination.name,
            old_bytes,
            result.bytes,
            op.label.lower(),
        )
        return outcome

    def _dispatch(self, job: TransformJob, op: _Operation, old_size: tuple[int, int] | None) -> TransformResult:
        transformer = transformer_for(job.type)
        match op.kind:
            case "optimise":
                return transformer.optimise(job)
            case "downscale":
                factor = op.factor
                if op.size is not None:
                    if old_size is None:
                        raise ValueError(f"Cannot read the size of {job.input_path}")
                    factor = min(op.size[0] / old_size[0], op.size[1] / old_size[1], 1.0)
                return transformer.downscale(job, factor or 1.0)
            case "crop":
                return transformer.crop(job, op.size)
            case "change_speed":
                return transformer.change_speed(job, op.factor or 1.0)
            case "remove_audio":
                return transformer.remove_audio(job)
            case _:
                raise ValueError(f"Unknown operation {op.kind}")

    def _destination(self, path: Path, result: TransformResult, options: OptimiseOptions) -> Path:
        extension = result.path.suffix
        if options.output_path_template:
            destination = render_output_path(options.output_path_template, path, extension)
            destination.parent.mkdir(parents=True, exist_ok=True)
            return destination
        if result.converted:
            return path.with_suffix(extension)
        return path

    def _restore_marker(self, path: Path, previous: str | None) -> None:
        if not path.exists():
            return
        if previous is None:
            self.backups.clear_marker(path)
        else:
            self.backups.set_optimisation_marker(path, previous)

    def _remember(self, source_digest: str | None, job: TransformJob, path: Path, result: TransformResult) -> None:
        try:
            digest = compute_file_sha256(path)
        except OSError:
            return
        with self._hash_lock:
            self._output_digests.add(digest)
            if source_digest is not None:
                key = (source_digest, job.aggressive, job.adaptive)
                self._results_by_source[key] = _CachedResult(path, result.bytes, result.type, result.size)
