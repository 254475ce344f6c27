from __future__ import annotations

"""Abstract interfaces for the per-type transforms.

A :class:`Transformer` knows how to build command lines for one asset type:
full optimise, downscale-by-factor, crop-to-size and, for videos, speed
change and audio removal. Every method receives a :class:`TransformJob`
describing where to read from and where scratch output may be written, and
returns a :class:`TransformResult` that lives in the job's scratch directory.

Transformers never touch the caller-visible file; the engine does the
backup and atomic replace once a result is returned.
"""

import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from .asset_types import AssetType, unsupported
from .config import DEFAULT_ENGINE_CONFIG, DEFAULT_SETTINGS, EngineConfig, EngineSettings
from .process_runner import ExitResult, ProcessHandle, ToolRunner
from .progress import Progress, ProgressGrammar, ProgressTracker


@dataclass(frozen=True)
class TransformResult:
    """Output of a transform, still in scratch space."""

    path: Path
    bytes: int
    type: AssetType
    size: tuple[int, int] | None = None
    #: Set when the transform changed the file format (e.g. TIFF -> PNG)
    converted_from: Path | None = None

    @property
    def converted(self) -> bool:
        return self.converted_from is not None


@dataclass
class TransformJob:
    """One unit of transform work for a single asset."""

    asset_id: str
    input_path: Path
    type: AssetType
    scratch_dir: Path
    runner: ToolRunner
    engine_config: EngineConfig = field(default_factory=lambda: DEFAULT_ENGINE_CONFIG)
    settings: EngineSettings = field(default_factory=lambda: DEFAULT_SETTINGS)
    aggressive: bool = False
    adaptive: bool = False
    allow_larger: bool = False
    timeout: float | None = None
    description: str = "Optimising"
    #: Current pixel size (or page size in points), if known
    current_size: tuple[int, int] | None = None
    attach_process: Callable[[ProcessHandle], None] | None = None
    detach_process: Callable[[ProcessHandle], None] | None = None
    report_progress: Callable[[Progress], None] | None = None

    def scratch_path(self, suffix: str, tag: str = "out") -> Path:
        """A fresh path inside this job's scratch directory."""
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        stem = Path(self.input_path).stem
        return self.scratch_dir / f"{stem}.{tag}-{uuid.uuid4().hex[:8]}.{suffix.lstrip('.')}"

    def _on_spawn(self, grammar: ProgressGrammar | None, total: int | None) -> Callable[[ProcessHandle], None]:
        # One tracker for every attempt of the command
        tracker = None
        if grammar is not None and self.report_progress is not None:
            tracker = ProgressTracker(grammar, self.report_progress, initial_total=total, description=self.description)

        def _spawned(handle: ProcessHandle) -> None:
            if self.attach_process is not None:
                self.attach_process(handle)
            if tracker is not None:
                process = handle.process
                path = handle.stderr_path if grammar.stream == "stderr" else handle.stdout_path
                tracker.follow(path, lambda: process is not None and process.poll() is None)

        return _spawned

    def run_tool(
        self,
        command: str,
        args: Sequence[str],
        *,
        grammar: ProgressGrammar | None = None,
        total: int | None = None,
        no_retry_exit_codes: Iterable[int] = (),
        env: Mapping[str, str] | None = None,
    ) -> ExitResult:
        """Run one external tool for this job, raising on failure."""
        handle = self.runner.run(
            command,
            args,
            env=env,
            max_attempts=self.settings.MAX_ATTEMPTS,
            on_spawn=self._on_spawn(grammar, total),
            timeout=self.timeout,
            no_retry_exit_codes=no_retry_exit_codes,
        )
        try:
            result = self.runner.check(self.runner.wait(handle))
        finally:
            if self.detach_process is not None:
                self.detach_process(handle)
        self.runner.discard_captures(handle)
        return result

    def run_candidates(self, candidates: Sequence[Callable[[], TransformResult]]) -> list[TransformResult | BaseException]:
        """Run competing tool chains concurrently and wait for all of them."""
        with ThreadPoolExecutor(max_workers=max(len(candidates), 1), thread_name_prefix="squish-candidate") as pool:
            futures = [pool.submit(candidate) for candidate in candidates]
            return [f.exception() or f.result() for f in futures]


class Transformer(ABC):
    """Common behaviour for every per-type transform implementation.

    Sub-classes should *not* execute anything in the constructor – keep them
    lightweight so they can be instantiated freely by the dispatcher.
    """

    #: Human-readable name, e.g. ``"image"``
    NAME: str = "transformer"

    #: External tools the transformer may launch (keys of system_tools)
    TOOLS: tuple[str, ...] = ()

    @abstractmethod
    def optimise(self, job: TransformJob) -> TransformResult:
        """Optimise *job.input_path* without changing its dimensions."""

    @abstractmethod
    def downscale(self, job: TransformJob, factor: float) -> TransformResult:
        """Shrink by *factor* (0 < factor < 1) and optimise the result."""

    @abstractmethod
    def crop(self, job: TransformJob, size: tuple[int, int]) -> TransformResult:
        """Crop to the aspect ratio of *size*, scale to it and optimise."""

    def change_speed(self, job: TransformJob, factor: float) -> TransformResult:
        unsupported(job.type, "change speed of")

    def remove_audio(self, job: TransformJob) -> TransformResult:
        unsupported(job.type, "remove audio from")
