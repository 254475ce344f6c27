"""Launch and supervise external compressors.

Every invocation writes its stdout/stderr to files under
``<workdir>/proc/<token>/attempt-N/`` rather than pipes, so that chatty tools
(ffmpeg with ``-progress``) can never block on a full pipe buffer and the
:class:`~squish.progress.ProgressTracker` can tail the capture while the
process runs.

Processes terminated by the engine itself are recorded in a
:class:`CancellationRegistry` *before* the signal is sent. The exit inspection
step consults it to tell "we killed it" apart from "it crashed".
"""

from __future__ import annotations

import logging
import shutil
import signal
import subprocess
import threading
import time
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path

from .config import DEFAULT_SETTINGS, EngineSettings
from .errors import Cancelled, ToolExitedNonZero, ToolLaunchFailed, ToolTimedOut

__all__ = [
    "CancellationRegistry",
    "ExitResult",
    "ProcessHandle",
    "ToolInvocation",
    "ToolRunner",
]


class CancellationRegistry:
    """Thread-safe set of pids that the engine terminated on purpose."""

    def __init__(self) -> None:
        self._pids: set[int] = set()
        self._lock = threading.Lock()

    def mark_cancelled(self, pid: int) -> None:
        with self._lock:
            self._pids.add(pid)

    def was_cancelled(self, pid: int) -> bool:
        with self._lock:
            return pid in self._pids

    def discard(self, pid: int) -> None:
        with self._lock:
            self._pids.discard(pid)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pids)


@dataclass(frozen=True)
class ToolInvocation:
    """Everything needed to (re)spawn one external command."""

    command: str
    args: tuple[str, ...]
    env: Mapping[str, str] | None = None
    max_attempts: int = 3
    timeout: float | None = None
    no_retry_exit_codes: frozenset[int] = frozenset()
    cwd: Path | None = None

    @property
    def name(self) -> str:
        return Path(self.command).name

    @property
    def command_line(self) -> str:
        return " ".join([self.command, *self.args])


@dataclass(eq=False)
class ProcessHandle:
    """A running (or finished) external process, re-pointed on every retry.

    The handle object stays the same across attempts so owners can keep it in
    a set; ``process``, ``attempt`` and the capture paths change.
    """

    invocation: ToolInvocation
    token: str
    capture_root: Path
    on_spawn: Callable[[ProcessHandle], None] | None = None
    process: subprocess.Popen | None = None
    attempt: int = 0
    started_at: float = 0.0
    stop_requested: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def attempt_dir(self) -> Path:
        return self.capture_root / f"attempt-{self.attempt}"

    @property
    def stdout_path(self) -> Path:
        return self.attempt_dir / "stdout"

    @property
    def stderr_path(self) -> Path:
        return self.attempt_dir / "stderr"

    def is_alive(self) -> bool:
        return self.process is not None and self.process.poll() is None


@dataclass(frozen=True)
class ExitResult:
    command: str
    args: tuple[str, ...]
    returncode: int | None
    stdout: str
    stderr: str
    attempts: int
    cancelled: bool = False
    timed_out: bool = False
    timeout: float | None = None
    pid: int | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.cancelled and not self.timed_out


def _read_capture(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return ""


class ToolRunner:
    """Spawn external tools with file-backed capture, retries and cancellation."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        cancellations: CancellationRegistry | None = None,
    ) -> None:
        self.settings = settings or DEFAULT_SETTINGS
        self.cancellations = cancellations or CancellationRegistry()
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------
    def run(
        self,
        command: str,
        args: Sequence[str],
        env: Mapping[str, str] | None = None,
        max_attempts: int | None = None,
        on_spawn: Callable[[ProcessHandle], None] | None = None,
        timeout: float | None = None,
        no_retry_exit_codes: Iterable[int] = (),
        capture_dir: Path | None = None,
        cwd: Path | None = None,
    ) -> ProcessHandle:
        """Start *command* and return its handle without waiting.

        Raises:
            ToolLaunchFailed: the binary is missing or not executable
        """
        invocation = ToolInvocation(
            command=command,
            args=tuple(str(a) for a in args),
            env=env,
            max_attempts=max_attempts or self.settings.MAX_ATTEMPTS,
            timeout=timeout,
            no_retry_exit_codes=frozenset(no_retry_exit_codes),
            cwd=cwd,
        )
        token = f"{invocation.name}-{uuid.uuid4().hex[:12]}"
        root = (capture_dir or self.settings.process_dir) / token
        handle = ProcessHandle(invocation=invocation, token=token, capture_root=root, on_spawn=on_spawn)
        self._spawn(handle)
        return handle

    def _spawn(self, handle: ProcessHandle) -> bool:
        invocation = handle.invocation
        with handle._lock:
            if handle.stop_requested:
                return False
            handle.attempt += 1
            handle.attempt_dir.mkdir(parents=True, exist_ok=True)
            self.logger.debug(
                "🚀 %s (attempt %d/%d): %s",
                invocation.name,
                handle.attempt,
                invocation.max_attempts,
                invocation.command_line,
            )
            with open(handle.stdout_path, "wb") as out, open(handle.stderr_path, "wb") as err:
                try:
                    handle.process = subprocess.Popen(
                        [invocation.command, *invocation.args],
                        stdin=subprocess.DEVNULL,
                        stdout=out,
                        stderr=err,
                        env=dict(invocation.env) if invocation.env is not None else None,
                        cwd=invocation.cwd,
                    )
                except OSError as e:
                    raise ToolLaunchFailed(invocation.command, str(e)) from e
            handle.started_at = time.monotonic()

        if handle.on_spawn is not None:
            handle.on_spawn(handle)
        return True

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------
    def wait(self, handle: ProcessHandle) -> ExitResult:
        """Block until *handle* exits, retrying failed attempts.

        Retries are skipped when the process was terminated by us, when it
        timed out and when its exit code is one the tool documents as
        deterministic (``no_retry_exit_codes``).
        """
        invocation = handle.invocation
        while True:
            process = handle.process
            if process is None:
                raise RuntimeError(f"{invocation.name} was never started")
            timed_out = False
            try:
                returncode = process.wait(timeout=self._remaining(handle))
            except subprocess.TimeoutExpired:
                self.logger.warning("⏱️ %s timed out after %ss, killing pid %d", invocation.name, invocation.timeout, process.pid)
                process.kill()
                returncode = process.wait()
                timed_out = True

            pid = process.pid
            cancelled = returncode != 0 and self.cancellations.was_cancelled(pid)
            self.cancellations.discard(pid)
            stdout = _read_capture(handle.stdout_path)
            stderr = _read_capture(handle.stderr_path)

            result = ExitResult(
                command=invocation.command,
                args=invocation.args,
                returncode=returncode,
                stdout=stdout,
                stderr=stderr,
                attempts=handle.attempt,
                cancelled=cancelled or (returncode != 0 and handle.stop_requested),
                timed_out=timed_out,
                timeout=invocation.timeout,
                pid=pid,
            )

            if result.ok or result.cancelled or timed_out:
                return result
            if returncode in invocation.no_retry_exit_codes:
                self.logger.info("%s exited with %d, not retrying", invocation.name, returncode)
                return result
            if handle.attempt >= invocation.max_attempts:
                return result
            self.logger.warning(
                "🔄 %s failed with exit %s, retrying (%d/%d)",
                invocation.name,
                returncode,
                handle.attempt + 1,
                invocation.max_attempts,
            )
            if not self._spawn(handle):
                return replace(result, cancelled=True)

    def _remaining(self, handle: ProcessHandle) -> float | None:
        timeout = handle.invocation.timeout
        if timeout is None:
            return None
        return max(timeout - (time.monotonic() - handle.started_at), 0.0)

    def check(self, result: ExitResult) -> ExitResult:
        """Raise the matching error for a failed *result*, else return it."""
        if result.cancelled:
            raise Cancelled(result.command, result.pid)
        if result.timed_out:
            raise ToolTimedOut(result.command, result.args, result.timeout or 0.0, result.stdout, result.stderr)
        if result.returncode != 0:
            self.logger.error(
                "❌ %s failed after %d attempt(s) with exit %s\nSTDOUT:\n%s\nSTDERR:\n%s",
                Path(result.command).name,
                result.attempts,
                result.returncode,
                result.stdout.strip(),
                result.stderr.strip(),
            )
            raise ToolExitedNonZero(result.command, result.args, result.stdout, result.stderr, result.returncode)
        return result

    def run_and_wait(self, command: str, args: Sequence[str], **kwargs) -> ExitResult:
        """Run *command* to completion and :meth:`check` the result.

        Capture files of successful runs are deleted; failed ones are kept for
        diagnostics until the work directory is pruned.
        """
        handle = self.run(command, args, **kwargs)
        result = self.check(self.wait(handle))
        self.discard_captures(handle)
        return result

    def run_many(self, invocations: Sequence[Mapping], **common) -> list[ExitResult | BaseException]:
        """Run several commands concurrently and wait for all of them.

        Each item of *invocations* is a mapping of :meth:`run_and_wait`
        keyword arguments (``command``, ``args`` and optional overrides).
        Failures are returned in place of results so a caller can keep the
        candidates that did succeed.
        """
        if not invocations:
            return []

        def _one(invocation: Mapping) -> ExitResult:
            kwargs = {**common, **invocation}
            return self.run_and_wait(kwargs.pop("command"), kwargs.pop("args"), **kwargs)

        results: list[ExitResult | BaseException] = []
        with ThreadPoolExecutor(max_workers=len(invocations), thread_name_prefix="squish-dual") as pool:
            futures = [pool.submit(_one, invocation) for invocation in invocations]
            for future in futures:
                error = future.exception()
                results.append(error if error is not None else future.result())
        return results

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def terminate(self, handle: ProcessHandle, grace: float | None = None) -> bool:
        """Terminate *handle*'s process on behalf of the engine.

        The pid is recorded as cancelled before SIGTERM is sent; if the
        process is still alive after *grace* seconds it gets SIGKILL.
        Returns ``True`` if a live process was signalled.
        """
        grace = self.settings.TERMINATE_GRACE if grace is None else grace
        with handle._lock:
            handle.stop_requested = True
            process = handle.process
            if process is None or process.poll() is not None:
                return False
            self.cancellations.mark_cancelled(process.pid)
            self.logger.info("⏹️ Terminating %s (pid %d)", handle.invocation.name, process.pid)
            try:
                process.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                return False

        def _escalate() -> None:
            if process.poll() is None:
                self.logger.warning("Killing %s (pid %d) after %.1fs grace", handle.invocation.name, process.pid, grace)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass

        timer = threading.Timer(grace, _escalate)
        timer.daemon = True
        timer.start()
        return True

    def discard_captures(self, handle: ProcessHandle) -> None:
        shutil.rmtree(handle.capture_root, ignore_errors=True)
