"""Turn streaming tool output into structured progress.

A :class:`ProgressGrammar` is two regexes plus callbacks: one recognises the
"total" line a tool prints once, the other the repeated "current" lines.
:class:`ProgressTracker` applies a grammar to lines fed to it, either pushed
with :meth:`ProgressTracker.feed` or read by tailing a capture file.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

__all__ = [
    "FFMPEG_GRAMMAR",
    "GHOSTSCRIPT_GRAMMAR",
    "Progress",
    "ProgressGrammar",
    "ProgressTracker",
    "format_hms",
]


@dataclass(frozen=True)
class Progress:
    completed_units: int = 0
    total_units: int = 0
    indeterminate: bool = True
    description: str = ""
    additional_description: str = ""

    @property
    def fraction(self) -> float | None:
        if self.indeterminate or self.total_units <= 0:
            return None
        return self.completed_units / self.total_units

    @classmethod
    def indeterminate_with(cls, description: str = "") -> Progress:
        return cls(description=description)


@dataclass(frozen=True)
class ProgressGrammar:
    """Per-tool recogniser for "total" and "current" output lines."""

    name: str
    total_pattern: re.Pattern[str]
    current_pattern: re.Pattern[str]
    parse_total: Callable[[re.Match[str]], int]
    parse_current: Callable[[re.Match[str]], int]
    describe: Callable[[int, int], str] = lambda completed, total: f"{completed} of {total}"
    #: Which capture file the tool writes progress to
    stream: str = "stderr"


def format_hms(microseconds: int) -> str:
    """Render a duration like ``1h 2m 3.456s`` (leading zero units omitted)."""
    total_seconds = microseconds / 1_000_000
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    parts = []
    if hours >= 1:
        parts.append(f"{int(hours)}h")
    if minutes >= 1 or parts:
        parts.append(f"{int(minutes)}m")
    parts.append(f"{seconds:.3f}s")
    return " ".join(parts)


def _ffmpeg_duration(match: re.Match[str]) -> int:
    hours, minutes, seconds, hundredths = (int(g) for g in match.groups())
    return ((hours * 60 + minutes) * 60 + seconds) * 1_000_000 + hundredths * 10_000


FFMPEG_GRAMMAR = ProgressGrammar(
    name="ffmpeg",
    total_pattern=re.compile(r"^\s*Duration: (\d{2,}):(\d{2,}):(\d{2,})\.(\d{2})"),
    current_pattern=re.compile(r"^out_time_us=(\d+)\s*$"),
    parse_total=_ffmpeg_duration,
    parse_current=lambda m: int(m.group(1)),
    describe=lambda completed, total: f"{format_hms(completed)} of {format_hms(total)}",
)

GHOSTSCRIPT_GRAMMAR = ProgressGrammar(
    name="ghostscript",
    total_pattern=re.compile(r"^Processing pages \d+ through (\d+)\."),
    current_pattern=re.compile(r"^Page (\d+)\s*$"),
    parse_total=lambda m: int(m.group(1)),
    parse_current=lambda m: int(m.group(1)),
    describe=lambda completed, total: f"Page {completed} of {total}",
    stream="stdout",
)


class ProgressTracker:
    """Apply a :class:`ProgressGrammar` to a line stream.

    ``on_progress`` receives an immutable :class:`Progress` every time the
    reported state changes. Completed units never decrease and never exceed
    the total once it is known. A total supplied up front (for instance from
    ffprobe) is kept; the first "total" line only upgrades an indeterminate
    tracker. After :meth:`close` (EOF) the tracker ignores further input
    until it is pointed at a new stream with :meth:`follow`.
    """

    def __init__(
        self,
        grammar: ProgressGrammar,
        on_progress: Callable[[Progress], None],
        initial_total: int | None = None,
        description: str = "",
    ) -> None:
        self.grammar = grammar
        self.on_progress = on_progress
        self.description = description
        self._total = initial_total if initial_total and initial_total > 0 else None
        self._completed = 0
        self._detached = False
        self._generation = 0
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def detached(self) -> bool:
        return self._detached

    @property
    def progress(self) -> Progress:
        with self._lock:
            return self._snapshot()

    def _snapshot(self) -> Progress:
        if self._total is None:
            return Progress(completed_units=0, total_units=0, indeterminate=True, description=self.description)
        return Progress(
            completed_units=self._completed,
            total_units=self._total,
            indeterminate=False,
            description=self.description,
            additional_description=self.grammar.describe(self._completed, self._total),
        )

    def feed(self, line: str) -> bool:
        """Consume one line; return ``True`` if progress changed."""
        with self._lock:
            if self._detached:
                return False
            changed = self._apply(line)
            snapshot = self._snapshot() if changed else None

        if snapshot is not None:
            self.on_progress(snapshot)
        return snapshot is not None

    def _apply(self, line: str) -> bool:
        if self._total is None:
            match = self.grammar.total_pattern.search(line)
            if match:
                total = self.grammar.parse_total(match)
                if total <= 0:
                    return False
                self._total = max(total, self._completed)
                self._completed = min(self._completed, self._total)
                return True

        match = self.grammar.current_pattern.search(line)
        if match is None:
            return False
        value = self.grammar.parse_current(match)
        if self._total is None:
            # Remember how far we got so the total never undercuts it
            self._completed = max(self._completed, value)
            return False
        value = min(value, self._total)
        if value <= self._completed:
            return False
        self._completed = value
        return True

    def close(self) -> None:
        """Detach from the stream; later lines are ignored."""
        with self._lock:
            self._detached = True

    # ------------------------------------------------------------------
    # File tailing
    # ------------------------------------------------------------------
    def follow(self, path: Path, is_alive: Callable[[], bool], poll_interval: float = 0.1) -> threading.Thread:
        """Tail *path* in a daemon thread until EOF after the process exits.

        Following another path (the next attempt of a retried command)
        supersedes the previous follower and re-opens a closed tracker;
        completed units carry over, so progress never goes backwards.
        """
        with self._lock:
            self._generation += 1
            generation = self._generation
            self._detached = False
        thread = threading.Thread(
            target=self._follow,
            args=(Path(path), is_alive, poll_interval, generation),
            name=f"progress-{self.grammar.name}",
            daemon=True,
        )
        self._thread = thread
        thread.start()
        return thread

    def _current(self, generation: int) -> bool:
        return generation == self._generation and not self._detached

    def _follow(self, path: Path, is_alive: Callable[[], bool], poll_interval: float, generation: int) -> None:
        try:
            while not path.exists():
                if not is_alive() or not self._current(generation):
                    return
                time.sleep(poll_interval)

            pending = ""
            with open(path, encoding="utf-8", errors="replace", newline="") as stream:
                while self._current(generation):
                    chunk = stream.readline()
                    if chunk:
                        pending += chunk
                        if pending.endswith(("\n", "\r")):
                            for line in pending.splitlines():
                                self.feed(line)
                            pending = ""
                        continue
                    if not is_alive():
                        # Drain whatever was written between the last read and exit
                        rest = pending + stream.read()
                        for line in rest.splitlines():
                            self.feed(line)
                        break
                    time.sleep(poll_interval)
        except OSError as e:
            logger.debug("Stopped following %s: %s", path, e)
        finally:
            with self._lock:
                if generation == self._generation:
                    self._detached = True

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
