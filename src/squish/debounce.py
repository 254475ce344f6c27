"""Key-based debouncing of work.

A burst of requests for the same key (a file being saved in several writes,
a user hammering the downscale shortcut) collapses into a single job that
runs with the parameters of the last request.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable
from dataclasses import dataclass

__all__ = ["DebounceCoalescer"]

logger = logging.getLogger(__name__)


@dataclass
class _Pending:
    timer: threading.Timer
    work: Callable[[], None]


class DebounceCoalescer:
    """Schedule work per key, replacing anything not yet started.

    Work handed off by a fired timer marks its key as running. While a key is
    running a new :meth:`schedule` does not interrupt it; the request is parked
    as the single follow-up and started by :meth:`finished`.
    """

    def __init__(self, dispatch: Callable[[Callable[[], None]], None] | None = None) -> None:
        # ``dispatch`` decides on which thread fired work runs (default: timer thread)
        self._dispatch = dispatch or (lambda work: work())
        self._pending: dict[Hashable, _Pending] = {}
        self._follow_ups: dict[Hashable, tuple[float, Callable[[], None]]] = {}
        self._running: set[Hashable] = set()
        self._lock = threading.RLock()

    def schedule(self, key: Hashable, delay: float, work: Callable[[], None]) -> bool:
        """Run *work* for *key* after *delay* seconds, superseding pending work.

        Returns ``True`` when *work* was parked behind a running job.
        """
        with self._lock:
            if key in self._running:
                if key in self._follow_ups:
                    logger.debug("Replacing parked follow-up for %s", key)
                self._follow_ups[key] = (delay, work)
                return True

            previous = self._pending.pop(key, None)
            if previous is not None:
                previous.timer.cancel()
                logger.debug("Superseded pending work for %s", key)

            if delay <= 0:
                self._running.add(key)
            else:
                timer = threading.Timer(delay, self._fire, args=(key,))
                timer.daemon = True
                self._pending[key] = _Pending(timer, work)
                timer.start()
                return False

        self._dispatch(work)
        return False

    def _fire(self, key: Hashable) -> None:
        with self._lock:
            pending = self._pending.pop(key, None)
            if pending is None or threading.current_thread() is not pending.timer:
                # Cancelled or superseded between firing and acquiring the lock
                if pending is not None:
                    self._pending[key] = pending
                return
            self._running.add(key)
        self._dispatch(pending.work)

    def cancel(self, key: Hashable) -> bool:
        """Drop pending and parked work for *key*; in-flight work is untouched."""
        with self._lock:
            pending = self._pending.pop(key, None)
            if pending is not None:
                pending.timer.cancel()
            parked = self._follow_ups.pop(key, None)
            return pending is not None or parked is not None

    def finished(self, key: Hashable) -> None:
        """Mark the running work for *key* done and start its follow-up, if any."""
        with self._lock:
            self._running.discard(key)
            follow_up = self._follow_ups.pop(key, None)
        if follow_up is not None:
            # The debounce window already elapsed while the previous run was busy
            self.schedule(key, 0, follow_up[1])

    def is_pending(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._pending or key in self._follow_ups

    def is_running(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._running

    def cancel_all(self) -> None:
        with self._lock:
            for pending in self._pending.values():
                pending.timer.cancel()
            self._pending.clear()
            self._follow_ups.clear()
