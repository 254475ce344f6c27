"""The single writer thread.

All mutation of :class:`~squish.optimiser.AssetOptimiser` objects and of the
registry happens on the coordinator thread. Workers, timers and IPC handlers
hand results over with :meth:`Coordinator.post` (fire and forget) or
:meth:`Coordinator.call` (block for the return value).
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any, TypeVar

__all__ = ["Coordinator"]

T = TypeVar("T")

_STOP = object()


class Coordinator:
    def __init__(self, name: str = "squish-coordinator") -> None:
        self._queue: queue.SimpleQueue[Any] = queue.SimpleQueue()
        self._thread = threading.Thread(target=self._loop, name=name, daemon=True)
        self._stopped = threading.Event()
        self.logger = logging.getLogger(__name__)
        self._thread.start()

    def is_coordinator_thread(self) -> bool:
        return threading.current_thread() is self._thread

    def post(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Queue *fn* to run on the coordinator thread."""
        if self._stopped.is_set():
            self.logger.debug("Coordinator stopped, dropping %r", fn)
            return
        self._queue.put((fn, args, kwargs, None))

    def call(self, fn: Callable[..., T], *args: Any, timeout: float | None = None, **kwargs: Any) -> T:
        """Run *fn* on the coordinator thread and return its result.

        Called from the coordinator thread itself it runs inline.
        """
        if self.is_coordinator_thread():
            return fn(*args, **kwargs)
        future: Future[T] = Future()
        self._queue.put((fn, args, kwargs, future))
        return future.result(timeout)

    def flush(self, timeout: float | None = None) -> None:
        """Wait until everything posted so far has run."""
        self.call(lambda: None, timeout=timeout)

    def _loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            fn, args, kwargs, future = item
            if future is not None and not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args, **kwargs)
            except Exception as e:
                if future is not None:
                    future.set_exception(e)
                else:
                    self.logger.exception("💥 Unhandled error on coordinator: %s", e)
            else:
                if future is not None:
                    future.set_result(result)

    def stop(self, wait: bool = True) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        self._queue.put(_STOP)
        if wait and not self.is_coordinator_thread():
            self._thread.join()
