"""
Fire-and-forget execution of side effects (impression counting, view recording) off the
request path. Failures are logged and never propagate to the submitter.
"""

import queue
import threading
import time
from typing import Callable

from ..util.logging import logger


class BackgroundWriter:
    """Single worker thread draining a bounded queue of write callables."""

    def __init__(self, name: str = "background-writer", maxsize: int = 10000, synchronous: bool = False):
        self.name = name
        self.synchronous = synchronous
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._thread = None
        self._stop_event = threading.Event()
        self._start_lock = threading.Lock()
        self.dropped = 0
        self.failed = 0

    def start(self):
        with self._start_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()

    def submit(self, func: Callable, *args, **kwargs) -> bool:
        """Queue a write. Returns False if it was dropped because the queue is full."""
        if self.synchronous:
            self._execute(func, args, kwargs)
            return True

        if self._thread is None or not self._thread.is_alive():
            self.start()

        try:
            self._queue.put_nowait((func, args, kwargs))
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning(f"{self.name}: queue full, dropped write {getattr(func, '__name__', func)}")
            return False

    def flush(self, timeout: float = 5.0) -> bool:
        """Block until every queued write has run. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def stop(self, timeout: float = 5.0):
        """Drain outstanding writes and stop the worker."""
        if self._thread is None:
            return
        self.flush(timeout)
        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None

    def pending(self) -> int:
        return self._queue.qsize()

    def _run(self):
        while not self._stop_event.is_set():
            try:
                func, args, kwargs = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._execute(func, args, kwargs)
            finally:
                self._queue.task_done()

    def _execute(self, func: Callable, args, kwargs):
        try:
            func(*args, **kwargs)
        except Exception as e:
            # Writes are best-effort from the caller's point of view
            self.failed += 1
            logger.error(f"{self.name}: write {getattr(func, '__name__', func)} failed: {e}")
