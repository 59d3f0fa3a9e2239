import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Deque, Tuple


class BoundedTaskQueue:
    """Fixed-concurrency FIFO scheduler for expensive media work.

    Uses the submit-on-demand pattern: tasks wait in a local deque and are
    handed to the thread pool only when a slot frees up, so at most
    ``max_concurrent`` run at once and waiting tasks start in submission
    order. A failing task settles only its own future.
    """

    def __init__(self, max_concurrent: int = 6, name: str = "clipfolio-queue"):
        try:
            self.max_concurrent = max(1, int(max_concurrent))
        except (TypeError, ValueError):
            self.max_concurrent = 1
        self.logger = logging.getLogger(__name__)
        self._pending: Deque[Tuple[Future, Callable[..., Any], tuple, dict]] = deque()
        self._running = 0
        self._closed = False
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=self.max_concurrent, thread_name_prefix=name)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def running_count(self) -> int:
        with self._lock:
            return self._running

    def submit(self, fn: Callable[..., Any], *args, **kwargs) -> Future:
        """Queues ``fn(*args, **kwargs)`` and returns a future for its result."""
        future: Future = Future()
        with self._lock:
            if self._closed:
                raise RuntimeError("Task queue is shut down")
            self._pending.append((future, fn, args, kwargs))
        self._pump()
        return future

    def _pump(self):
        to_start = []
        with self._lock:
            while self._running < self.max_concurrent and self._pending:
                future, fn, args, kwargs = self._pending.popleft()
                # Skips futures the caller cancelled while they were waiting
                if not future.set_running_or_notify_cancel():
                    continue
                self._running += 1
                to_start.append((future, fn, args, kwargs))
        for item in to_start:
            self._executor.submit(self._run, *item)

    def _run(self, future: Future, fn: Callable[..., Any], args: tuple, kwargs: dict):
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            self.logger.debug(f"QUEUE_TASK_FAILED: {getattr(fn, '__name__', fn)}: {exc}")
            future.set_exception(exc)
        else:
            future.set_result(result)
        finally:
            with self._lock:
                self._running -= 1
            self._pump()

    def shutdown(self, wait: bool = True, cancel_pending: bool = False):
        # Without waiting nobody drains the backlog, so it is always dropped
        with self._lock:
            self._closed = True
            dropped = list(self._pending) if (cancel_pending or not wait) else []
            if dropped:
                self._pending.clear()
        for future, *_ in dropped:
            future.cancel()
        if wait:
            # Drain the remaining backlog before closing the pool
            while True:
                with self._lock:
                    idle = not self._pending and self._running == 0
                if idle:
                    break
                threading.Event().wait(0.01)
        self._executor.shutdown(wait=wait)
