"""
Serialized retry queue for transient failures.

One worker thread drains a FIFO deque, one task at a time. A task that
fails transiently goes back to the *front* of the queue; anything else
resolves or rejects the caller's future. Delays wait on an Event so that
`shutdown()` interrupts them.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import MaxRetriesExceededError, RetryQueueClosedError, is_transient

logger = logging.getLogger(__name__)


def exponential_delay(base: float, attempt: int) -> float:
    """Backoff shared by retries and listener reconnects: base, 2*base, 4*base..."""
    if attempt < 1:
        return 0.0
    return base * (2 ** (attempt - 1))


@dataclass
class RetryTask:
    name: str
    operation: Callable[..., Any]
    args: tuple = ()
    kwargs: dict = field(default_factory=dict)
    attempts: int = 0
    future: Future = field(default_factory=Future)


class RetryQueue:
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        classify: Callable[[BaseException], bool] = is_transient,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._classify = classify
        self._tasks: deque[RetryTask] = deque()
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._worker: threading.Thread | None = None
        self.retries = 0

    def __len__(self) -> int:
        return len(self._tasks)

    def submit(self, operation: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        task = RetryTask(getattr(operation, "__name__", repr(operation)), operation, args, kwargs)
        with self._cond:
            # checked under the condition so shutdown can't miss this task
            if self._stop.is_set():
                raise RetryQueueClosedError()
            self._tasks.append(task)
            self._ensure_worker()
            self._cond.notify()
        logger.info("Queued %s for retry (%d pending)", task.name, len(self._tasks))
        return task.future

    def retry_operation(self, operation: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Queue `operation` and block until it resolves or is rejected."""
        return self.submit(operation, *args, **kwargs).result()

    def shutdown(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        with self._cond:
            pending = list(self._tasks)
            self._tasks.clear()
            self._cond.notify_all()
        for task in pending:
            if not task.future.done():
                task.future.set_exception(RetryQueueClosedError())
        if self._worker is not None and self._worker is not threading.current_thread():
            self._worker.join(timeout)

    def _ensure_worker(self) -> None:
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(target=self._run, name="crm-retry-worker", daemon=True)
            self._worker.start()

    def _run(self) -> None:
        while not self._stop.is_set():
            with self._cond:
                while not self._tasks and not self._stop.is_set():
                    self._cond.wait()
                if self._stop.is_set():
                    return
                task = self._tasks.popleft()
            self._process(task)

    def _process(self, task: RetryTask) -> None:
        task.attempts += 1
        if task.attempts > self.max_attempts:
            logger.error("Giving up on %s after %d attempts", task.name, task.attempts - 1)
            task.future.set_exception(MaxRetriesExceededError(task.name, task.attempts - 1))
            return

        delay = exponential_delay(self.base_delay, task.attempts)
        if delay and self._stop.wait(delay):
            task.future.set_exception(RetryQueueClosedError())
            return

        self.retries += 1
        try:
            result = task.operation(*task.args, **task.kwargs)
        except Exception as exc:
            if self._classify(exc):
                logger.warning("Retry %d of %s failed: %s", task.attempts, task.name, exc)
                with self._cond:
                    if not self._stop.is_set():
                        self._tasks.appendleft(task)
                        return
                task.future.set_exception(RetryQueueClosedError())
                return
            logger.error("Retry of %s failed permanently: %s", task.name, exc)
            task.future.set_exception(exc)
            return
        task.future.set_result(result)
