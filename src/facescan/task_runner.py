"""Fixed-width worker pool with FIFO admission and cooperative cancellation."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Protocol

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "task_runner"})


class CancellationToken(Protocol):
    """Read-only view of a cancellation signal (``threading.Event`` satisfies it)."""

    def is_set(self) -> bool: ...


class _Skipped:
    """Marker for tasks that were dropped from the queue after cancellation."""

    _instance: _Skipped | None = None

    def __new__(cls) -> _Skipped:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SKIPPED"

    def __bool__(self) -> bool:
        return False


SKIPPED = _Skipped()


@dataclass
class _QueuedTask:
    fn: Callable[..., Any]
    args: tuple[Any, ...]
    kwargs: dict[str, Any]
    future: Future = field(default_factory=Future)
    label: str | None = None


class BoundedTaskRunner:
    """Run submitted callables with at most ``concurrency_limit`` in flight.

    Tasks wait in a FIFO queue and are admitted only when a slot frees up.
    Once ``cancel_token`` is set, every queued task (including tasks admitted
    to a worker but not yet started) resolves with :data:`SKIPPED` while
    running tasks finish normally. An exception raised by a task is logged and
    the task resolves with ``fallback()`` instead, so callers only ever see
    results.
    """

    def __init__(
        self,
        concurrency_limit: int,
        cancel_token: CancellationToken | None = None,
        *,
        fallback: Callable[[], Any] | None = None,
        name: str = "facescan-worker",
    ) -> None:
        self._limit = max(1, int(concurrency_limit or 1))
        self._cancel_token = cancel_token
        self._fallback = fallback
        self._lock = threading.Lock()
        self._queue: deque[_QueuedTask] = deque()
        self._active = 0
        self._cancel_logged = False
        self._executor = ThreadPoolExecutor(max_workers=self._limit, thread_name_prefix=name)

    @property
    def concurrency_limit(self) -> int:
        return self._limit

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._active

    @property
    def queued_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def is_cancelled(self) -> bool:
        return self._cancel_token is not None and bool(self._cancel_token.is_set())

    def submit(self, fn: Callable[..., Any], *args: Any, label: str | None = None, **kwargs: Any) -> Future:
        """Queue ``fn(*args, **kwargs)`` and return a future for its result."""

        task = _QueuedTask(fn=fn, args=args, kwargs=kwargs, label=label)
        if self.is_cancelled():
            task.future.set_result(SKIPPED)
            return task.future

        with self._lock:
            self._queue.append(task)
        self._pump()
        return task.future

    def poll_cancellation(self) -> bool:
        """Drain the queue if the token has been set; returns the cancellation state."""

        cancelled = self.is_cancelled()
        if cancelled:
            self._pump()
        return cancelled

    def _pump(self) -> None:
        to_start: list[_QueuedTask] = []
        to_skip: list[_QueuedTask] = []
        with self._lock:
            if self.is_cancelled():
                to_skip = list(self._queue)
                self._queue.clear()
            else:
                while self._queue and self._active < self._limit:
                    to_start.append(self._queue.popleft())
                    self._active += 1

        if to_skip:
            if not self._cancel_logged:
                LOGGER.info("task_runner_cancelled", extra={"skipped": len(to_skip)})
                self._cancel_logged = True
            for task in to_skip:
                if not task.future.done():
                    task.future.set_result(SKIPPED)

        for task in to_start:
            try:
                self._executor.submit(self._run, task)
            except RuntimeError:
                # Executor already shut down.
                with self._lock:
                    self._active -= 1
                if not task.future.done():
                    task.future.set_result(SKIPPED)

    def _run(self, task: _QueuedTask) -> None:
        result: Any
        try:
            if self.is_cancelled():
                result = SKIPPED
            else:
                result = task.fn(*task.args, **task.kwargs)
        except Exception as exc:
            LOGGER.error(
                "task_failed",
                extra={"task": task.label, "error": str(exc), "error_type": type(exc).__name__},
            )
            result = self._fallback() if self._fallback is not None else None
        finally:
            with self._lock:
                self._active -= 1

        task.future.set_result(result)
        self._pump()

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; queued tasks resolve with :data:`SKIPPED`."""

        with self._lock:
            pending = list(self._queue)
            self._queue.clear()
        for task in pending:
            if not task.future.done():
                task.future.set_result(SKIPPED)
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> BoundedTaskRunner:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.shutdown(wait=True)


__all__ = ["BoundedTaskRunner", "CancellationToken", "SKIPPED"]
