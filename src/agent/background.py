"""Bounded background task runner with an error channel."""

from __future__ import annotations

from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
import logging
import threading
from typing import Any, Callable
import uuid

from agent.errors import QueueSubmissionError
from observability import get_context, log_context
from time_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskFailure:
    """A background task that raised."""

    task_id: str
    name: str
    error: str
    failed_at: datetime


class BackgroundTaskRunner:
    """Run fire-and-forget work on a bounded thread pool.

    Submissions beyond ``max_pending`` outstanding tasks are rejected rather
    than queued without limit. Task exceptions are logged and kept on a bounded
    failure channel for inspection.
    """

    def __init__(
        self,
        *,
        max_workers: int = 2,
        max_pending: int = 100,
        max_failures: int = 100,
        on_error: Callable[[TaskFailure], None] | None = None,
    ) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="background",
        )
        self._slots = threading.BoundedSemaphore(max_pending)
        self._failures: deque[TaskFailure] = deque(maxlen=max_failures)
        self._lock = threading.Lock()
        self._on_error = on_error
        self._closed = False

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> str:
        """Schedule fn in the background and return a task id."""
        if self._closed:
            raise QueueSubmissionError("Background runner is shut down.")
        if not self._slots.acquire(blocking=False):
            raise QueueSubmissionError(f"Background runner is full; rejected task {name}.")
        task_id = str(uuid.uuid4())
        context = get_context()
        try:
            future = self._executor.submit(self._run, task_id, name, context, fn, args, kwargs)
        except RuntimeError as exc:
            self._slots.release()
            raise QueueSubmissionError(f"Background runner rejected task {name}: {exc}") from exc
        future.add_done_callback(self._release)
        logger.debug("Background task submitted: task_id=%s name=%s", task_id, name)
        return task_id

    def failures(self) -> list[TaskFailure]:
        """Return recorded task failures, oldest first."""
        with self._lock:
            return list(self._failures)

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop accepting tasks and optionally wait for running ones."""
        self._closed = True
        self._executor.shutdown(wait=wait)

    def _run(
        self,
        task_id: str,
        name: str,
        context: dict[str, str],
        fn: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> Any:
        with log_context({**context, "task_id": task_id, "task": name}):
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                failure = TaskFailure(
                    task_id=task_id,
                    name=name,
                    error=str(exc) or type(exc).__name__,
                    failed_at=utc_now(),
                )
                with self._lock:
                    self._failures.append(failure)
                logger.exception("Background task failed: task_id=%s name=%s", task_id, name)
                if self._on_error is not None:
                    self._on_error(failure)
                return None

    def _release(self, _future: Future) -> None:
        self._slots.release()
