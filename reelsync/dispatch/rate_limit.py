"""
Rate-limited dispatcher

Serializes outbound calls to a quota-constrained API. Tasks are executed one
at a time, strictly in submission order, and never more than `max_requests`
executions start inside any sliding `time_window`. Throttling signals are
retried with a linear backoff; any other failure goes straight back to the
caller while the queue keeps draining.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Optional

import httpx

from reelsync.config import settings
from reelsync.errors import DispatchError, ThrottledError
from reelsync.utils.logging import get_logger

logger = get_logger(__name__, category="dispatch")

Operation = Callable[[], Awaitable[Any]]


class TaskStatus(str, Enum):
    QUEUED = "queued"
    EXECUTING = "executing"
    RETRYING = "retrying"
    FINISHED = "finished"


@dataclass
class DispatchTask:
    operation: Operation
    label: str
    future: asyncio.Future
    retries: int = 0
    status: TaskStatus = TaskStatus.QUEUED


@dataclass
class RateWindow:
    """Sliding window of recent execution timestamps."""

    max_requests: int
    window: float
    timestamps: Deque[float] = field(default_factory=deque)

    def _evict(self, now: float) -> None:
        while self.timestamps and now - self.timestamps[0] >= self.window:
            self.timestamps.popleft()

    def count(self, now: float) -> int:
        self._evict(now)
        return len(self.timestamps)

    def has_capacity(self, now: float) -> bool:
        return self.count(now) < self.max_requests

    def record(self, now: float) -> None:
        self.timestamps.append(now)


def is_throttle_error(exc: BaseException) -> bool:
    """True for failures worth retrying: 429 responses and request timeouts."""
    if isinstance(exc, (ThrottledError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429
    return False


class RateLimitedDispatcher:
    """FIFO executor with a sliding-window rate limit and throttle retries."""

    def __init__(
        self,
        max_requests: Optional[int] = None,
        time_window: Optional[float] = None,
        retry_delay: Optional[float] = None,
        max_retries: Optional[int] = None,
        poll_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_requests = max_requests or settings.dispatch_max_requests
        self.time_window = time_window or settings.dispatch_time_window
        self.retry_delay = (
            retry_delay if retry_delay is not None else settings.dispatch_retry_delay
        )
        self.max_retries = (
            max_retries if max_retries is not None else settings.dispatch_max_retries
        )
        self.poll_interval = poll_interval or settings.dispatch_poll_interval
        self._clock = clock
        self._sleep = sleep

        self.window = RateWindow(self.max_requests, self.time_window)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._current: Optional[DispatchTask] = None

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    async def execute(self, operation: Operation, label: str = "API call") -> Any:
        """Queue `operation` and wait for its result.

        Raises whatever the operation finally raised: the last ThrottledError
        once retries are exhausted, or the first non-retryable error.
        """
        loop = asyncio.get_running_loop()
        task = DispatchTask(operation=operation, label=label, future=loop.create_future())
        self._queue.put_nowait(task)
        logger.debug("Queued %s (queue depth=%s)", label, self._queue.qsize())
        self._ensure_worker()
        return await task.future

    async def close(self) -> None:
        """Stop the worker and fail every task that has not finished."""
        current = self._current
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

        pending = []
        if current is not None:
            pending.append(current)
        self._current = None
        while not self._queue.empty():
            pending.append(self._queue.get_nowait())
        for task in pending:
            task.status = TaskStatus.FINISHED
            self._resolve(task, error=DispatchError(f"Dispatcher closed before {task.label} finished"))
        if pending:
            logger.warning("Dispatcher closed with %s unfinished task(s)", len(pending))

    def _ensure_worker(self) -> None:
        # One drain loop per dispatcher; it idles on the queue when empty
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while True:
            task = await self._queue.get()
            self._current = task
            try:
                await self._run(task)
            except Exception as exc:  # noqa: BLE001
                logger.error("Unexpected dispatcher failure for %s: %s", task.label, exc, exc_info=True)
                task.status = TaskStatus.FINISHED
                self._resolve(task, error=exc)
            finally:
                self._current = None
                self._queue.task_done()

    async def _wait_for_slot(self) -> None:
        while not self.window.has_capacity(self._clock()):
            await self._sleep(self.poll_interval)
        self.window.record(self._clock())

    async def _run(self, task: DispatchTask) -> None:
        while True:
            await self._wait_for_slot()
            task.status = TaskStatus.EXECUTING
            try:
                result = await task.operation()
            except Exception as exc:  # noqa: BLE001
                if is_throttle_error(exc) and task.retries < self.max_retries:
                    task.retries += 1
                    task.status = TaskStatus.RETRYING
                    delay = self.retry_delay * task.retries
                    logger.warning(
                        "Rate limit hit for %s. Retrying (%s/%s) in %.2fs",
                        task.label,
                        task.retries,
                        self.max_retries,
                        delay,
                    )
                    await self._sleep(delay)
                    continue

                task.status = TaskStatus.FINISHED
                if is_throttle_error(exc):
                    logger.error(
                        "Giving up on %s after %s retries: %s",
                        task.label,
                        task.retries,
                        exc,
                    )
                else:
                    logger.error("Dispatch of %s failed: %s", task.label, exc)
                self._resolve(task, error=exc)
                return

            task.status = TaskStatus.FINISHED
            self._resolve(task, result=result)
            return

    @staticmethod
    def _resolve(task: DispatchTask, result: Any = None, error: Optional[BaseException] = None) -> None:
        # The caller may have stopped waiting; the task still ran to completion
        if task.future.done():
            return
        if error is not None:
            task.future.set_exception(error)
        else:
            task.future.set_result(result)
