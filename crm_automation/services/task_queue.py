import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for
from typing import Any, Callable, Sequence

from crm_automation.core.config import settings
from crm_automation.core.observability import log_event

logger = logging.getLogger("crm_automation.queue")

Task = tuple[Callable[..., Any], tuple[Any, ...]]


class BackgroundTaskQueue:
    """Bounded worker pool for fire-and-forget work such as webhook deliveries.

    Large fan-outs are handed to a single coordinator thread that submits them in
    groups with a pause in between, so one busy event cannot monopolise the pool.
    """

    def __init__(
        self,
        *,
        max_workers: int | None = None,
        batch_size: int | None = None,
        pause_ms: int | None = None,
    ) -> None:
        self._workers = ThreadPoolExecutor(
            max_workers=max_workers or settings.webhook_max_workers,
            thread_name_prefix="crm-automation-worker",
        )
        self._coordinator = ThreadPoolExecutor(max_workers=1, thread_name_prefix="crm-automation-fanout")
        self._batch_size = batch_size or settings.webhook_fanout_batch_size
        self._pause_seconds = (settings.webhook_fanout_pause_ms if pause_ms is None else pause_ms) / 1000
        self._futures: set[Future] = set()
        self._lock = threading.RLock()
        self._closed = False

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        with self._lock:
            if self._closed:
                raise RuntimeError("Task queue is shut down")
            future = self._workers.submit(self._run, fn, *args)
            self._track(future)
        return future

    def submit_many(self, tasks: Sequence[Task]) -> None:
        if not tasks:
            return
        if len(tasks) <= self._batch_size:
            for fn, args in tasks:
                self.submit(fn, *args)
            return
        with self._lock:
            if self._closed:
                raise RuntimeError("Task queue is shut down")
            future = self._coordinator.submit(self._fan_out, list(tasks))
            self._track(future)

    def pending(self) -> int:
        with self._lock:
            return len(self._futures)

    def join(self, timeout: float | None = None) -> bool:
        """Wait until every tracked task, including ones submitted meanwhile, is done."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                outstanding = list(self._futures)
            if not outstanding:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _, not_done = wait_for(outstanding, timeout=remaining)
            if not_done and deadline is not None and time.monotonic() >= deadline:
                return False

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        # the coordinator may still submit to the workers, so it drains first
        self._coordinator.shutdown(wait=wait)
        self._workers.shutdown(wait=wait)
        log_event(logger, "task_queue_stopped", drained=wait)

    def _fan_out(self, tasks: list[Task]) -> None:
        for start in range(0, len(tasks), self._batch_size):
            if start and self._pause_seconds:
                time.sleep(self._pause_seconds)
            for fn, args in tasks[start:start + self._batch_size]:
                try:
                    future = self._workers.submit(self._run, fn, *args)
                except RuntimeError:
                    log_event(
                        logger,
                        "task_fanout_aborted",
                        level=logging.WARNING,
                        tasks=len(tasks),
                        submitted=start,
                    )
                    return
                with self._lock:
                    self._track(future)
        log_event(logger, "task_fanout_submitted", tasks=len(tasks), batch_size=self._batch_size)

    def _track(self, future: Future) -> None:
        self._futures.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    @staticmethod
    def _run(fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                "background_task_failed",
                level=logging.ERROR,
                task=getattr(fn, "__qualname__", repr(fn)),
                error=str(exc),
            )
            return None
