import threading

import pytest

from crm_automation.services.task_queue import BackgroundTaskQueue


def test_submitted_tasks_run_on_worker_threads():
    queue = BackgroundTaskQueue(max_workers=2, batch_size=10, pause_ms=0)
    seen: list[str] = []
    lock = threading.Lock()

    def record(value: str) -> None:
        with lock:
            seen.append(threading.current_thread().name)

    try:
        for index in range(5):
            queue.submit(record, str(index))
        assert queue.join(timeout=5)
        assert queue.pending() == 0
    finally:
        queue.shutdown(wait=True)

    assert len(seen) == 5
    assert all(name.startswith("crm-automation-worker") for name in seen)


def test_large_fan_out_is_submitted_in_batches():
    queue = BackgroundTaskQueue(max_workers=4, batch_size=3, pause_ms=1)
    results: list[int] = []
    lock = threading.Lock()

    def record(value: int) -> None:
        with lock:
            results.append(value)

    try:
        queue.submit_many([(record, (index,)) for index in range(10)])
        assert queue.join(timeout=5)
    finally:
        queue.shutdown(wait=True)

    assert sorted(results) == list(range(10))


def test_failing_task_is_contained():
    queue = BackgroundTaskQueue(max_workers=1, batch_size=10, pause_ms=0)
    done = threading.Event()

    def explode() -> None:
        raise ValueError("bad payload")

    try:
        failed = queue.submit(explode)
        queue.submit(done.set)
        assert queue.join(timeout=5)
        assert failed.result() is None
        assert done.is_set()
    finally:
        queue.shutdown(wait=True)


def test_shutdown_drains_and_rejects_new_work():
    queue = BackgroundTaskQueue(max_workers=1, batch_size=10, pause_ms=0)
    release = threading.Event()
    finished = threading.Event()

    def slow() -> None:
        release.wait(timeout=5)
        finished.set()

    queue.submit(slow)
    assert queue.join(timeout=0.05) is False
    release.set()
    queue.shutdown(wait=True)

    assert finished.is_set()
    with pytest.raises(RuntimeError):
        queue.submit(finished.set)
    with pytest.raises(RuntimeError):
        queue.submit_many([(finished.set, ())] * 20)
