"""OptimizationQueue 단위 테스트 (가짜 execute 사용)."""

import threading
import time

import pytest

from conftest import wait_until
from core.exceptions import DuplicateJob, JobCancelled, ProcessingFailed, QueueClosed, QueueTimeout
from processor.params import TransformSpec
from service.optimization_queue import OptimizationJob, OptimizationQueue

SPEC = TransformSpec(format="webp", quality=80)


class Recorder:
    """on_failure 호출 기록."""

    def __init__(self):
        self.failures: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def __call__(self, job, cause, message):
        with self._lock:
            self.failures.append((job.file_id, cause))


def _job(file_id: str) -> OptimizationJob:
    return OptimizationJob(file_id=file_id, spec=SPEC)


@pytest.fixture()
def recorder():
    return Recorder()


@pytest.fixture()
def make_queue(recorder):
    queues = []

    def _make(execute, **kwargs):
        q = OptimizationQueue(execute, recorder, **kwargs)
        queues.append(q)
        return q

    yield _make
    for q in queues:
        q.shutdown(timeout=2.0, cancel_running=True)


def test_never_exceeds_max_concurrency(make_queue):
    lock = threading.Lock()
    running = 0
    peak = 0

    def execute(job, token):
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        time.sleep(0.05)
        with lock:
            running -= 1
        return job.file_id

    queue = make_queue(execute, max_concurrency=3, queue_timeout=10.0)
    futures = [queue.submit(_job(f"f{i}")) for i in range(12)]

    assert [f.result(timeout=5) for f in futures] == [f"f{i}" for i in range(12)]
    assert peak <= 3


def test_duplicate_job_rejected_while_in_flight(make_queue):
    release = threading.Event()
    started = threading.Event()

    def execute(job, token):
        started.set()
        release.wait(5)

    queue = make_queue(execute, max_concurrency=1)
    first = queue.submit(_job("same"))
    started.wait(2)

    with pytest.raises(DuplicateJob):
        queue.submit(_job("same"))
    assert queue.is_tracking("same")

    release.set()
    first.result(timeout=2)
    # 끝난 뒤에는 다시 접수된다
    assert wait_until(lambda: not queue.is_tracking("same"))
    queue.submit(_job("same")).result(timeout=2)


def test_job_timeout_fails_with_timeout_cause(make_queue, recorder):
    def execute(job, token):
        token.wait(2.0)
        token.raise_if_cancelled()

    queue = make_queue(execute, max_concurrency=1, job_timeout=0.1)
    future = queue.submit(_job("slow"))

    with pytest.raises(JobCancelled):
        future.result(timeout=3)
    assert recorder.failures == [("slow", "Timeout")]


def test_processing_error_cause(make_queue, recorder):
    def execute(job, token):
        raise ProcessingFailed("broken image")

    queue = make_queue(execute)
    with pytest.raises(ProcessingFailed):
        queue.submit(_job("bad")).result(timeout=2)
    assert recorder.failures == [("bad", "ProcessingError")]


def test_unexpected_error_is_internal_error(make_queue, recorder):
    def execute(job, token):
        raise RuntimeError("boom")

    queue = make_queue(execute)
    future = queue.submit(_job("oops"))
    with pytest.raises(Exception):
        future.result(timeout=2)
    assert recorder.failures == [("oops", "InternalError")]


def test_second_job_times_out_waiting_for_single_worker(make_queue, recorder):
    """max_concurrency=1, 대기 한도 100ms, 작업 200ms → 두 번째 작업은 QueueTimeout."""

    def execute(job, token):
        time.sleep(0.2)
        return job.file_id

    queue = make_queue(execute, max_concurrency=1, queue_timeout=0.1)
    first = queue.submit(_job("a"))
    second = queue.submit(_job("b"))

    assert first.result(timeout=2) == "a"
    with pytest.raises(QueueTimeout):
        second.result(timeout=2)
    assert recorder.failures == [("b", "QueueTimeout")]
    assert wait_until(lambda: not queue.is_tracking("b"))


def test_second_job_completes_when_wait_is_short(make_queue, recorder):
    def execute(job, token):
        time.sleep(0.02)
        return job.file_id

    queue = make_queue(execute, max_concurrency=1, queue_timeout=2.0)
    first = queue.submit(_job("a"))
    second = queue.submit(_job("b"))

    assert first.result(timeout=2) == "a"
    assert second.result(timeout=2) == "b"
    assert recorder.failures == []


def test_cancel_waiting_job(make_queue, recorder):
    release = threading.Event()

    def execute(job, token):
        release.wait(5)

    queue = make_queue(execute, max_concurrency=1)
    running = queue.submit(_job("running"))
    waiting = queue.submit(_job("waiting"))

    assert queue.cancel("waiting")
    with pytest.raises(JobCancelled):
        waiting.result(timeout=2)
    assert ("waiting", "Cancelled") in recorder.failures
    assert not queue.cancel("unknown")

    release.set()
    running.result(timeout=2)


def test_cancel_while_timeout_failure_in_progress():
    """대기시간 만료로 실패 처리 중인 작업을 cancel하면 예외 없이 False."""
    release_worker = threading.Event()
    in_callback = threading.Event()
    release_callback = threading.Event()

    def execute(job, token):
        release_worker.wait(5)

    def on_failure(job, cause, message):
        if job.file_id == "b":
            in_callback.set()
            release_callback.wait(5)

    queue = OptimizationQueue(execute, on_failure, max_concurrency=1, queue_timeout=0.1)
    try:
        running = queue.submit(_job("a"))
        waiting = queue.submit(_job("b"))

        assert in_callback.wait(2)
        assert queue.cancel("b") is False

        release_callback.set()
        with pytest.raises(QueueTimeout):
            waiting.result(timeout=2)
        assert wait_until(lambda: not queue.is_tracking("b"))

        release_worker.set()
        running.result(timeout=2)
    finally:
        release_callback.set()
        release_worker.set()
        queue.shutdown(timeout=2.0, cancel_running=True)


def test_shutdown_abandons_waiting_jobs(make_queue, recorder):
    release = threading.Event()
    started = threading.Event()

    def execute(job, token):
        started.set()
        release.wait(5)
        return "done"

    queue = make_queue(execute, max_concurrency=1)
    running = queue.submit(_job("running"))
    waiting = queue.submit(_job("waiting"))
    started.wait(2)

    report = queue.shutdown(timeout=0.1)

    assert report.abandoned == 1
    assert report.unfinished == 1
    with pytest.raises(QueueClosed):
        waiting.result(timeout=1)
    assert ("waiting", "QueueShutdown") in recorder.failures
    with pytest.raises(QueueClosed):
        queue.submit(_job("late"))

    # 실행 중이던 작업은 끝까지 돈다
    release.set()
    assert running.result(timeout=2) == "done"


def test_stats(make_queue):
    queue = make_queue(lambda job, token: None, max_concurrency=2)
    stats = queue.stats()

    assert stats == {"queue_size": 0, "active_workers": 0, "max_concurrency": 2, "closed": False}
