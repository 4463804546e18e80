"""최적화 작업 큐 (단일 프로세스, 고정 크기 스레드 풀).

보장하는 것:
- 같은 file_id의 작업은 동시에 하나만 (대기 중 + 실행 중 합쳐서)
- 동시에 실행되는 작업은 max_concurrency개 이하
- 대기 시간이 queue_timeout을 넘은 작업은 QueueTimeout으로 실패
- 실행 시간이 job_timeout을 넘은 작업은 취소 토큰이 켜지고 Timeout으로 실패
- shutdown 시 새 작업을 받지 않고, 대기 중 작업은 QueueShutdown으로 실패시킨다

실패는 항상 on_failure 콜백으로 알린다 → 레코드가 PENDING/PROCESSING에 남지 않는다.

워커가 Pillow 작업을 직접 실행하므로 GIL=0(free-threaded) 환경에서는
max_concurrency만큼 실제 병렬로 돈다.
"""

import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from core.exceptions import (
    AppException,
    DuplicateJob,
    JobCancelled,
    ProcessingFailed,
    QueueClosed,
    QueueTimeout,
)
from processor.params import TransformSpec
from utility.cancel import CancelToken
from utility.timer import timer


@dataclass(frozen=True)
class OptimizationJob:
    file_id: str
    spec: TransformSpec


@dataclass(frozen=True)
class DrainReport:
    abandoned: int  # 시작도 못 하고 버려진 작업 수
    unfinished: int  # drain 제한 시간 안에 끝나지 않은 워커 수


@dataclass(eq=False)
class _Entry:
    job: OptimizationJob
    deadline: float
    future: Future = field(default_factory=Future)
    token: CancelToken | None = None


# on_failure 원인(cause) → 호출자에게 전달할 예외
_CAUSE_EXCEPTIONS: dict[str, type[AppException]] = {
    "QueueTimeout": QueueTimeout,
    "QueueShutdown": QueueClosed,
    "Timeout": JobCancelled,
    "Cancelled": JobCancelled,
    "Shutdown": JobCancelled,
    "ProcessingError": ProcessingFailed,
}

Execute = Callable[[OptimizationJob, CancelToken], Any]
OnFailure = Callable[[OptimizationJob, str, str], None]


class OptimizationQueue:
    def __init__(
        self,
        execute: Execute,
        on_failure: OnFailure,
        max_concurrency: int = 4,
        queue_timeout: float = 30.0,
        job_timeout: float = 60.0,
        name: str = "optimizer",
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._execute = execute
        self._on_failure = on_failure
        self.max_concurrency = max_concurrency
        self.queue_timeout = queue_timeout
        self.job_timeout = job_timeout
        self._name = name

        self._cond = threading.Condition()
        self._waiting: deque[_Entry] = deque()
        self._tracked: dict[str, _Entry] = {}
        self._active = 0
        self._closed = False
        self._workers: list[threading.Thread] = []
        self._reaper: threading.Thread | None = None

    # --- 수명 주기 ---

    def start(self) -> None:
        """워커 스레드와 대기시간 감시 스레드를 띄운다. 여러 번 호출해도 한 번만 뜬다."""
        with self._cond:
            if self._workers or self._closed:
                return
            for i in range(self.max_concurrency):
                t = threading.Thread(target=self._worker_loop, name=f"{self._name}-worker-{i}", daemon=True)
                self._workers.append(t)
            self._reaper = threading.Thread(target=self._reaper_loop, name=f"{self._name}-reaper", daemon=True)

        for t in self._workers:
            t.start()
        self._reaper.start()
        logger.info(
            f"OptimizationQueue started (max_concurrency={self.max_concurrency}, "
            f"queue_timeout={self.queue_timeout}s, job_timeout={self.job_timeout}s)"
        )

    def shutdown(self, timeout: float | None = None, cancel_running: bool = False) -> DrainReport:
        """새 작업 접수를 멈추고 대기 중 작업을 버린 뒤, 실행 중 작업이 끝나길 기다린다.

        실행 중 작업은 스스로 끝나거나 job_timeout에 걸릴 때까지 둔다.
        cancel_running=True면 실행 중 작업의 토큰도 바로 취소한다.
        """
        with self._cond:
            if self._closed:
                return DrainReport(abandoned=0, unfinished=sum(t.is_alive() for t in self._workers))
            self._closed = True
            abandoned = list(self._waiting)
            self._waiting.clear()
            if cancel_running:
                for entry in self._tracked.values():
                    if entry.token is not None:
                        entry.token.cancel("Shutdown")
            self._cond.notify_all()

        for entry in abandoned:
            self._fail(entry, "QueueShutdown", "프로세스 종료로 작업이 시작되지 못했습니다")
            self._release(entry)

        deadline = None if timeout is None else time.monotonic() + timeout
        for t in self._workers:
            t.join(None if deadline is None else max(0.0, deadline - time.monotonic()))
        if self._reaper is not None:
            self._reaper.join(1.0)

        report = DrainReport(
            abandoned=len(abandoned),
            unfinished=sum(t.is_alive() for t in self._workers),
        )
        logger.info(f"OptimizationQueue drained (abandoned={report.abandoned}, unfinished={report.unfinished})")
        return report

    # --- 작업 접수 / 조회 ---

    def submit(self, job: OptimizationJob) -> Future:
        """작업을 FIFO 대기열에 넣고 결과 Future를 반환한다.

        같은 file_id 작업이 대기/실행 중이면 DuplicateJob, 종료 중이면 QueueClosed.
        """
        self.start()
        with self._cond:
            if self._closed:
                raise QueueClosed
            if job.file_id in self._tracked:
                raise DuplicateJob(f"파일 {job.file_id}의 작업이 이미 진행 중입니다")
            entry = _Entry(job=job, deadline=time.monotonic() + self.queue_timeout)
            self._tracked[job.file_id] = entry
            self._waiting.append(entry)
            self._cond.notify_all()
            queued = len(self._waiting)

        logger.debug(f"Job queued for {job.file_id} (waiting={queued}, active={self._active})")
        return entry.future

    def cancel(self, file_id: str) -> bool:
        """대기 중이면 빼서 실패 처리하고, 실행 중이면 토큰을 취소한다.

        이미 다른 경로(대기시간 만료, shutdown)로 실패 처리 중인 작업이면 False.
        """
        with self._cond:
            entry = self._tracked.get(file_id)
            if entry is None:
                return False
            if entry.token is not None:
                entry.token.cancel("Cancelled")
                return True
            if entry not in self._waiting:
                # 대기열에서는 빠졌지만 _fail/_release가 아직 끝나지 않은 상태
                return False
            self._waiting.remove(entry)

        self._fail(entry, "Cancelled", "작업이 취소되었습니다")
        self._release(entry)
        return True

    def is_tracking(self, file_id: str) -> bool:
        with self._cond:
            return file_id in self._tracked

    def stats(self) -> dict:
        with self._cond:
            return {
                "queue_size": len(self._waiting),
                "active_workers": self._active,
                "max_concurrency": self.max_concurrency,
                "closed": self._closed,
            }

    # --- 내부 ---

    def _release(self, entry: _Entry) -> None:
        with self._cond:
            if self._tracked.get(entry.job.file_id) is entry:
                del self._tracked[entry.job.file_id]
            self._cond.notify_all()

    def _fail(self, entry: _Entry, cause: str, message: str) -> None:
        """레코드를 FAILED로 돌리는 콜백을 부르고 Future에 예외를 건다."""
        file_id = entry.job.file_id
        logger.warning(f"Job for {file_id} failed: {cause}: {message}")
        try:
            self._on_failure(entry.job, cause, message)
        except Exception:
            logger.exception(f"on_failure callback raised for {file_id} ({cause})")

        if not entry.future.done():
            exc_type = _CAUSE_EXCEPTIONS.get(cause, AppException)
            entry.future.set_exception(exc_type(f"{cause}: {message}"))

    def _take_expired(self) -> list[_Entry]:
        # FIFO + 고정 queue_timeout → 맨 앞이 항상 가장 먼저 만료된다
        now = time.monotonic()
        expired = []
        while self._waiting and self._waiting[0].deadline <= now:
            expired.append(self._waiting.popleft())
        return expired

    def _reaper_loop(self) -> None:
        while True:
            with self._cond:
                while True:
                    if self._closed:
                        return
                    expired = self._take_expired()
                    if expired:
                        break
                    if self._waiting:
                        self._cond.wait(self._waiting[0].deadline - time.monotonic())
                    else:
                        self._cond.wait()

            for entry in expired:
                self._fail(
                    entry,
                    "QueueTimeout",
                    f"{self.queue_timeout}s 안에 빈 워커를 얻지 못했습니다",
                )
                self._release(entry)

    def _worker_loop(self) -> None:
        while True:
            with self._cond:
                while not self._waiting and not self._closed:
                    self._cond.wait()
                if not self._waiting:
                    return
                entry = self._waiting.popleft()
                if entry.deadline <= time.monotonic():
                    # 감시 스레드보다 먼저 집었지만 이미 대기 시간을 넘김
                    expired = True
                else:
                    expired = False
                    entry.token = CancelToken(self.job_timeout)
                    self._active += 1

            if expired:
                self._fail(entry, "QueueTimeout", f"{self.queue_timeout}s 안에 빈 워커를 얻지 못했습니다")
                self._release(entry)
                continue

            try:
                self._run(entry)
            finally:
                with self._cond:
                    self._active -= 1
                self._release(entry)

    def _run(self, entry: _Entry) -> None:
        job, token = entry.job, entry.token
        if not entry.future.set_running_or_notify_cancel():
            self._fail(entry, "Cancelled", "호출자가 Future를 취소했습니다")
            return

        try:
            with timer(f"optimize {job.file_id}"):
                result = self._execute(job, token)
        except JobCancelled as e:
            self._fail(entry, token.reason or "Cancelled", e.message)
        except ProcessingFailed as e:
            self._fail(entry, "ProcessingError", e.message)
        except Exception as e:
            logger.exception(f"Unexpected error while optimizing {job.file_id}")
            self._fail(entry, "InternalError", str(e) or type(e).__name__)
        else:
            entry.future.set_result(result)
