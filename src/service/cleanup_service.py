"""주기적 정리 작업.

한 번의 정리(run)는 아래를 차례로 처리한다. 항목마다 batch_size개까지만 본다.
- UPLOADING에 오래 머문 레코드: 업로드 도중 프로세스가 죽은 것 → 버린다
- DELETING에 오래 머문 레코드: 삭제 도중 죽은 것 → 삭제를 마저 한다
- FAILED/MISSING으로 TTL을 넘긴 레코드 → 삭제한다
- 만든 지 TTL이 지난 썸네일 캐시 객체 → 지운다 (요청이 오면 다시 만든다)

레코드 변경은 모두 FileLifecycleCoordinator가 넘겨준 콜백을 거친다.
"""

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from loguru import logger

from core.exceptions import (
    AppException,
    ConcurrentModification,
    InvalidTransition,
    StorageFailure,
    StorageObjectNotFound,
)
from model.record import FileRecord
from model.status import FileStatus
from service.repository import FileRepository
from service.storage import StorageGateway
from service.thumbnail_service import THUMBNAIL_PREFIX

Handle = Callable[[FileRecord], FileRecord]


@dataclass(frozen=True)
class CleanupPolicy:
    stale_uploading: timedelta
    stale_deleting: timedelta
    bad_status_ttl: timedelta
    thumbnail_ttl: timedelta
    batch_size: int = 200


@dataclass
class CleanupReport:
    stale_uploads: int = 0
    resumed_deletes: int = 0
    expired_records: int = 0
    expired_thumbnails: int = 0
    errors: int = 0


class CleanupService:
    def __init__(
        self,
        repository: FileRepository,
        storage: StorageGateway,
        recover_stale: Handle,
        purge: Handle,
        policy: CleanupPolicy,
        interval: float = 6 * 3600,
    ):
        self._repo = repository
        self._storage = storage
        self._recover_stale = recover_stale
        self._purge = purge
        self._policy = policy
        self._interval = interval
        self._run_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # --- 스케줄 ---

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="cleanup", daemon=True)
        self._thread.start()
        logger.info(f"Cleanup scheduled every {self._interval:.0f}s")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.run()
            except Exception:
                logger.exception("Cleanup pass failed")

    # --- 정리 ---

    def run(self, now: datetime | None = None) -> CleanupReport:
        """정리를 한 번 돌린다. 동시에 두 번 돌지 않는다."""
        now = now or datetime.now(UTC)
        policy = self._policy
        report = CleanupReport()

        with self._run_lock:
            logger.info("Starting cleanup pass")
            report.stale_uploads = self._sweep(
                report, [FileStatus.UPLOADING], now - policy.stale_uploading, self._recover_stale
            )
            report.resumed_deletes = self._sweep(
                report, [FileStatus.DELETING], now - policy.stale_deleting, self._recover_stale
            )
            report.expired_records = self._sweep(
                report, [FileStatus.FAILED, FileStatus.MISSING], now - policy.bad_status_ttl, self._purge
            )
            report.expired_thumbnails = self._expire_thumbnails(report, now - policy.thumbnail_ttl)

        logger.info(
            f"Cleanup finished: stale_uploads={report.stale_uploads}, "
            f"resumed_deletes={report.resumed_deletes}, expired_records={report.expired_records}, "
            f"expired_thumbnails={report.expired_thumbnails}, errors={report.errors}"
        )
        return report

    def _sweep(
        self,
        report: CleanupReport,
        statuses: Iterable[FileStatus],
        before: datetime,
        handle: Handle,
    ) -> int:
        handled = 0
        for record in self._repo.stale(statuses, before, self._policy.batch_size):
            try:
                handle(record)
            except (InvalidTransition, ConcurrentModification) as e:
                # 그 사이 다른 요청이 상태를 바꿨다
                logger.info(f"file {record.id}: left to concurrent change ({e.message})")
            except AppException as e:
                report.errors += 1
                logger.warning(f"file {record.id}: cleanup of {record.status} record failed: {e.message}")
            else:
                handled += 1
        return handled

    def _expire_thumbnails(self, report: CleanupReport, before: datetime) -> int:
        try:
            objects = self._storage.list_objects(THUMBNAIL_PREFIX)
        except StorageFailure as e:
            report.errors += 1
            logger.warning(f"Could not list thumbnails: {e.message}")
            return 0

        expired = sorted((o for o in objects if o.modified_at < before), key=lambda o: o.modified_at)
        removed = 0
        for obj in expired[: self._policy.batch_size]:
            try:
                self._storage.delete(obj.key)
            except StorageObjectNotFound:
                continue
            except StorageFailure as e:
                report.errors += 1
                logger.warning(f"Could not remove thumbnail {obj.key}: {e.message}")
                continue
            removed += 1
        return removed
