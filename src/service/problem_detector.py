"""선언된 상태와 실제(스토리지/작업 큐)가 어긋난 파일을 찾는다.

detect_problems()는 순수 함수이고, scan()이 레코드를 읽고 스토리지를 확인한다.
스캔 중 바꾸는 상태는 READY ↔ MISSING 뿐이며, 그마저 reconcile 콜백
(FileLifecycleCoordinator)을 통해 상태 머신을 거친다.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from loguru import logger

from core.exceptions import StorageFailure
from model.record import FileRecord, ProblemItem, ProblemReport
from model.status import ACTIVE_OPTIMIZATION, FileStatus, OptimizationStatus
from service.repository import FileRepository
from service.storage import StorageGateway

STORAGE_OBJECT_MISSING = "STORAGE_OBJECT_MISSING"
STORAGE_KEY_MISSING = "STORAGE_KEY_MISSING"
OPTIMIZATION_STUCK = "OPTIMIZATION_STUCK"
OPTIMIZATION_FAILED = "OPTIMIZATION_FAILED"
STATUS_FAILED = "STATUS_FAILED"
STATUS_MISSING = "STATUS_MISSING"
UPLOAD_STUCK = "UPLOAD_STUCK"
DELETE_STUCK = "DELETE_STUCK"
DELETED_AT_MISMATCH = "DELETED_AT_MISMATCH"


@dataclass(frozen=True)
class ProblemThresholds:
    stuck_uploading: timedelta
    stuck_deleting: timedelta
    stuck_optimization: timedelta


def detect_problems(
    record: FileRecord,
    thresholds: ProblemThresholds,
    now: datetime,
    object_present: bool | None = None,
    job_active: bool = False,
) -> list[ProblemItem]:
    """레코드 하나의 문제 목록. object_present=None은 '확인하지 않음'."""
    problems: list[ProblemItem] = []
    status = record.status

    if object_present is False and status in (FileStatus.READY, FileStatus.MISSING):
        problems.append(
            ProblemItem(STORAGE_OBJECT_MISSING, f"Storage object {record.storage_key} does not exist")
        )
    if status == FileStatus.READY and not record.storage_key:
        problems.append(ProblemItem(STORAGE_KEY_MISSING, "READY file has no storage key"))
    if status == FileStatus.FAILED:
        problems.append(ProblemItem(STATUS_FAILED, "File status is FAILED"))
    if status == FileStatus.MISSING:
        problems.append(ProblemItem(STATUS_MISSING, "File status is MISSING"))
    if status == FileStatus.UPLOADING and record.status_changed_at < now - thresholds.stuck_uploading:
        problems.append(ProblemItem(UPLOAD_STUCK, "Upload is stuck"))
    if status == FileStatus.DELETING and record.status_changed_at < now - thresholds.stuck_deleting:
        problems.append(ProblemItem(DELETE_STUCK, "Delete is stuck"))
    if record.deleted_at and status not in (FileStatus.DELETING, FileStatus.DELETED):
        problems.append(
            ProblemItem(DELETED_AT_MISMATCH, "deleted_at is set but status is not DELETING/DELETED")
        )

    if record.optimization_status == OptimizationStatus.FAILED:
        problems.append(
            ProblemItem(
                OPTIMIZATION_FAILED,
                f"Optimization failed: {record.optimization_error or 'Unknown error'}",
            )
        )
    if record.optimization_status in ACTIVE_OPTIMIZATION and not job_active:
        since = record.optimization_started_at or record.updated_at
        if since < now - thresholds.stuck_optimization:
            problems.append(
                ProblemItem(OPTIMIZATION_STUCK, f"Optimization {record.optimization_status} with no active job")
            )

    return problems


Reconcile = Callable[[FileRecord, FileStatus], FileRecord | None]


class ProblemDetector:
    def __init__(
        self,
        repository: FileRepository,
        storage: StorageGateway,
        is_job_active: Callable[[str], bool],
        reconcile: Reconcile,
        thresholds: ProblemThresholds,
        batch_size: int = 200,
    ):
        self._repo = repository
        self._storage = storage
        self._is_job_active = is_job_active
        self._reconcile = reconcile
        self._thresholds = thresholds
        self._batch_size = batch_size

    def _object_present(self, record: FileRecord) -> bool | None:
        if record.status not in (FileStatus.READY, FileStatus.MISSING) or not record.storage_key:
            return None
        try:
            return self._storage.exists(record.storage_key)
        except StorageFailure as e:
            logger.warning(f"Problem scan could not check {record.storage_key}: {e}")
            return None

    def _inspect(self, record: FileRecord, now: datetime) -> ProblemReport | None:
        present = self._object_present(record)

        if record.status == FileStatus.READY and present is False:
            record = self._reconcile(record, FileStatus.MISSING) or record
        elif record.status == FileStatus.MISSING and present is True:
            record = self._reconcile(record, FileStatus.READY) or record

        problems = detect_problems(
            record,
            self._thresholds,
            now,
            object_present=present,
            job_active=self._is_job_active(record.id),
        )
        if not problems:
            return None
        return ProblemReport(
            file_id=record.id,
            filename=record.filename,
            observed_status=record.status,
            observed_optimization_status=record.optimization_status,
            status_changed_at=record.status_changed_at,
            problems=problems,
        )

    def scan(self, limit: int = 10) -> list[ProblemReport]:
        """문제 있는 파일을 최대 limit개, status_changed_at 최신순으로 반환한다."""
        now = datetime.now(UTC)
        reports: list[ProblemReport] = []
        seen: set[str] = set()
        offset = 0

        while len(reports) < limit:
            batch = self._repo.recently_changed(self._batch_size, offset)
            if not batch:
                break
            offset += len(batch)
            for record in batch:
                # 상태가 바뀐 레코드는 정렬 맨 앞으로 올라가 다음 페이지에서 다시 보일 수 있다
                if record.id in seen:
                    continue
                seen.add(record.id)
                report = self._inspect(record, now)
                if report is not None:
                    reports.append(report)
                    if len(reports) >= limit:
                        break

        reports.sort(key=lambda r: r.status_changed_at, reverse=True)
        logger.info(f"Problem scan finished: {len(reports)} problem file(s), {len(seen)} scanned")
        return reports
