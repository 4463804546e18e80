"""파일 라이프사이클 조율자.

FileRecord를 바꾸는 유일한 곳이다. 모든 변경은
  1) 상태 머신으로 전이를 검증하고
  2) version 조건부 업데이트로 반영하며
  3) 충돌하면 다시 읽어 1)부터 재시도한다 (_apply).

다른 구성요소(Deduplicator, OptimizationQueue, ProblemDetector, ThumbnailService,
CleanupService)는 결과만 돌려주거나 콜백으로 이 클래스를 부른다.
"""

import threading
import uuid
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import PurePosixPath

from loguru import logger

from core.config import Settings
from core.exceptions import (
    AppException,
    ConcurrentModification,
    Conflict,
    DuplicateJob,
    FileNotFound,
    FileTooLarge,
    InvalidTransition,
    ProcessingFailed,
    QueueClosed,
    QueueTimeout,
    StorageFailure,
    StorageObjectNotFound,
    ValidationFailed,
)
from model.record import (
    BulkDeleteItem,
    BulkDeleteResult,
    FilePage,
    FileRecord,
    ListFilter,
    ProblemReport,
    Scope,
)
from model.status import (
    ACTIVE_OPTIMIZATION,
    DELETABLE_STATUSES,
    FileStatus,
    OptimizationStatus,
    transition,
    transition_optimization,
)
from processor.exif import extract_exif
from processor.operations import OPTIMIZABLE_MIME_TYPES, detect_mime
from processor.params import (
    CompressParams,
    ThumbnailParams,
    TransformSpec,
    resolve_compress,
    resolve_thumbnail,
    validate_compress_params,
    validate_thumbnail_params,
)
from processor.transformer import Transformer
from service.checksum import checksum_hex, compute_checksum
from service.cleanup_service import CleanupPolicy, CleanupReport, CleanupService
from service.dedup import Deduplicator, New, is_stale
from service.optimization_queue import DrainReport, OptimizationJob, OptimizationQueue
from service.problem_detector import ProblemDetector, ProblemThresholds
from service.repository import FileRepository
from service.storage import MIME_TO_EXT, StorageGateway, content_key, key_for_digest
from service.thumbnail_service import Thumbnail, ThumbnailService, thumbnail_prefix
from service.url_fetcher import UrlFetcher
from utility.cancel import CancelToken
from utility.retry import with_retry

OPTIMIZED_PREFIX = "optimized"
MAX_FILENAME_LENGTH = 255
MAX_LIST_LIMIT = 200
MAX_BULK_DELETE_LIMIT = 5000
MAX_PROBLEM_SCAN_LIMIT = 50

Build = Callable[[FileRecord], dict | None]


def _now() -> datetime:
    return datetime.now(UTC)


def _clean_filename(filename: str | None, mime_type: str) -> str:
    name = PurePosixPath((filename or "").replace("\\", "/")).name.strip()
    if not name:
        name = f"file{MIME_TO_EXT.get(mime_type, '')}"
    return name[:MAX_FILENAME_LENGTH]


def _renamed(filename: str, mime_type: str) -> str:
    """형식이 바뀌면 확장자도 맞춘다."""
    ext = MIME_TO_EXT.get(mime_type)
    if not ext:
        return filename
    return str(PurePosixPath(filename).with_suffix(ext))


def optimized_key(file_id: str, data: bytes, mime_type: str) -> str:
    return f"{OPTIMIZED_PREFIX}/{file_id}/{PurePosixPath(content_key(data, mime_type)).name}"


def _as_compress_params(params: CompressParams | dict | str | None) -> CompressParams | None:
    if isinstance(params, CompressParams):
        return params
    return validate_compress_params(params)


class FileLifecycleCoordinator:
    def __init__(
        self,
        repository: FileRepository,
        storage: StorageGateway,
        transformer: Transformer,
        fetcher: UrlFetcher,
        settings: Settings,
    ):
        self._repo = repository
        self._storage = storage
        self._transformer = transformer
        self._fetcher = fetcher
        self._settings = settings

        # 이보다 오래 UPLOADING/DELETING이면 그 작업을 하던 프로세스가 죽은 것으로 본다
        self._stale_after = {
            FileStatus.UPLOADING: timedelta(minutes=settings.STUCK_UPLOADING_MINUTES),
            FileStatus.DELETING: timedelta(minutes=settings.STUCK_DELETING_MINUTES),
        }
        self._dedup = Deduplicator(
            repository,
            wait_seconds=settings.DEDUP_WAIT_SECONDS,
            poll_interval=settings.DEDUP_POLL_INTERVAL_SECONDS,
            claim_attempts=settings.DEDUP_CLAIM_ATTEMPTS,
            stale_after=self._stale_after,
        )
        self._queue = OptimizationQueue(
            execute=self._execute_job,
            on_failure=self._fail_job,
            max_concurrency=settings.OPTIMIZATION_MAX_CONCURRENCY,
            queue_timeout=settings.OPTIMIZATION_QUEUE_TIMEOUT_SECONDS,
            job_timeout=settings.OPTIMIZATION_JOB_TIMEOUT_SECONDS,
        )
        self._thumbnails = ThumbnailService(
            storage,
            transformer,
            max_concurrency=settings.OPTIMIZATION_MAX_CONCURRENCY,
            wait_timeout=settings.OPTIMIZATION_QUEUE_TIMEOUT_SECONDS,
            job_timeout=settings.OPTIMIZATION_JOB_TIMEOUT_SECONDS,
            retry_attempts=settings.STORAGE_RETRY_ATTEMPTS,
            retry_backoff=settings.STORAGE_RETRY_BACKOFF_SECONDS,
        )
        self._detector = ProblemDetector(
            repository,
            storage,
            is_job_active=self._queue.is_tracking,
            reconcile=self._reconcile,
            thresholds=ProblemThresholds(
                stuck_uploading=timedelta(minutes=settings.STUCK_UPLOADING_MINUTES),
                stuck_deleting=timedelta(minutes=settings.STUCK_DELETING_MINUTES),
                stuck_optimization=timedelta(seconds=settings.stuck_optimization_seconds),
            ),
            batch_size=settings.PROBLEM_SCAN_BATCH_SIZE,
        )
        self._cleanup = CleanupService(
            repository,
            storage,
            recover_stale=self._recover_stale,
            purge=self._purge_expired,
            policy=CleanupPolicy(
                stale_uploading=self._stale_after[FileStatus.UPLOADING],
                stale_deleting=self._stale_after[FileStatus.DELETING],
                bad_status_ttl=timedelta(days=settings.CLEANUP_BAD_STATUS_TTL_DAYS),
                thumbnail_ttl=timedelta(days=settings.CLEANUP_THUMBNAILS_TTL_DAYS),
                batch_size=settings.CLEANUP_BATCH_SIZE,
            ),
            interval=settings.CLEANUP_INTERVAL_MINUTES * 60,
        )
        # 중복 검사 → PENDING 전이 → submit을 한 덩어리로
        self._submit_lock = threading.Lock()

    @property
    def queue(self) -> OptimizationQueue:
        return self._queue

    @property
    def upload_limit_bytes(self) -> int:
        """형식을 보기 전에 적용하는 상한. 이미지 한도는 ingest()에서 다시 확인한다."""
        return self._settings.max_file_bytes

    # --- 쓰기 경로 ---

    def _apply(self, record: FileRecord, build: Build) -> FileRecord:
        """build(현재 스냅샷)가 만든 변경을 version 조건부로 반영한다.

        build는 전이를 검증하며 InvalidTransition을 던질 수 있고,
        None을 반환하면 바꿀 것이 없다는 뜻이다.
        """
        for _ in range(max(self._settings.WRITE_CONFLICT_RETRIES, 1)):
            changes = build(record)
            if changes is None:
                return record
            updated = self._repo.update_if_unchanged(record, changes)
            if updated is not None:
                self._log_change(record, updated)
                return updated

            fresh = self._repo.get(record.id)
            if fresh is None:
                raise FileNotFound(f"파일 {record.id}을(를) 찾을 수 없습니다")
            logger.debug(f"file {record.id}: write conflict at v{record.version}, retrying at v{fresh.version}")
            record = fresh

        raise ConcurrentModification(f"파일 {record.id}의 동시 수정 충돌이 계속됩니다")

    @staticmethod
    def _log_change(before: FileRecord, after: FileRecord) -> None:
        if before.status != after.status:
            logger.info(f"file {after.id}: {before.status} -> {after.status}")
        if before.optimization_status != after.optimization_status:
            logger.info(
                f"file {after.id}: optimization {before.optimization_status} -> {after.optimization_status}"
            )

    def _transition(self, record: FileRecord, target: FileStatus, **extra) -> FileRecord:
        def build(current: FileRecord) -> dict:
            return {
                "status": transition(current.status, target),
                "status_changed_at": _now(),
                **extra,
            }

        return self._apply(record, build)

    def _transition_optimization(
        self, record: FileRecord, target: OptimizationStatus, **extra
    ) -> FileRecord:
        def build(current: FileRecord) -> dict:
            return {
                "optimization_status": transition_optimization(current.optimization_status, target),
                **extra,
            }

        return self._apply(record, build)

    def _reconcile(self, record: FileRecord, target: FileStatus) -> FileRecord | None:
        """문제 탐지가 관측한 사실(객체 없음/다시 있음)을 상태에 반영한다."""
        try:
            return self._transition(record, target)
        except (InvalidTransition, ConcurrentModification) as e:
            logger.warning(f"file {record.id}: could not reconcile to {target}: {e.message}")
            return None

    # --- 업로드 ---

    def ingest(
        self,
        data: bytes | None = None,
        *,
        url: str | None = None,
        filename: str | None = None,
        mime_type: str | None = None,
        metadata: dict | None = None,
        scope: Scope | None = None,
        params: CompressParams | dict | str | None = None,
        wait: bool = False,
    ) -> FileRecord:
        """바이트 또는 URL을 받아 레코드를 돌려준다.

        같은 바이트가 이미 있으면 새로 저장하지 않고 기존 레코드를 반환한다.
        새 이미지면 최적화 작업을 큐에 넣는다 (wait=True면 끝날 때까지 기다림).
        """
        if (data is None) == (url is None):
            raise ValidationFailed("data와 url 중 정확히 하나를 지정해야 합니다")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationFailed("metadata는 JSON 객체여야 합니다")
        compress = _as_compress_params(params)
        scope = scope or Scope()

        if url is not None:
            downloaded = self._fetcher.download(
                url,
                max_bytes=self._settings.url_upload_max_bytes,
                max_duration=self._settings.URL_UPLOAD_TIMEOUT_SECONDS,
            )
            data = downloaded.data
            filename = filename or downloaded.filename
            mime_type = mime_type or downloaded.mime_type

        if not data:
            raise ValidationFailed("빈 파일은 업로드할 수 없습니다")

        detected = detect_mime(data)
        mime_type = detected or mime_type or "application/octet-stream"
        limit = (
            self._settings.image_max_bytes
            if mime_type.startswith("image/")
            else self._settings.max_file_bytes
        )
        if len(data) > limit:
            raise FileTooLarge(f"파일 크기 {len(data)} bytes가 한도 {limit} bytes를 넘었습니다")

        optimizable = detected in OPTIMIZABLE_MIME_TYPES
        wants_optimization = optimizable and self._settings.OPTIMIZATION_ENABLED
        checksum = compute_checksum(data)
        now = _now()
        draft = FileRecord(
            id=uuid.uuid4().hex,
            filename=_clean_filename(filename, mime_type),
            mime_type=mime_type,
            size=len(data),
            original_mime_type=mime_type,
            original_size=len(data),
            checksum=checksum,
            status=FileStatus.UPLOADING,
            optimization_status=(
                OptimizationStatus.PENDING if wants_optimization else OptimizationStatus.SKIPPED
            ),
            status_changed_at=now,
            created_at=now,
            updated_at=now,
            app_id=scope.app_id,
            user_id=scope.user_id,
            purpose=scope.purpose,
            metadata=metadata,
        )

        claim = self._claim(checksum, draft, data)
        if claim.status != FileStatus.UPLOADING or claim.id != draft.id:
            return claim

        try:
            stored = with_retry(
                lambda: self._storage.put(data, mime_type),
                label=f"store {claim.id}",
                attempts=self._settings.STORAGE_RETRY_ATTEMPTS,
                backoff=self._settings.STORAGE_RETRY_BACKOFF_SECONDS,
            )
        except StorageFailure:
            self._abandon_claim(claim)
            raise

        ready = self._transition(
            claim,
            FileStatus.READY,
            storage_key=stored.key,
            storage_bucket=stored.bucket,
            uploaded_at=_now(),
            exif=extract_exif(data) if optimizable else None,
        )
        logger.info(f"Ingested {ready.id} ({ready.filename}, {ready.size} bytes, {ready.mime_type})")

        if ready.optimization_status != OptimizationStatus.PENDING:
            return ready

        spec = resolve_compress(compress, self._settings)
        with self._submit_lock:
            try:
                future = self._submit(ready, spec)
            except QueueClosed:
                # 업로드 자체는 성공 → 레코드는 돌려주고 최적화만 실패로 남긴다
                return self.get_by_id(ready.id)
        if wait:
            try:
                self._await(future, ready.id)
            except AppException as e:
                # 업로드는 끝났으므로 실패는 레코드(optimization_error)로만 알린다
                logger.info(f"Optimization of {ready.id} did not complete: {e.message}")
            return self.get_by_id(ready.id)
        return ready

    def _claim(self, checksum: str, draft: FileRecord, data: bytes) -> FileRecord:
        """새로 선점했으면 draft 레코드를, 중복이면 기존 레코드를 반환한다."""
        for _ in range(max(self._settings.DEDUP_CLAIM_ATTEMPTS, 1)):
            outcome = self._dedup.find_or_mark_new(checksum, draft)
            if isinstance(outcome, New):
                return outcome.record

            existing = outcome.record
            if existing.status == FileStatus.FAILED or is_stale(existing, self._stale_after, _now()):
                # 실패했거나 죽은 프로세스가 남긴 레코드가 checksum을 붙잡고 있음 → 정리하고 다시 선점
                try:
                    if existing.status == FileStatus.FAILED:
                        self._delete_record(existing)
                    else:
                        self._recover_stale(existing)
                except (InvalidTransition, ConcurrentModification):
                    logger.debug(f"file {existing.id}: already handled by a concurrent request")
                continue

            if existing.status == FileStatus.MISSING and existing.storage_key:
                # 같은 바이트 = 같은 키 → 잃어버린 객체를 되살린다
                with_retry(
                    lambda: self._storage.put(data, existing.original_mime_type, key=existing.storage_key),
                    label=f"restore {existing.id}",
                    attempts=self._settings.STORAGE_RETRY_ATTEMPTS,
                    backoff=self._settings.STORAGE_RETRY_BACKOFF_SECONDS,
                )
                existing = self._transition(existing, FileStatus.READY)

            logger.info(f"Duplicate upload of {checksum[:19]}… -> {existing.id} ({existing.status})")
            return existing

        raise ConcurrentModification(f"checksum {checksum[:19]}… 선점에 계속 실패했습니다")

    def _abandon_claim(self, claim: FileRecord) -> None:
        """저장에 실패한 선점 레코드를 FAILED → DELETED로 정리해 checksum을 풀어 준다."""
        try:
            failed = self._transition(claim, FileStatus.FAILED)
            self._transition(failed, FileStatus.DELETED, deleted_at=_now())
        except AppException:
            logger.exception(f"file {claim.id}: could not release failed upload claim")

    def _recover_stale(self, record: FileRecord) -> FileRecord:
        """죽은 프로세스가 UPLOADING/DELETING에 남긴 레코드를 끝낸다.

        업로드는 버리고(FAILED → DELETED), 삭제는 스토리지 삭제부터 이어서 마친다.
        """
        if record.status == FileStatus.DELETING:
            logger.warning(f"file {record.id}: resuming interrupted delete")
            return self._finish_delete(record)

        logger.warning(f"file {record.id}: abandoning stale upload (since {record.status_changed_at})")
        failed = self._transition(record, FileStatus.FAILED)
        # put 직후에 죽었다면 콘텐츠 주소 키에 객체가 남아 있다
        key = key_for_digest(checksum_hex(failed.checksum), failed.original_mime_type)
        try:
            with_retry(
                lambda: self._storage.delete(key),
                label=f"delete stale upload {failed.id}",
                attempts=self._settings.STORAGE_RETRY_ATTEMPTS,
                backoff=self._settings.STORAGE_RETRY_BACKOFF_SECONDS,
            )
        except StorageObjectNotFound:
            pass
        return self._transition(failed, FileStatus.DELETED, deleted_at=_now())

    def _purge_expired(self, record: FileRecord) -> FileRecord:
        self._queue.cancel(record.id)
        return self._delete_record(record)

    # --- 최적화 ---

    def _submit(self, record: FileRecord, spec: TransformSpec) -> Future:
        """_submit_lock 안에서 호출한다. 큐가 닫혀 있으면 레코드를 FAILED로 두고 다시 던진다."""
        try:
            return self._queue.submit(OptimizationJob(file_id=record.id, spec=spec))
        except QueueClosed as e:
            self._mark_optimization_failed(record.id, "QueueShutdown", e.message)
            raise

    def _await(self, future: Future, file_id: str) -> None:
        # 큐 대기 + 실행 제한을 모두 넘길 수는 없지만, 협력적 취소라 여유를 둔다
        limit = self._settings.stuck_optimization_seconds + 5.0
        try:
            future.result(timeout=limit)
        except FutureTimeout as e:
            raise QueueTimeout(f"파일 {file_id}의 최적화 결과를 {limit}s 안에 받지 못했습니다") from e

    def reoptimize(
        self,
        file_id: str,
        params: CompressParams | dict | str | None = None,
        wait: bool = False,
    ) -> FileRecord:
        """새 최적화 작업을 접수한다. 진행 중인 작업이 있으면 DuplicateJob."""
        spec = resolve_compress(_as_compress_params(params), self._settings)

        with self._submit_lock:
            record = self.get_by_id(file_id)
            if record.status != FileStatus.READY:
                raise Conflict(f"READY 상태의 파일만 최적화할 수 있습니다 (현재 {record.status})")
            if record.original_mime_type not in OPTIMIZABLE_MIME_TYPES:
                raise ValidationFailed(f"최적화할 수 없는 형식입니다: {record.original_mime_type}")
            if self._queue.is_tracking(file_id) or record.optimization_status in ACTIVE_OPTIMIZATION:
                raise DuplicateJob(f"파일 {file_id}의 작업이 이미 진행 중입니다")

            pending = self._transition_optimization(
                record,
                OptimizationStatus.PENDING,
                optimization_error=None,
                optimization_started_at=None,
                optimization_completed_at=None,
            )
            future = self._submit(pending, spec)

        if wait:
            self._await(future, file_id)
            return self.get_by_id(file_id)
        return pending

    def _execute_job(self, job: OptimizationJob, token: CancelToken) -> FileRecord:
        """워커 스레드에서 실행된다. 원본은 읽기만 하고, 결과는 별도 키에 쓴다."""
        record = self._repo.get(job.file_id)
        if record is None:
            raise FileNotFound(f"파일 {job.file_id}을(를) 찾을 수 없습니다")
        token.raise_if_cancelled()

        started = self._transition_optimization(
            record,
            OptimizationStatus.PROCESSING,
            optimization_started_at=_now(),
        )
        if started.status != FileStatus.READY or not started.storage_key:
            raise ProcessingFailed(f"최적화할 수 없는 상태입니다 ({started.status})")

        source = with_retry(
            lambda: self._storage.get(started.storage_key),
            label=f"read {started.id}",
            attempts=self._settings.STORAGE_RETRY_ATTEMPTS,
            backoff=self._settings.STORAGE_RETRY_BACKOFF_SECONDS,
        )
        result = self._transformer.run(source, job.spec, token)
        # 변환이 정상 반환했어도 제한 시간을 넘겼으면 실패
        token.raise_if_cancelled()

        key = optimized_key(started.id, result.data, result.mime_type)
        with_retry(
            lambda: self._storage.put(result.data, result.mime_type, key=key),
            label=f"store optimized {started.id}",
            attempts=self._settings.STORAGE_RETRY_ATTEMPTS,
            backoff=self._settings.STORAGE_RETRY_BACKOFF_SECONDS,
        )

        def build(current: FileRecord) -> dict:
            if current.status != FileStatus.READY:
                raise ProcessingFailed(f"처리 중 파일 상태가 바뀌었습니다 ({current.status})")
            return {
                "optimization_status": transition_optimization(
                    current.optimization_status, OptimizationStatus.DONE
                ),
                "optimized_key": key,
                "size": len(result.data),
                "mime_type": result.mime_type,
                "filename": _renamed(current.filename, result.mime_type),
                "optimization_params": job.spec.as_dict(),
                "optimization_error": None,
                "optimization_completed_at": _now(),
            }

        try:
            done = self._apply(started, build)
        except AppException:
            self._discard(key)
            raise

        if started.optimized_key and started.optimized_key != key:
            self._discard(started.optimized_key)
        logger.info(f"Optimized {done.id}: {done.original_size} -> {done.size} bytes ({done.mime_type})")
        return done

    def _fail_job(self, job: OptimizationJob, cause: str, message: str) -> None:
        self._mark_optimization_failed(job.file_id, cause, message)

    def _mark_optimization_failed(self, file_id: str, cause: str, message: str) -> FileRecord | None:
        record = self._repo.get(file_id)
        if record is None:
            logger.warning(f"file {file_id}: record vanished before marking optimization failed")
            return None

        def build(current: FileRecord) -> dict | None:
            if current.optimization_status not in ACTIVE_OPTIMIZATION:
                return None
            return {
                "optimization_status": transition_optimization(
                    current.optimization_status, OptimizationStatus.FAILED
                ),
                "optimization_error": f"{cause}: {message}",
                "optimization_completed_at": _now(),
            }

        return self._apply(record, build)

    def _discard(self, key: str) -> None:
        try:
            self._storage.delete(key)
        except StorageObjectNotFound:
            pass
        except StorageFailure as e:
            logger.warning(f"Could not remove {key}: {e.message}")

    # --- 조회 ---

    def get_by_id(self, file_id: str) -> FileRecord:
        record = self._repo.get(file_id)
        if record is None or record.status == FileStatus.DELETED:
            raise FileNotFound(f"파일 {file_id}을(를) 찾을 수 없습니다")
        return record

    def read_content(self, file_id: str) -> tuple[bytes, FileRecord]:
        """현재 표현(최적화 결과가 있으면 그것)의 바이트와 레코드."""
        record = self.get_by_id(file_id)
        if record.status != FileStatus.READY or not record.content_key:
            if record.status == FileStatus.MISSING:
                raise StorageObjectNotFound(f"파일 {file_id}의 객체가 스토리지에 없습니다")
            raise Conflict(f"아직 내려받을 수 없는 상태입니다 ({record.status})")

        data = with_retry(
            lambda: self._storage.get(record.content_key),
            label=f"read {record.id}",
            attempts=self._settings.STORAGE_RETRY_ATTEMPTS,
            backoff=self._settings.STORAGE_RETRY_BACKOFF_SECONDS,
        )
        return data, record

    def list_files(
        self,
        flt: ListFilter | None = None,
        sort: str = "uploaded_at",
        order: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> FilePage:
        flt = flt or ListFilter()
        if not 1 <= limit <= MAX_LIST_LIMIT:
            raise ValidationFailed(f"limit은 1..{MAX_LIST_LIMIT} 범위여야 합니다")
        if offset < 0:
            raise ValidationFailed("offset은 0 이상이어야 합니다")
        if order not in ("asc", "desc"):
            raise ValidationFailed("order는 asc 또는 desc여야 합니다")

        items = self._repo.query(flt, sort=sort, order=order, limit=limit, offset=offset)
        return FilePage(items=items, total=self._repo.count(flt), limit=limit, offset=offset)

    # --- 삭제 ---

    def delete(self, file_id: str) -> FileRecord:
        record = self.get_by_id(file_id)
        self._queue.cancel(file_id)
        return self._delete_record(record)

    def _delete_record(self, record: FileRecord) -> FileRecord:
        """객체가 있으면 DELETING → (스토리지 삭제) → DELETED, 없으면 바로 DELETED.

        이미 DELETING이면(이전 삭제가 중간에 끊김) 스토리지 삭제부터 이어서 한다.
        """
        if record.status == FileStatus.DELETING:
            return self._finish_delete(record)

        if record.status == FileStatus.MISSING or (
            record.status == FileStatus.FAILED and not record.storage_key
        ):
            self._remove_derived_objects(record)
            return self._transition(record, FileStatus.DELETED, deleted_at=record.deleted_at or _now())

        deleting = self._transition(record, FileStatus.DELETING, deleted_at=_now())
        return self._finish_delete(deleting)

    def _finish_delete(self, deleting: FileRecord) -> FileRecord:
        try:
            self._remove_objects(deleting)
        except StorageFailure as e:
            logger.error(f"file {deleting.id}: storage delete failed: {e.message}")
            self._transition(deleting, FileStatus.FAILED)
            raise
        return self._transition(deleting, FileStatus.DELETED, deleted_at=deleting.deleted_at or _now())

    def _remove_derived_objects(self, record: FileRecord) -> None:
        """원본 없이 지우는 레코드라도 최적화 결과/썸네일은 남기지 않는다."""
        try:
            self._remove_objects(replace(record, storage_key=None))
        except StorageFailure as e:
            logger.warning(f"file {record.id}: derived objects left behind: {e.message}")

    def _remove_objects(self, record: FileRecord) -> None:
        def retry(fn, label):
            return with_retry(
                fn,
                label=label,
                attempts=self._settings.STORAGE_RETRY_ATTEMPTS,
                backoff=self._settings.STORAGE_RETRY_BACKOFF_SECONDS,
            )

        if record.storage_key:
            try:
                retry(lambda: self._storage.delete(record.storage_key), f"delete {record.id}")
            except StorageObjectNotFound:
                logger.warning(f"file {record.id}: object {record.storage_key} was already gone")
        retry(lambda: self._storage.delete_prefix(f"{OPTIMIZED_PREFIX}/{record.id}"), f"delete optimized {record.id}")
        retry(lambda: self._storage.delete_prefix(thumbnail_prefix(record.id)), f"delete thumbnails {record.id}")

    def bulk_delete(
        self,
        flt: ListFilter,
        limit: int = 1000,
        dry_run: bool = False,
    ) -> BulkDeleteResult:
        """범위(app_id/user_id/purpose) 안의 READY/FAILED/MISSING 파일을 지운다.

        레코드마다 따로 처리하므로 하나가 실패해도 나머지는 계속 진행한다.
        """
        if Scope(flt.app_id, flt.user_id, flt.purpose).is_empty():
            raise ValidationFailed("app_id, user_id, purpose 중 하나 이상을 지정해야 합니다")
        if not 1 <= limit <= MAX_BULK_DELETE_LIMIT:
            raise ValidationFailed(f"limit은 1..{MAX_BULK_DELETE_LIMIT} 범위여야 합니다")

        scoped = ListFilter(
            app_id=flt.app_id,
            user_id=flt.user_id,
            purpose=flt.purpose,
            mime_type=flt.mime_type,
            q=flt.q,
            statuses=DELETABLE_STATUSES,
        )
        candidates = self._repo.query(scoped, sort="created_at", order="asc", limit=limit)
        if dry_run:
            logger.info(f"Bulk delete dry run: {len(candidates)} candidate(s)")
            return BulkDeleteResult(dry_run=True, candidates=candidates)

        results = []
        for record in candidates:
            self._queue.cancel(record.id)
            try:
                self._delete_record(record)
            except AppException as e:
                results.append(BulkDeleteItem(file_id=record.id, outcome="failed", error=e.message))
            else:
                results.append(BulkDeleteItem(file_id=record.id, outcome="deleted"))

        result = BulkDeleteResult(dry_run=False, candidates=candidates, results=results)
        logger.info(f"Bulk delete finished: {result.deleted} deleted, {result.failed} failed")
        return result

    # --- 썸네일 / 문제 탐지 / 상태 ---

    def thumbnail(self, file_id: str, params: ThumbnailParams | dict) -> Thumbnail:
        if not isinstance(params, ThumbnailParams):
            params = validate_thumbnail_params(params)
        record = self.get_by_id(file_id)
        return self._thumbnails.render(record, resolve_thumbnail(params, self._settings))

    def scan_problems(self, limit: int = 10) -> list[ProblemReport]:
        if not 1 <= limit <= MAX_PROBLEM_SCAN_LIMIT:
            raise ValidationFailed(f"limit은 1..{MAX_PROBLEM_SCAN_LIMIT} 범위여야 합니다")
        return self._detector.scan(limit)

    def health_snapshot(self) -> dict:
        return {**self._queue.stats(), "optimization_enabled": self._settings.OPTIMIZATION_ENABLED}

    # --- 수명 주기 ---

    def start(self) -> None:
        self._queue.start()
        if self._settings.CLEANUP_ENABLED:
            self._cleanup.start()

    def run_cleanup(self) -> CleanupReport:
        """정리 작업을 지금 한 번 돌린다 (스케줄과 별개)."""
        return self._cleanup.run()

    def recover_interrupted_jobs(self) -> int:
        """재시작 전에 PENDING/PROCESSING으로 남은 레코드를 FAILED로 돌린다.

        큐는 프로세스 메모리에만 있으므로 이런 레코드는 이어서 처리할 작업이 없다.
        """
        recovered = 0
        seen: set[str] = set()
        while True:
            batch = [
                r
                for r in self._repo.with_optimization_status(ACTIVE_OPTIMIZATION, limit=200)
                if r.id not in seen and not self._queue.is_tracking(r.id)
            ]
            if not batch:
                break
            for record in batch:
                seen.add(record.id)
                try:
                    self._mark_optimization_failed(record.id, "Interrupted", "프로세스 재시작으로 작업이 중단되었습니다")
                    recovered += 1
                except AppException as e:
                    logger.warning(f"file {record.id}: could not recover interrupted job: {e.message}")

        if recovered:
            logger.warning(f"Recovered {recovered} interrupted optimization job(s)")
        return recovered

    def shutdown(self, timeout: float | None = None) -> DrainReport:
        if timeout is None:
            timeout = self._settings.OPTIMIZATION_DRAIN_TIMEOUT_SECONDS
        self._cleanup.stop()
        return self._queue.shutdown(timeout=timeout)
