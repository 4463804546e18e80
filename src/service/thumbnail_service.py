"""요청 시점 썸네일 생성 + 스토리지 캐시.

캐시 키는 thumbnails/<file_id>/<params_hash>.<ext> 이고, params_hash가 곧 ETag다.
생성은 BoundedSemaphore로 동시 실행 수를 제한한다 (최적화 큐와 같은 한도).
"""

import threading
from dataclasses import dataclass

from loguru import logger

from core.exceptions import (
    Conflict,
    ProcessingFailed,
    QueueTimeout,
    StorageObjectNotFound,
    ValidationFailed,
)
from model.record import FileRecord
from model.status import ACTIVE_OPTIMIZATION, FileStatus, OptimizationStatus
from processor.params import TransformSpec
from processor.transformer import Transformer
from service.storage import MIME_TO_EXT, StorageGateway
from utility.cancel import CancelToken
from utility.retry import with_retry
from utility.timer import timer

THUMBNAIL_PREFIX = "thumbnails"


@dataclass(frozen=True)
class Thumbnail:
    data: bytes
    mime_type: str
    etag: str


def thumbnail_prefix(file_id: str) -> str:
    return f"{THUMBNAIL_PREFIX}/{file_id}"


def thumbnail_key(file_id: str, spec: TransformSpec) -> str:
    return f"{thumbnail_prefix(file_id)}/{spec.params_hash()}{MIME_TO_EXT.get(spec.mime_type, '')}"


class ThumbnailService:
    def __init__(
        self,
        storage: StorageGateway,
        transformer: Transformer,
        max_concurrency: int = 4,
        wait_timeout: float = 30.0,
        job_timeout: float = 60.0,
        retry_attempts: int = 3,
        retry_backoff: float = 0.2,
    ):
        self._storage = storage
        self._transformer = transformer
        self._slots = threading.BoundedSemaphore(max_concurrency)
        self._wait_timeout = wait_timeout
        self._job_timeout = job_timeout
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff

    def _retry(self, fn, label: str):
        return with_retry(fn, label=label, attempts=self._retry_attempts, backoff=self._retry_backoff)

    def _check(self, record: FileRecord) -> None:
        if record.status != FileStatus.READY or not record.content_key:
            raise Conflict(f"파일 {record.id}은(는) 썸네일을 만들 수 있는 상태가 아닙니다 ({record.status})")
        if not record.is_image:
            raise ValidationFailed("이미지 파일만 썸네일을 만들 수 있습니다")
        if record.optimization_status in ACTIVE_OPTIMIZATION:
            raise Conflict("최적화가 끝난 뒤에 썸네일을 요청하세요")
        if record.optimization_status == OptimizationStatus.FAILED:
            raise ProcessingFailed(f"최적화에 실패한 파일입니다: {record.optimization_error}")

    def render(self, record: FileRecord, spec: TransformSpec) -> Thumbnail:
        """캐시에 있으면 그대로, 없으면 현재 표현(content_key)에서 만들어 저장한다."""
        self._check(record)
        etag = spec.params_hash()
        key = thumbnail_key(record.id, spec)

        try:
            data = self._storage.get(key)
            logger.debug(f"Thumbnail cache hit {key}")
            return Thumbnail(data=data, mime_type=spec.mime_type, etag=etag)
        except StorageObjectNotFound:
            pass

        if not self._slots.acquire(timeout=self._wait_timeout):
            raise QueueTimeout(f"{self._wait_timeout}s 안에 썸네일 생성 슬롯을 얻지 못했습니다")
        try:
            source = self._retry(lambda: self._storage.get(record.content_key), f"read {record.id}")
            token = CancelToken(self._job_timeout)
            with timer(f"thumbnail {record.id} {spec.width}x{spec.height}"):
                result = self._transformer.run(source, spec, token)
            self._retry(
                lambda: self._storage.put(result.data, result.mime_type, key=key),
                f"store thumbnail {record.id}",
            )
        finally:
            self._slots.release()

        logger.info(f"Thumbnail generated for {record.id} ({len(result.data)} bytes)")
        return Thumbnail(data=result.data, mime_type=result.mime_type, etag=etag)
