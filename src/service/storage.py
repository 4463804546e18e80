"""스토리지 게이트웨이.

StorageGateway는 코어가 기대하는 인터페이스이고,
LocalStorageGateway는 로컬 디렉터리를 버킷으로 쓰는 구현이다.
키는 콘텐츠 주소(sha256) 기반이라 같은 키에는 항상 같은 바이트만 쓰인다.
"""

import hashlib
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from loguru import logger

from core.exceptions import StorageFailure, StorageObjectNotFound

MIME_TO_EXT = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/avif": ".avif",
    "image/svg+xml": ".svg",
    "application/pdf": ".pdf",
    "text/plain": ".txt",
    "application/json": ".json",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
}


@dataclass(frozen=True)
class StoredObject:
    key: str
    bucket: str
    size: int


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    modified_at: datetime


class StorageGateway(Protocol):
    bucket: str

    def put(self, data: bytes, content_type: str, key: str | None = None) -> StoredObject: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...

    def exists(self, key: str) -> bool: ...

    def delete_prefix(self, prefix: str) -> int: ...

    def list_objects(self, prefix: str) -> list[ObjectInfo]: ...


def key_for_digest(digest: str, content_type: str) -> str:
    """'ab/cd/abcd...ef.jpg' 형태의 콘텐츠 주소 키. digest는 sha256 hex."""
    ext = MIME_TO_EXT.get(content_type, "")
    return f"{digest[:2]}/{digest[2:4]}/{digest}{ext}"


def content_key(data: bytes, content_type: str) -> str:
    return key_for_digest(hashlib.sha256(data).hexdigest(), content_type)


class LocalStorageGateway:
    """root/bucket/ 아래에 객체를 파일로 저장한다."""

    def __init__(self, root: str, bucket: str):
        self.bucket = bucket
        self._base = Path(root) / bucket
        self._base.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in Path(key).parts:
            raise StorageFailure(f"잘못된 스토리지 키: {key!r}")
        return self._base / key

    def put(self, data: bytes, content_type: str, key: str | None = None) -> StoredObject:
        key = key or content_key(data, content_type)
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # 임시 파일에 쓴 뒤 rename → 읽는 쪽이 반쯤 쓰인 파일을 보지 않는다
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError as e:
            raise StorageFailure(f"객체 저장 실패 ({key}): {e}") from e

        logger.debug(f"Stored {key} ({len(data)} bytes, {content_type})")
        return StoredObject(key=key, bucket=self.bucket, size=len(data))

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise StorageObjectNotFound(f"객체가 없습니다: {key}") from e
        except OSError as e:
            raise StorageFailure(f"객체 읽기 실패 ({key}): {e}") from e

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise StorageObjectNotFound(f"객체가 없습니다: {key}") from e
        except OSError as e:
            raise StorageFailure(f"객체 삭제 실패 ({key}): {e}") from e
        logger.debug(f"Deleted {key}")

    def exists(self, key: str) -> bool:
        try:
            return self._path(key).is_file()
        except OSError as e:
            raise StorageFailure(f"객체 확인 실패 ({key}): {e}") from e

    def delete_prefix(self, prefix: str) -> int:
        """prefix 디렉터리 아래 객체를 모두 지우고 지운 개수를 반환한다."""
        path = self._path(prefix.rstrip("/"))
        if not path.is_dir():
            return 0
        count = sum(1 for p in path.rglob("*") if p.is_file())
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise StorageFailure(f"prefix 삭제 실패 ({prefix}): {e}") from e
        return count

    def list_objects(self, prefix: str) -> list[ObjectInfo]:
        """prefix 아래 객체 목록 (쓰는 중인 임시 파일은 제외)."""
        path = self._path(prefix.rstrip("/"))
        if not path.is_dir():
            return []
        objects = []
        try:
            for p in path.rglob("*"):
                if not p.is_file() or p.name.startswith(".upload-"):
                    continue
                stat = p.stat()
                objects.append(
                    ObjectInfo(
                        key=p.relative_to(self._base).as_posix(),
                        size=stat.st_size,
                        modified_at=datetime.fromtimestamp(stat.st_mtime, UTC),
                    )
                )
        except OSError as e:
            raise StorageFailure(f"객체 목록 조회 실패 ({prefix}): {e}") from e
        return objects
