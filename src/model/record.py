"""도메인 데이터 구조.

FileRecord는 DB 행이 아니라 '읽은 시점의 스냅샷'이다.
변경은 항상 리포지토리의 조건부 업데이트(version 비교)로만 반영된다.
"""

from dataclasses import dataclass, field
from datetime import datetime

from model.status import FileStatus, OptimizationStatus


@dataclass(frozen=True)
class Scope:
    app_id: str | None = None
    user_id: str | None = None
    purpose: str | None = None

    def is_empty(self) -> bool:
        return not (self.app_id or self.user_id or self.purpose)


@dataclass(frozen=True)
class FileRecord:
    id: str
    filename: str
    mime_type: str
    size: int
    original_mime_type: str
    original_size: int
    checksum: str
    status: FileStatus
    optimization_status: OptimizationStatus
    status_changed_at: datetime
    created_at: datetime
    updated_at: datetime
    storage_key: str | None = None
    storage_bucket: str | None = None
    optimized_key: str | None = None
    app_id: str | None = None
    user_id: str | None = None
    purpose: str | None = None
    optimization_params: dict | None = None
    optimization_error: str | None = None
    optimization_started_at: datetime | None = None
    optimization_completed_at: datetime | None = None
    metadata: dict | None = None
    exif: dict | None = None
    uploaded_at: datetime | None = None
    deleted_at: datetime | None = None
    version: int = 1

    @property
    def is_image(self) -> bool:
        return self.original_mime_type.startswith("image/")

    @property
    def content_key(self) -> str | None:
        """현재 표현(최적화 결과가 있으면 그것)의 스토리지 키."""
        return self.optimized_key or self.storage_key


@dataclass(frozen=True)
class ListFilter:
    app_id: str | None = None
    user_id: str | None = None
    purpose: str | None = None
    mime_type: str | None = None
    q: str | None = None
    statuses: frozenset[FileStatus] = frozenset({FileStatus.READY})


@dataclass(frozen=True)
class FilePage:
    items: list[FileRecord]
    total: int
    limit: int
    offset: int


@dataclass(frozen=True)
class ProblemItem:
    code: str
    message: str


@dataclass(frozen=True)
class ProblemReport:
    file_id: str
    filename: str
    observed_status: FileStatus
    observed_optimization_status: OptimizationStatus
    status_changed_at: datetime
    problems: list[ProblemItem] = field(default_factory=list)


@dataclass(frozen=True)
class BulkDeleteItem:
    file_id: str
    outcome: str  # deleted | failed
    error: str | None = None


@dataclass(frozen=True)
class BulkDeleteResult:
    dry_run: bool
    candidates: list[FileRecord] = field(default_factory=list)
    results: list[BulkDeleteItem] = field(default_factory=list)

    @property
    def deleted(self) -> int:
        return sum(1 for r in self.results if r.outcome == "deleted")

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.outcome == "failed")
