"""FileRecord 영속화 포트와 SQLModel 구현.

도메인 계층은 FileRepository 인터페이스만 알고, SQLModel 세션은 이 모듈 밖으로 나가지 않는다.
모든 쓰기는 update_if_unchanged()로 한다 (version이 같을 때만 반영 = 낙관적 동시성).
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from core.exceptions import ChecksumTaken, ValidationFailed
from model.file import FileRow
from model.record import FileRecord, ListFilter
from model.status import FileStatus, OptimizationStatus

SORT_FIELDS = {
    "uploaded_at": FileRow.uploaded_at,
    "created_at": FileRow.created_at,
    "status_changed_at": FileRow.status_changed_at,
    "size": FileRow.size,
    "filename": FileRow.filename,
}

# FileRecord 필드명 → FileRow 속성명 (다른 것만)
_ROW_ATTR = {"metadata": "meta"}


class FileRepository(Protocol):
    def insert(self, record: FileRecord) -> FileRecord: ...

    def get(self, file_id: str) -> FileRecord | None: ...

    def find_by_checksum(self, checksum: str) -> FileRecord | None: ...

    def query(
        self,
        flt: ListFilter,
        sort: str = "uploaded_at",
        order: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> list[FileRecord]: ...

    def count(self, flt: ListFilter) -> int: ...

    def recently_changed(self, limit: int, offset: int = 0) -> list[FileRecord]: ...

    def with_optimization_status(
        self, statuses: Iterable[OptimizationStatus], limit: int
    ) -> list[FileRecord]: ...

    def stale(
        self, statuses: Iterable[FileStatus], before: datetime, limit: int
    ) -> list[FileRecord]: ...

    def update_if_unchanged(self, record: FileRecord, changes: dict) -> FileRecord | None: ...


def _aware(value: datetime | None) -> datetime | None:
    # SQLite는 tzinfo를 버린다 → 저장은 항상 UTC이므로 다시 붙인다
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _to_record(row: FileRow) -> FileRecord:
    return FileRecord(
        id=row.id,
        filename=row.filename,
        mime_type=row.mime_type,
        size=row.size,
        original_mime_type=row.original_mime_type,
        original_size=row.original_size,
        checksum=row.checksum,
        status=FileStatus(row.status),
        optimization_status=OptimizationStatus(row.optimization_status),
        status_changed_at=_aware(row.status_changed_at),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        storage_key=row.storage_key,
        storage_bucket=row.storage_bucket,
        optimized_key=row.optimized_key,
        app_id=row.app_id,
        user_id=row.user_id,
        purpose=row.purpose,
        optimization_params=row.optimization_params,
        optimization_error=row.optimization_error,
        optimization_started_at=_aware(row.optimization_started_at),
        optimization_completed_at=_aware(row.optimization_completed_at),
        metadata=row.meta,
        exif=row.exif,
        uploaded_at=_aware(row.uploaded_at),
        deleted_at=_aware(row.deleted_at),
        version=row.version,
    )


def _column_value(value):
    return value.value if isinstance(value, Enum) else value


def _to_row(record: FileRecord) -> FileRow:
    data = {
        _ROW_ATTR.get(name, name): _column_value(getattr(record, name))
        for name in FileRecord.__dataclass_fields__
    }
    return FileRow(**data)


class SqlFileRepository:
    def __init__(self, engine: Engine):
        self._engine = engine

    def insert(self, record: FileRecord) -> FileRecord:
        """레코드를 삽입한다. 살아 있는 같은 checksum이 있으면 ChecksumTaken."""
        with Session(self._engine) as session:
            session.add(_to_row(record))
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ChecksumTaken(f"checksum {record.checksum} 는 이미 사용 중입니다") from e
        return self.get(record.id)

    def get(self, file_id: str) -> FileRecord | None:
        with Session(self._engine) as session:
            row = session.get(FileRow, file_id)
            return _to_record(row) if row else None

    def find_by_checksum(self, checksum: str) -> FileRecord | None:
        with Session(self._engine) as session:
            row = session.exec(
                select(FileRow).where(
                    FileRow.checksum == checksum,
                    FileRow.status != FileStatus.DELETED.value,
                )
            ).first()
            return _to_record(row) if row else None

    def _apply_filter(self, stmt, flt: ListFilter):
        if flt.statuses:
            stmt = stmt.where(col(FileRow.status).in_([s.value for s in flt.statuses]))
        if flt.app_id:
            stmt = stmt.where(FileRow.app_id == flt.app_id)
        if flt.user_id:
            stmt = stmt.where(FileRow.user_id == flt.user_id)
        if flt.purpose:
            stmt = stmt.where(FileRow.purpose == flt.purpose)
        if flt.mime_type:
            if flt.mime_type.endswith("/*"):
                stmt = stmt.where(col(FileRow.mime_type).startswith(flt.mime_type[:-1]))
            else:
                stmt = stmt.where(FileRow.mime_type == flt.mime_type)
        if flt.q:
            stmt = stmt.where(col(FileRow.filename).ilike(f"%{flt.q}%"))
        return stmt

    def query(
        self,
        flt: ListFilter,
        sort: str = "uploaded_at",
        order: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> list[FileRecord]:
        sort_col = SORT_FIELDS.get(sort)
        if sort_col is None:
            raise ValidationFailed(f"정렬할 수 없는 필드: {sort}")
        ordering = col(sort_col).asc() if order == "asc" else col(sort_col).desc()

        stmt = self._apply_filter(select(FileRow), flt)
        stmt = stmt.order_by(ordering, col(FileRow.id)).offset(offset).limit(limit)
        with Session(self._engine) as session:
            return [_to_record(row) for row in session.exec(stmt).all()]

    def count(self, flt: ListFilter) -> int:
        stmt = self._apply_filter(select(func.count()).select_from(FileRow), flt)
        with Session(self._engine) as session:
            return session.exec(stmt).one()

    def recently_changed(self, limit: int, offset: int = 0) -> list[FileRecord]:
        """DELETED를 제외하고 status_changed_at 최신순으로 반환한다 (문제 탐지용)."""
        stmt = (
            select(FileRow)
            .where(FileRow.status != FileStatus.DELETED.value)
            .order_by(col(FileRow.status_changed_at).desc(), col(FileRow.id))
            .offset(offset)
            .limit(limit)
        )
        with Session(self._engine) as session:
            return [_to_record(row) for row in session.exec(stmt).all()]

    def with_optimization_status(
        self, statuses: Iterable[OptimizationStatus], limit: int
    ) -> list[FileRecord]:
        stmt = (
            select(FileRow)
            .where(col(FileRow.optimization_status).in_([s.value for s in statuses]))
            .order_by(col(FileRow.updated_at))
            .limit(limit)
        )
        with Session(self._engine) as session:
            return [_to_record(row) for row in session.exec(stmt).all()]

    def stale(
        self, statuses: Iterable[FileStatus], before: datetime, limit: int
    ) -> list[FileRecord]:
        """statuses 중 하나에 before 이전부터 머물러 있는 레코드 (오래된 순, 정리 작업용)."""
        stmt = (
            select(FileRow)
            .where(
                col(FileRow.status).in_([s.value for s in statuses]),
                col(FileRow.status_changed_at) < before,
            )
            .order_by(col(FileRow.status_changed_at), col(FileRow.id))
            .limit(limit)
        )
        with Session(self._engine) as session:
            return [_to_record(row) for row in session.exec(stmt).all()]

    def update_if_unchanged(self, record: FileRecord, changes: dict) -> FileRecord | None:
        """record.version이 DB와 같을 때만 changes를 반영한다.

        반영되면 새 스냅샷을, 다른 쓰기가 먼저 끼어들었으면 None을 반환한다.
        """
        values = {
            getattr(FileRow, _ROW_ATTR.get(name, name)): _column_value(value)
            for name, value in changes.items()
        }
        values[FileRow.version] = record.version + 1
        values[FileRow.updated_at] = datetime.now(UTC)

        stmt = (
            update(FileRow)
            .where(col(FileRow.id) == record.id, col(FileRow.version) == record.version)
            .values(values)
        )
        with Session(self._engine) as session:
            try:
                result = session.exec(stmt)
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ChecksumTaken(f"checksum {record.checksum} 는 이미 사용 중입니다") from e
            if result.rowcount != 1:
                return None
        return self.get(record.id)
