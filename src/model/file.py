from datetime import UTC, datetime

from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, SQLModel

_ACTIVE = text("status != 'deleted'")


class FileRow(SQLModel, table=True):
    """files 테이블. 도메인 계층은 이 클래스를 직접 다루지 않는다 (repository.py 참고)."""

    __tablename__ = "files"
    __table_args__ = (
        # 삭제되지 않은 레코드 사이에서만 checksum 유일 → 중복 업로드 경쟁을 DB가 판정
        Index(
            "ux_files_active_checksum",
            "checksum",
            unique=True,
            sqlite_where=_ACTIVE,
            postgresql_where=_ACTIVE,
        ),
        Index("ix_files_status_changed", "status", "status_changed_at"),
        Index("ix_files_optimization", "optimization_status", "optimization_started_at"),
    )

    id: str = Field(primary_key=True, max_length=32)
    filename: str = Field(max_length=255)
    mime_type: str = Field(max_length=100)
    size: int
    original_mime_type: str = Field(max_length=100)
    original_size: int
    checksum: str = Field(max_length=100)
    storage_key: str | None = Field(default=None, max_length=500)
    storage_bucket: str | None = Field(default=None, max_length=100)
    optimized_key: str | None = Field(default=None, max_length=500)
    app_id: str | None = Field(default=None, max_length=100, index=True)
    user_id: str | None = Field(default=None, max_length=100, index=True)
    purpose: str | None = Field(default=None, max_length=50)
    status: str = Field(default="uploading", max_length=20)
    optimization_status: str = Field(default="pending", max_length=20)
    optimization_params: dict | None = Field(default=None, sa_column=Column(JSON))
    optimization_error: str | None = None
    optimization_started_at: datetime | None = None
    optimization_completed_at: datetime | None = None
    meta: dict | None = Field(default=None, sa_column=Column("metadata", JSON))
    exif: dict | None = Field(default=None, sa_column=Column(JSON))
    uploaded_at: datetime | None = None
    deleted_at: datetime | None = None
    status_changed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    version: int = Field(default=1)
