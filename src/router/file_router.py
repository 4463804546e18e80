import json
from datetime import datetime
from urllib.parse import quote

from fastapi import APIRouter, Depends, Form, Header, Query, Response, UploadFile, status
from pydantic import BaseModel, Field

from core.dependencies import get_coordinator
from core.exceptions import FileTooLarge, ValidationFailed
from model.record import BulkDeleteResult, FileRecord, ListFilter, ProblemReport, Scope
from model.status import FileStatus, OptimizationStatus
from service.file_service import FileLifecycleCoordinator

router = APIRouter(prefix="/api/v1/files", tags=["files"])

READ_CHUNK = 1024 * 1024


# --- 요청 / 응답 스키마 ---


class FileView(BaseModel):
    """외부에 노출하는 파일 표현. 스토리지 키는 숨기고 다운로드 URL을 준다."""

    id: str
    filename: str
    mime_type: str
    size: int
    original_mime_type: str
    original_size: int
    checksum: str
    status: FileStatus
    optimization_status: OptimizationStatus
    optimization_error: str | None = None
    optimization_params: dict | None = None
    app_id: str | None = None
    user_id: str | None = None
    purpose: str | None = None
    metadata: dict | None = None
    exif: dict | None = None
    url: str
    uploaded_at: datetime | None = None
    status_changed_at: datetime
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: FileRecord) -> "FileView":
        return cls(
            id=record.id,
            filename=record.filename,
            mime_type=record.mime_type,
            size=record.size,
            original_mime_type=record.original_mime_type,
            original_size=record.original_size,
            checksum=record.checksum,
            status=record.status,
            optimization_status=record.optimization_status,
            optimization_error=record.optimization_error,
            optimization_params=record.optimization_params,
            app_id=record.app_id,
            user_id=record.user_id,
            purpose=record.purpose,
            metadata=record.metadata,
            exif=record.exif,
            url=f"{router.prefix}/{record.id}/download",
            uploaded_at=record.uploaded_at,
            status_changed_at=record.status_changed_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class FilePageView(BaseModel):
    items: list[FileView]
    total: int
    limit: int
    offset: int


class UrlUploadRequest(BaseModel):
    url: str
    filename: str | None = None
    params: dict | None = None
    metadata: dict | None = None
    app_id: str | None = None
    user_id: str | None = None
    purpose: str | None = None


class OptimizeRequest(BaseModel):
    params: dict | None = None


class BulkDeleteRequest(BaseModel):
    app_id: str | None = None
    user_id: str | None = None
    purpose: str | None = None
    mime_type: str | None = None
    limit: int = Field(default=1000, ge=1, le=5000)
    dry_run: bool = False


class ProblemItemView(BaseModel):
    code: str
    message: str


class ProblemReportView(BaseModel):
    file_id: str
    filename: str
    observed_status: FileStatus
    observed_optimization_status: OptimizationStatus
    status_changed_at: datetime
    problems: list[ProblemItemView]

    @classmethod
    def from_report(cls, report: ProblemReport) -> "ProblemReportView":
        return cls(
            file_id=report.file_id,
            filename=report.filename,
            observed_status=report.observed_status,
            observed_optimization_status=report.observed_optimization_status,
            status_changed_at=report.status_changed_at,
            problems=[ProblemItemView(code=p.code, message=p.message) for p in report.problems],
        )


def _bulk_delete_view(result: BulkDeleteResult) -> dict:
    return {
        "dry_run": result.dry_run,
        "total": len(result.candidates),
        "deleted": result.deleted,
        "failed": result.failed,
        "candidates": [{"id": r.id, "filename": r.filename, "status": r.status} for r in result.candidates],
        "results": [{"id": r.file_id, "outcome": r.outcome, "error": r.error} for r in result.results],
    }


def _parse_json_object(raw: str | None, field: str) -> dict | None:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationFailed(
            f"{field}는 JSON이어야 합니다", errors=[{"field": field, "message": str(e)}]
        ) from e
    if not isinstance(value, dict):
        raise ValidationFailed(
            f"{field}는 JSON 객체여야 합니다", errors=[{"field": field, "message": "object expected"}]
        )
    return value


def _read_upload(file: UploadFile, limit: int) -> bytes:
    """한도 + 1바이트까지만 읽어 크기 초과를 판단한다."""
    chunks = []
    total = 0
    while chunk := file.file.read(READ_CHUNK):
        total += len(chunk)
        if total > limit:
            raise FileTooLarge(f"파일 크기가 한도 {limit} bytes를 넘었습니다")
        chunks.append(chunk)
    return b"".join(chunks)


# --- 엔드포인트 ---


@router.post("/upload", status_code=status.HTTP_201_CREATED)
def upload_file(
    file: UploadFile,
    params: str | None = Form(default=None),
    metadata: str | None = Form(default=None),
    app_id: str | None = Form(default=None),
    user_id: str | None = Form(default=None),
    purpose: str | None = Form(default=None),
    wait: bool = Query(default=False),
    coordinator: FileLifecycleCoordinator = Depends(get_coordinator),
) -> FileView:
    limit = coordinator.upload_limit_bytes
    data = _read_upload(file, limit)
    record = coordinator.ingest(
        data,
        filename=file.filename,
        mime_type=file.content_type,
        metadata=_parse_json_object(metadata, "metadata"),
        scope=Scope(app_id=app_id, user_id=user_id, purpose=purpose),
        params=_parse_json_object(params, "params"),
        wait=wait,
    )
    return FileView.from_record(record)


@router.post("/from-url", status_code=status.HTTP_201_CREATED)
def upload_from_url(
    req: UrlUploadRequest,
    wait: bool = Query(default=False),
    coordinator: FileLifecycleCoordinator = Depends(get_coordinator),
) -> FileView:
    record = coordinator.ingest(
        url=req.url,
        filename=req.filename,
        metadata=req.metadata,
        scope=Scope(app_id=req.app_id, user_id=req.user_id, purpose=req.purpose),
        params=req.params,
        wait=wait,
    )
    return FileView.from_record(record)


@router.get("/")
def list_files(
    app_id: str | None = None,
    user_id: str | None = None,
    purpose: str | None = None,
    mime_type: str | None = None,
    q: str | None = None,
    file_status: FileStatus = Query(default=FileStatus.READY, alias="status"),
    sort: str = "uploaded_at",
    order: str = "desc",
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    coordinator: FileLifecycleCoordinator = Depends(get_coordinator),
) -> FilePageView:
    flt = ListFilter(
        app_id=app_id,
        user_id=user_id,
        purpose=purpose,
        mime_type=mime_type,
        q=q,
        statuses=frozenset({file_status}),
    )
    page = coordinator.list_files(flt, sort=sort, order=order, limit=limit, offset=offset)
    return FilePageView(
        items=[FileView.from_record(r) for r in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.get("/problems")
def list_problems(
    limit: int = Query(default=10, ge=1, le=50),
    coordinator: FileLifecycleCoordinator = Depends(get_coordinator),
) -> list[ProblemReportView]:
    return [ProblemReportView.from_report(r) for r in coordinator.scan_problems(limit)]


@router.post("/bulk-delete")
def bulk_delete(
    req: BulkDeleteRequest,
    coordinator: FileLifecycleCoordinator = Depends(get_coordinator),
):
    flt = ListFilter(app_id=req.app_id, user_id=req.user_id, purpose=req.purpose, mime_type=req.mime_type)
    result = coordinator.bulk_delete(flt, limit=req.limit, dry_run=req.dry_run)
    return _bulk_delete_view(result)


@router.get("/{file_id}")
def get_file(
    file_id: str,
    coordinator: FileLifecycleCoordinator = Depends(get_coordinator),
) -> FileView:
    return FileView.from_record(coordinator.get_by_id(file_id))


@router.get("/{file_id}/download")
def download_file(
    file_id: str,
    coordinator: FileLifecycleCoordinator = Depends(get_coordinator),
):
    data, record = coordinator.read_content(file_id)
    return Response(
        content=data,
        media_type=record.mime_type,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(record.filename)}"},
    )


@router.get("/{file_id}/thumbnail")
def get_thumbnail(
    file_id: str,
    width: int,
    height: int,
    quality: int | None = None,
    fit: str = "inside",
    if_none_match: str | None = Header(default=None),
    coordinator: FileLifecycleCoordinator = Depends(get_coordinator),
):
    params = {"width": width, "height": height, "fit": fit}
    if quality is not None:
        params["quality"] = quality
    thumb = coordinator.thumbnail(file_id, params)

    etag = f'"{thumb.etag}"'
    headers = {"ETag": etag, "Cache-Control": "public, max-age=86400"}
    if if_none_match == etag:
        return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers=headers)
    return Response(content=thumb.data, media_type=thumb.mime_type, headers=headers)


@router.post("/{file_id}/optimize", status_code=status.HTTP_202_ACCEPTED)
def optimize_file(
    file_id: str,
    req: OptimizeRequest | None = None,
    wait: bool = Query(default=False),
    coordinator: FileLifecycleCoordinator = Depends(get_coordinator),
) -> FileView:
    record = coordinator.reoptimize(file_id, req.params if req else None, wait=wait)
    return FileView.from_record(record)


@router.delete("/{file_id}")
def delete_file(
    file_id: str,
    coordinator: FileLifecycleCoordinator = Depends(get_coordinator),
):
    coordinator.delete(file_id)
    return {"detail": "Deleted"}
