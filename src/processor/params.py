"""변환 파라미터 스키마와 설정값 기반 해석.

요청 값(CompressParams, ThumbnailParams)은 경계에서 검증하고,
코어에는 설정 기본값까지 합친 TransformSpec만 넘긴다.
"""

import hashlib
import json
from dataclasses import asdict, dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.config import Settings
from core.exceptions import ValidationFailed

ImageFormat = Literal["webp", "jpeg", "png"]

FORMAT_MIME = {
    "webp": "image/webp",
    "jpeg": "image/jpeg",
    "png": "image/png",
}


class CompressParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    quality: int | None = Field(default=None, ge=1, le=100)
    max_dimension: int | None = Field(default=None, ge=1, le=8192)
    format: ImageFormat | None = None
    lossless: bool | None = None
    strip_metadata: bool | None = None
    auto_orient: bool | None = None
    remove_alpha: bool | None = None


class ThumbnailParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    width: int = Field(ge=10, le=4096)
    height: int = Field(ge=10, le=4096)
    quality: int | None = Field(default=None, ge=1, le=100)
    fit: Literal["inside", "cover"] = "inside"


@dataclass(frozen=True)
class TransformSpec:
    """Transformer가 그대로 실행하는 완전히 해석된 파라미터."""

    format: str
    quality: int
    lossless: bool = False
    strip_metadata: bool = False
    auto_orient: bool = True
    remove_alpha: bool = False
    max_dimension: int | None = None
    width: int | None = None
    height: int | None = None
    fit: str = "inside"

    @property
    def mime_type(self) -> str:
        return FORMAT_MIME[self.format]

    def as_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def params_hash(self) -> str:
        payload = json.dumps(self.as_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode()).hexdigest()


def _field_errors(exc: ValidationError) -> list[dict]:
    return [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]


def validate_compress_params(raw: dict | str | None) -> CompressParams | None:
    """dict 또는 JSON 문자열을 CompressParams로 검증한다. 비어 있으면 None.

    실패하면 필드별 오류 목록을 담은 ValidationFailed를 던진다.
    """
    if raw is None or raw == "" or raw == {}:
        return None
    try:
        if isinstance(raw, str):
            return CompressParams.model_validate_json(raw)
        return CompressParams.model_validate(raw)
    except ValidationError as e:
        raise ValidationFailed("최적화 파라미터가 올바르지 않습니다", errors=_field_errors(e)) from e


def validate_thumbnail_params(raw: dict) -> ThumbnailParams:
    try:
        return ThumbnailParams.model_validate(raw)
    except ValidationError as e:
        raise ValidationFailed("썸네일 파라미터가 올바르지 않습니다", errors=_field_errors(e)) from e


def resolve_compress(params: CompressParams | None, settings: Settings) -> TransformSpec:
    """요청 값이 있으면 요청 값, 없으면 설정값.

    FORCE_IMAGE_COMPRESSION이면 요청 값을 무시하고 설정값만 쓴다.
    max_dimension은 설정값을 넘을 수 없다.
    """
    p = CompressParams() if params is None or settings.FORCE_IMAGE_COMPRESSION else params

    def pick(value, default):
        return default if value is None else value

    max_dimension = settings.IMAGE_COMPRESSION_MAX_DIMENSION
    if p.max_dimension is not None:
        max_dimension = min(p.max_dimension, max_dimension)

    return TransformSpec(
        format=pick(p.format, settings.IMAGE_COMPRESSION_FORMAT),
        quality=pick(p.quality, settings.IMAGE_COMPRESSION_QUALITY),
        lossless=pick(p.lossless, settings.IMAGE_COMPRESSION_LOSSLESS),
        strip_metadata=pick(p.strip_metadata, settings.IMAGE_COMPRESSION_STRIP_METADATA),
        auto_orient=pick(p.auto_orient, settings.IMAGE_COMPRESSION_AUTO_ORIENT),
        remove_alpha=pick(p.remove_alpha, False),
        max_dimension=max_dimension,
    )


def resolve_thumbnail(params: ThumbnailParams, settings: Settings) -> TransformSpec:
    return TransformSpec(
        format=settings.THUMBNAIL_FORMAT,
        quality=params.quality if params.quality is not None else settings.THUMBNAIL_QUALITY,
        strip_metadata=True,
        width=min(params.width, settings.THUMBNAIL_MAX_WIDTH),
        height=min(params.height, settings.THUMBNAIL_MAX_HEIGHT),
        fit=params.fit,
    )
