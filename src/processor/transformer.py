"""Pillow 기반 Transformer.

단계(decode → orient → flatten → resize → encode) 사이마다 취소 토큰을 확인한다.
Pillow의 C 코드는 중간에 끊을 수 없으므로 한 단계가 끝나야 취소가 반영된다.
"""

from dataclasses import dataclass
from typing import Protocol

from loguru import logger

from core.exceptions import JobCancelled, ProcessingFailed
from processor import operations
from processor.params import TransformSpec
from utility.cancel import CancelToken


@dataclass(frozen=True)
class TransformResult:
    data: bytes
    mime_type: str


class Transformer(Protocol):
    def run(self, data: bytes, spec: TransformSpec, token: CancelToken) -> TransformResult: ...


class PillowTransformer:
    def run(self, data: bytes, spec: TransformSpec, token: CancelToken) -> TransformResult:
        token.raise_if_cancelled()
        image = operations.decode(data)

        try:
            token.raise_if_cancelled()
            if spec.auto_orient:
                image = operations.auto_orient(image)
            exif = None if spec.strip_metadata else image.info.get("exif")

            if spec.remove_alpha:
                image = operations.flatten(image)

            token.raise_if_cancelled()
            if spec.width and spec.height:
                image = operations.resize(image, spec.width, spec.height, spec.fit)
            elif spec.max_dimension:
                image = operations.fit_within(image, spec.max_dimension)

            token.raise_if_cancelled()
            output = operations.encode(
                image, spec.format, spec.quality, lossless=spec.lossless, exif=exif
            )
        except (JobCancelled, ProcessingFailed):
            raise
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Pillow transform failed: {e}")
            raise ProcessingFailed(f"이미지 변환 실패: {e}") from e

        token.raise_if_cancelled()
        logger.debug(f"Transformed {len(data)} -> {len(output)} bytes ({spec.format})")
        return TransformResult(data=output, mime_type=spec.mime_type)
