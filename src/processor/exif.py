"""업로드 시점의 EXIF 추출."""

import io

from loguru import logger
from PIL import ExifTags, Image, UnidentifiedImageError

MAX_VALUE_LENGTH = 256


def _plain(value):
    if isinstance(value, bytes):
        return None
    if isinstance(value, (int, float, str)):
        return value[:MAX_VALUE_LENGTH] if isinstance(value, str) else value
    if isinstance(value, tuple):
        return [_plain(v) for v in value]
    try:
        return float(value)  # IFDRational
    except (TypeError, ValueError):
        return str(value)[:MAX_VALUE_LENGTH]


def extract_exif(data: bytes) -> dict | None:
    """EXIF 태그를 {태그명: JSON 직렬화 가능한 값}으로 반환한다. 없으면 None."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            exif = img.getexif()
    except (UnidentifiedImageError, OSError) as e:
        logger.debug(f"EXIF extraction skipped: {e}")
        return None

    result = {}
    for tag_id, value in exif.items():
        name = ExifTags.TAGS.get(tag_id, str(tag_id))
        plain = _plain(value)
        if plain is not None:
            result[name] = plain
    return result or None
