"""
순수 CPU-bound 이미지 처리 함수.
decode/encode를 제외한 함수는 PIL.Image를 받아서 PIL.Image를 반환한다.
"""

import io

from PIL import Image, ImageOps, UnidentifiedImageError

from core.exceptions import ProcessingFailed

PIL_FORMAT = {"webp": "WEBP", "jpeg": "JPEG", "png": "PNG"}

# 최적화(재인코딩) 대상으로 받는 원본 형식
OPTIMIZABLE_MIME_TYPES = frozenset(
    {"image/jpeg", "image/png", "image/webp", "image/gif", "image/bmp", "image/tiff"}
)


def detect_mime(data: bytes) -> str | None:
    """이미지면 Pillow가 판별한 MIME 타입, 아니면 None."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return Image.MIME.get(img.format or "")
    except (UnidentifiedImageError, OSError):
        return None


def decode(data: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
        raise ProcessingFailed(f"이미지를 읽을 수 없습니다: {e}") from e
    return img


def auto_orient(image: Image.Image) -> Image.Image:
    return ImageOps.exif_transpose(image)


def has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info)


def flatten(image: Image.Image, background: str = "#ffffff") -> Image.Image:
    """알파 채널을 배경색 위에 합성해 RGB로 만든다."""
    if not has_alpha(image):
        return image.convert("RGB")
    rgba = image.convert("RGBA")
    canvas = Image.new("RGB", rgba.size, background)
    canvas.paste(rgba, mask=rgba.getchannel("A"))
    return canvas


def fit_within(image: Image.Image, max_dimension: int) -> Image.Image:
    """긴 변이 max_dimension을 넘으면 비율을 유지해 줄인다. 확대는 하지 않는다."""
    if max(image.size) <= max_dimension:
        return image
    result = image.copy()
    result.thumbnail((max_dimension, max_dimension), Image.LANCZOS)
    return result


def resize(image: Image.Image, width: int, height: int, fit: str = "inside") -> Image.Image:
    """inside: 박스 안에 들어가도록 축소 / cover: 박스를 채우고 가운데를 잘라낸다."""
    if fit == "cover":
        return ImageOps.fit(image, (width, height), Image.LANCZOS)
    result = image.copy()
    result.thumbnail((width, height), Image.LANCZOS)
    return result


def encode(
    image: Image.Image,
    format: str,
    quality: int,
    lossless: bool = False,
    exif: bytes | None = None,
) -> bytes:
    pil_format = PIL_FORMAT[format]
    if pil_format == "JPEG" and image.mode not in ("RGB", "L"):
        image = flatten(image)
    elif image.mode not in ("RGB", "RGBA", "L", "LA"):
        image = image.convert("RGBA" if has_alpha(image) else "RGB")

    options: dict = {}
    if pil_format == "WEBP":
        options = {"quality": quality, "lossless": lossless, "method": 6}
    elif pil_format == "JPEG":
        options = {"quality": quality, "optimize": True}
    elif pil_format == "PNG":
        options = {"optimize": True}
    if exif:
        options["exif"] = exif

    buf = io.BytesIO()
    image.save(buf, format=pil_format, **options)
    return buf.getvalue()
