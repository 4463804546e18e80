"""이미지 처리 함수 / PillowTransformer 단위 테스트."""

import io

import pytest
from PIL import Image

from conftest import make_png
from core.exceptions import JobCancelled, ProcessingFailed
from processor.exif import extract_exif
from processor.operations import decode, detect_mime, encode, fit_within, flatten, has_alpha, resize
from processor.params import TransformSpec
from processor.transformer import PillowTransformer
from utility.cancel import CancelToken


def _make_image(width: int = 100, height: int = 100, mode: str = "RGB") -> Image.Image:
    """테스트용 이미지를 메모리에서 생성한다."""
    return Image.new(mode, (width, height), color="red")


def test_resize_inside_keeps_ratio():
    result = resize(_make_image(200, 100), width=50, height=50)
    assert result.size == (50, 25)


def test_resize_cover_fills_box():
    result = resize(_make_image(200, 100), width=50, height=50, fit="cover")
    assert result.size == (50, 50)


def test_fit_within_never_upscales():
    small = _make_image(40, 30)
    assert fit_within(small, 100).size == (40, 30)
    assert fit_within(_make_image(400, 300), 100).size == (100, 75)


def test_flatten_removes_alpha():
    rgba = Image.new("RGBA", (10, 10), (0, 0, 0, 0))
    assert has_alpha(rgba)

    result = flatten(rgba)
    assert result.mode == "RGB"
    # 투명 픽셀은 흰 배경이 된다
    assert result.getpixel((0, 0)) == (255, 255, 255)


def test_encode_formats():
    img = _make_image(20, 20, mode="RGBA")
    for fmt, pil_format in (("webp", "WEBP"), ("jpeg", "JPEG"), ("png", "PNG")):
        data = encode(img, fmt, quality=80)
        assert Image.open(io.BytesIO(data)).format == pil_format


def test_detect_mime():
    assert detect_mime(make_png()) == "image/png"
    assert detect_mime(b"not an image") is None


def test_decode_garbage_raises():
    with pytest.raises(ProcessingFailed):
        decode(b"\x89PNG broken")


def test_transformer_compresses_to_spec():
    spec = TransformSpec(format="jpeg", quality=70, max_dimension=32)
    result = PillowTransformer().run(make_png(128, 64), spec, CancelToken())

    assert result.mime_type == "image/jpeg"
    assert Image.open(io.BytesIO(result.data)).size == (32, 16)


def test_transformer_honours_cancel():
    token = CancelToken()
    token.cancel("Cancelled")

    with pytest.raises(JobCancelled):
        PillowTransformer().run(make_png(), TransformSpec(format="webp", quality=80), token)


def test_transformer_expired_token():
    token = CancelToken(timeout=0)
    with pytest.raises(JobCancelled):
        PillowTransformer().run(make_png(), TransformSpec(format="webp", quality=80), token)
    assert token.reason == "Timeout"


def test_extract_exif_from_jpeg():
    img = _make_image(10, 10)
    exif = Image.Exif()
    exif[0x010F] = "TestCam"  # Make
    buf = io.BytesIO()
    img.save(buf, format="JPEG", exif=exif.tobytes())

    assert extract_exif(buf.getvalue())["Make"] == "TestCam"
    assert extract_exif(make_png()) is None
