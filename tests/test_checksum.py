"""체크섬 계산 테스트."""

import hashlib

from service.checksum import checksum_hex, compute_checksum


def test_checksum_is_deterministic():
    data = b"hello imagevault" * 100
    assert compute_checksum(data) == compute_checksum(data)


def test_checksum_format():
    data = b"abc"
    checksum = compute_checksum(data)

    assert checksum == f"sha256:{hashlib.sha256(data).hexdigest()}"
    assert checksum_hex(checksum) == hashlib.sha256(data).hexdigest()


def test_chunked_input_matches_whole_bytes():
    """청크 스트림으로 계산해도 한 번에 계산한 값과 같다."""
    data = bytes(range(256)) * 50
    chunks = (data[i : i + 1000] for i in range(0, len(data), 1000))

    assert compute_checksum(chunks) == compute_checksum(data)


def test_different_bytes_different_checksum():
    assert compute_checksum(b"a") != compute_checksum(b"b")
