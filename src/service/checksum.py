"""콘텐츠 체크섬 계산. 중복 제거의 키로 쓰인다."""

import hashlib
from collections.abc import Iterable

PREFIX = "sha256:"


def compute_checksum(data: bytes | Iterable[bytes]) -> str:
    """바이트(또는 바이트 청크 스트림)의 sha256 다이제스트를 'sha256:<hex>'로 반환한다."""
    digest = hashlib.sha256()
    if isinstance(data, (bytes, bytearray, memoryview)):
        digest.update(data)
    else:
        for chunk in data:
            digest.update(chunk)
    return f"{PREFIX}{digest.hexdigest()}"


def checksum_hex(checksum: str) -> str:
    return checksum.removeprefix(PREFIX)
