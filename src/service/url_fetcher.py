"""URL 다운로드.

- http/https만 허용. block_unsafe면 https만, 사설망/로컬 호스트는 차단 (SSRF 방지)
- 리다이렉트는 직접 따라가며 매 홉마다 같은 정책을 다시 검사
- 바이트 상한(max_bytes)과 전체 소요 시간 상한(max_duration)을 청크마다 확인
"""

import ipaddress
import socket
import time
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Protocol
from urllib.parse import unquote, urljoin, urlparse

import httpx
from loguru import logger

from core.exceptions import DownloadFailed, DownloadTimeout, DownloadTooLarge, UrlNotAllowed

BLOCKED_HOSTNAME_SUFFIXES = (".local", ".internal", ".lan", ".home", ".svc", ".cluster.local")
CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class DownloadedFile:
    data: bytes
    mime_type: str | None
    filename: str | None


class UrlFetcher(Protocol):
    def download(self, url: str, max_bytes: int, max_duration: float) -> DownloadedFile: ...


def is_private_address(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved or ip.is_unspecified


def is_blocked_hostname(hostname: str) -> bool:
    host = hostname.strip().lower().rstrip(".")
    if not host or host == "localhost":
        return True
    try:
        ipaddress.ip_address(host)
        return False  # IP 리터럴은 is_private_address로 따로 판단
    except ValueError:
        pass
    if "." not in host:
        return True
    return host.endswith(BLOCKED_HOSTNAME_SUFFIXES)


def filename_from_url(url: str) -> str | None:
    name = PurePosixPath(unquote(urlparse(url).path)).name
    return name or None


class HttpUrlFetcher:
    def __init__(
        self,
        block_unsafe: bool = True,
        max_redirects: int = 3,
        client: httpx.Client | None = None,
    ):
        self._block_unsafe = block_unsafe
        self._max_redirects = max_redirects
        self._client = client or httpx.Client(follow_redirects=False)

    def close(self) -> None:
        self._client.close()

    def _assert_allowed(self, url: str) -> None:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise UrlNotAllowed("지원하지 않는 URL 프로토콜입니다")
        if self._block_unsafe and parsed.scheme != "https":
            raise UrlNotAllowed("HTTPS URL만 허용됩니다")
        hostname = parsed.hostname
        if not hostname:
            raise UrlNotAllowed("URL에 호스트가 없습니다")
        if not self._block_unsafe:
            return

        if is_blocked_hostname(hostname):
            raise UrlNotAllowed(f"허용되지 않는 호스트: {hostname}")
        if is_private_address(hostname):
            raise UrlNotAllowed(f"허용되지 않는 주소: {hostname}")

        try:
            infos = socket.getaddrinfo(hostname, parsed.port or 443, proto=socket.IPPROTO_TCP)
        except socket.gaierror as e:
            logger.warning(f"Failed to resolve {hostname}: {e}")
            raise DownloadFailed("URL 호스트를 확인할 수 없습니다") from e
        for info in infos:
            if is_private_address(info[4][0]):
                raise UrlNotAllowed(f"허용되지 않는 주소로 해석됨: {hostname}")

    def download(self, url: str, max_bytes: int, max_duration: float) -> DownloadedFile:
        """URL을 내려받아 바이트로 반환한다.

        max_bytes 초과 → DownloadTooLarge, max_duration 초과 → DownloadTimeout,
        그 밖의 실패 → DownloadFailed.
        """
        deadline = time.monotonic() + max_duration
        current = url

        try:
            for hop in range(self._max_redirects + 1):
                self._assert_allowed(current)
                remaining = max(0.001, deadline - time.monotonic())
                with self._client.stream("GET", current, timeout=httpx.Timeout(remaining)) as response:
                    if response.is_redirect:
                        location = response.headers.get("location")
                        if not location:
                            raise DownloadFailed("Location 없는 리다이렉트입니다")
                        if hop == self._max_redirects:
                            raise DownloadFailed("리다이렉트가 너무 많습니다")
                        current = urljoin(current, location)
                        continue
                    return self._read_body(response, current, max_bytes, deadline)
            raise DownloadFailed("리다이렉트가 너무 많습니다")
        except httpx.TimeoutException as e:
            raise DownloadTimeout from e
        except httpx.HTTPError as e:
            logger.error(f"Failed to download {url}: {e}")
            raise DownloadFailed(f"URL 다운로드 실패: {e}") from e

    def _read_body(
        self, response: httpx.Response, url: str, max_bytes: int, deadline: float
    ) -> DownloadedFile:
        if not response.is_success:
            raise DownloadFailed(f"URL 다운로드 실패: HTTP {response.status_code}")

        expected = response.headers.get("content-length")
        expected_length = int(expected) if expected and expected.isdigit() else None
        if expected_length is not None and expected_length > max_bytes:
            raise DownloadTooLarge

        chunks: list[bytes] = []
        total = 0
        for chunk in response.iter_bytes(CHUNK_SIZE):
            total += len(chunk)
            if total > max_bytes:
                raise DownloadTooLarge
            if time.monotonic() > deadline:
                raise DownloadTimeout
            chunks.append(chunk)

        # content-encoding이 있으면 iter_bytes()가 압축을 푼 길이라 비교하지 않는다
        if (
            expected_length is not None
            and "content-encoding" not in response.headers
            and total != expected_length
        ):
            raise DownloadFailed("손상된 다운로드: content-length 불일치")

        content_type = response.headers.get("content-type")
        mime_type = content_type.split(";")[0].strip().lower() if content_type else None
        logger.info(f"Downloaded {url} ({total} bytes, {mime_type})")
        return DownloadedFile(data=b"".join(chunks), mime_type=mime_type or None, filename=filename_from_url(url))
