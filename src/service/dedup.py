"""체크섬 기반 중복 제거.

insert-if-absent를 DB의 부분 유니크 인덱스(삭제되지 않은 레코드의 checksum)에 맡긴다.
같은 바이트를 동시에 올리면 삽입에 성공한 쪽 하나만 New를 받아 스토리지에 쓰고,
나머지는 Existing을 받는다.
"""

import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from loguru import logger

from core.exceptions import ChecksumTaken, ConcurrentModification
from model.record import FileRecord
from model.status import FileStatus
from service.repository import FileRepository

# 곧 다른 상태로 넘어갈 레코드 → 잠깐 기다렸다가 결과를 본다
_IN_FLIGHT = frozenset({FileStatus.UPLOADING, FileStatus.DELETING})


@dataclass(frozen=True)
class Existing:
    record: FileRecord


@dataclass(frozen=True)
class New:
    record: FileRecord


def is_stale(record: FileRecord, stale_after: dict[FileStatus, timedelta], now: datetime) -> bool:
    """record가 자기 상태에 허용된 시간보다 오래 머물렀는지 (해당 상태에 기준이 없으면 False)."""
    limit = stale_after.get(record.status)
    return limit is not None and record.status_changed_at < now - limit


class Deduplicator:
    def __init__(
        self,
        repository: FileRepository,
        wait_seconds: float = 5.0,
        poll_interval: float = 0.05,
        claim_attempts: int = 3,
        stale_after: dict[FileStatus, timedelta] | None = None,
    ):
        self._repo = repository
        self._wait_seconds = wait_seconds
        self._poll_interval = poll_interval
        self._claim_attempts = max(claim_attempts, 1)
        self._stale_after = stale_after or {}

    def find_or_mark_new(self, checksum: str, draft: FileRecord) -> Existing | New:
        """살아 있는 같은 checksum 레코드가 있으면 Existing, 없으면 draft를 삽입하고 New.

        draft는 status=UPLOADING, storage_key=None 상태여야 한다.
        Existing이 UPLOADING/DELETING이면 최대 wait_seconds 동안 결과를 기다리고,
        그 사이 DELETED가 되면 다시 선점을 시도한다.
        stale_after를 넘긴 레코드는 기다리지 않고 그대로 돌려준다 (정리는 호출자 몫).
        """
        for _ in range(self._claim_attempts):
            existing = self._repo.find_by_checksum(checksum)
            if existing is None:
                try:
                    claimed = self._repo.insert(draft)
                except ChecksumTaken:
                    logger.info(f"Checksum {checksum[:19]}… claimed concurrently, re-reading")
                    existing = self._repo.find_by_checksum(checksum)
                    if existing is None:
                        # 이긴 쪽이 그 사이 삭제됨
                        continue
                else:
                    logger.debug(f"Claimed checksum {checksum[:19]}… as {claimed.id}")
                    return New(claimed)

            settled = self._settle(existing)
            if settled.status == FileStatus.DELETED:
                continue
            return Existing(settled)

        raise ConcurrentModification(f"checksum {checksum[:19]}… 선점에 계속 실패했습니다")

    def _settle(self, record: FileRecord) -> FileRecord:
        deadline = time.monotonic() + self._wait_seconds
        while (
            record.status in _IN_FLIGHT
            and not is_stale(record, self._stale_after, datetime.now(UTC))
            and time.monotonic() < deadline
        ):
            time.sleep(self._poll_interval)
            fresh = self._repo.get(record.id)
            if fresh is None:
                break
            record = fresh
        return record
