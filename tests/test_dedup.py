"""중복 제거 테스트.

같은 바이트를 동시에 올려도 스토리지 객체와 살아 있는 레코드는 하나여야 한다.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from pathlib import Path

from conftest import make_png, make_record
from model.record import ListFilter
from model.status import FileStatus, OptimizationStatus
from service.dedup import Deduplicator, Existing, New

ALL_LIVE = frozenset(s for s in FileStatus if s != FileStatus.DELETED)


def _stored_files(settings) -> list[Path]:
    bucket = Path(settings.STORAGE_ROOT) / settings.STORAGE_BUCKET
    return [p for p in bucket.rglob("*") if p.is_file() and "optimized" not in p.parts]


def test_first_claim_is_new_then_existing(repository):
    dedup = Deduplicator(repository, wait_seconds=0.1, poll_interval=0.01)
    draft = make_record(checksum="sha256:abc", status=FileStatus.UPLOADING, storage_key=None)

    first = dedup.find_or_mark_new("sha256:abc", draft)
    assert isinstance(first, New)
    assert first.record.id == draft.id

    other = make_record(checksum="sha256:abc", status=FileStatus.UPLOADING, storage_key=None)
    second = dedup.find_or_mark_new("sha256:abc", other)
    assert isinstance(second, Existing)
    assert second.record.id == draft.id


def test_existing_uploading_is_awaited(repository):
    """UPLOADING 중인 기존 레코드는 READY가 될 때까지 기다렸다가 돌려준다."""
    dedup = Deduplicator(repository, wait_seconds=2.0, poll_interval=0.01)
    claim = repository.insert(make_record(checksum="sha256:x", status=FileStatus.UPLOADING, storage_key=None))

    def finish():
        repository.update_if_unchanged(claim, {"status": FileStatus.READY, "storage_key": "ab/cd/x"})

    timer = threading.Timer(0.1, finish)
    timer.start()
    outcome = dedup.find_or_mark_new("sha256:x", make_record(checksum="sha256:x"))
    timer.join()

    assert isinstance(outcome, Existing)
    assert outcome.record.status == FileStatus.READY


def test_stale_in_flight_record_is_returned_without_waiting(repository):
    """죽은 프로세스가 남긴 UPLOADING 레코드는 기다리지 않고 돌려준다."""
    dedup = Deduplicator(
        repository,
        wait_seconds=5.0,
        poll_interval=0.01,
        stale_after={FileStatus.UPLOADING: timedelta(minutes=30)},
    )
    stale = repository.insert(
        make_record(
            checksum="sha256:old",
            status=FileStatus.UPLOADING,
            storage_key=None,
            status_changed_at=datetime.now(UTC) - timedelta(hours=2),
        )
    )

    started = time.monotonic()
    outcome = dedup.find_or_mark_new("sha256:old", make_record(checksum="sha256:old"))

    assert time.monotonic() - started < 1.0
    assert isinstance(outcome, Existing)
    assert outcome.record.id == stale.id
    assert outcome.record.status == FileStatus.UPLOADING


def test_concurrent_identical_ingest_stores_once(make_coordinator, repository, settings):
    coordinator = make_coordinator(OPTIMIZATION_ENABLED=False)
    data = make_png(color="blue")

    with ThreadPoolExecutor(max_workers=8) as pool:
        records = list(pool.map(lambda _: coordinator.ingest(data, filename="same.png"), range(8)))

    assert len({r.id for r in records}) == 1
    assert repository.count(ListFilter(statuses=ALL_LIVE)) == 1
    assert len(_stored_files(settings)) == 1
    assert all(r.optimization_status == OptimizationStatus.SKIPPED for r in records)


def test_reupload_returns_existing_record(make_coordinator, settings):
    coordinator = make_coordinator(OPTIMIZATION_ENABLED=False)
    data = make_png(color="green")

    first = coordinator.ingest(data, filename="a.png")
    second = coordinator.ingest(data, filename="renamed.png")

    assert second.id == first.id
    assert second.filename == "a.png"
    assert len(_stored_files(settings)) == 1


def test_failed_claim_is_purged_and_replaced(make_coordinator, repository):
    """저장하지 못한 채 FAILED로 남은 레코드는 정리되고 새 레코드가 만들어진다."""
    coordinator = make_coordinator(OPTIMIZATION_ENABLED=False)
    data = make_png(color="yellow")
    checksum = coordinator.ingest(data).checksum
    stale = repository.find_by_checksum(checksum)
    repository.update_if_unchanged(stale, {"status": FileStatus.FAILED, "storage_key": None})

    fresh = coordinator.ingest(data)

    assert fresh.id != stale.id
    assert fresh.status == FileStatus.READY
    assert repository.get(stale.id).status == FileStatus.DELETED
