"""SqlFileRepository 테스트 (부분 유니크 인덱스, 조건부 업데이트, 조회)."""

from datetime import UTC, datetime, timedelta

import pytest

from conftest import make_record
from core.exceptions import ChecksumTaken, ValidationFailed
from model.record import ListFilter
from model.status import FileStatus, OptimizationStatus


def test_insert_and_get(repository):
    record = make_record(metadata={"k": "v"})
    stored = repository.insert(record)

    assert stored.id == record.id
    assert stored.metadata == {"k": "v"}
    assert stored.status == FileStatus.READY
    assert stored.created_at.tzinfo is not None
    assert repository.get("missing") is None


def test_checksum_unique_among_live_records(repository):
    repository.insert(make_record(checksum="sha256:same"))

    with pytest.raises(ChecksumTaken):
        repository.insert(make_record(checksum="sha256:same"))


def test_deleted_record_frees_checksum(repository):
    """DELETED 레코드는 checksum 유일성 검사에서 빠진다."""
    repository.insert(make_record(checksum="sha256:same", status=FileStatus.DELETED))
    live = repository.insert(make_record(checksum="sha256:same"))

    assert repository.find_by_checksum("sha256:same").id == live.id


def test_update_if_unchanged_bumps_version(repository):
    record = repository.insert(make_record())
    updated = repository.update_if_unchanged(record, {"status": FileStatus.DELETING})

    assert updated.status == FileStatus.DELETING
    assert updated.version == record.version + 1


def test_update_with_stale_version_is_rejected(repository):
    record = repository.insert(make_record())
    repository.update_if_unchanged(record, {"filename": "first.png"})

    # 옛 스냅샷으로 쓰면 반영되지 않는다
    assert repository.update_if_unchanged(record, {"filename": "second.png"}) is None
    assert repository.get(record.id).filename == "first.png"


def test_query_filters_and_count(repository):
    for i in range(3):
        repository.insert(make_record(app_id="app", filename=f"photo-{i}.png"))
    repository.insert(make_record(app_id="other", filename="photo-x.png"))
    repository.insert(make_record(app_id="app", status=FileStatus.FAILED))

    flt = ListFilter(app_id="app")
    assert repository.count(flt) == 3
    assert len(repository.query(flt, limit=2)) == 2
    assert repository.count(ListFilter(q="photo-1")) == 1
    assert repository.count(ListFilter(app_id="app", statuses=frozenset({FileStatus.FAILED}))) == 1


def test_query_rejects_unknown_sort(repository):
    with pytest.raises(ValidationFailed):
        repository.query(ListFilter(), sort="checksum")


def test_recently_changed_orders_newest_first(repository):
    now = datetime.now(UTC)
    old = repository.insert(make_record(status_changed_at=now - timedelta(hours=2)))
    new = repository.insert(make_record(status_changed_at=now))
    repository.insert(make_record(status=FileStatus.DELETED, status_changed_at=now + timedelta(hours=1)))

    ids = [r.id for r in repository.recently_changed(10)]
    assert ids == [new.id, old.id]


def test_with_optimization_status(repository):
    pending = repository.insert(make_record(optimization_status=OptimizationStatus.PENDING))
    repository.insert(make_record(optimization_status=OptimizationStatus.DONE))

    found = repository.with_optimization_status([OptimizationStatus.PENDING], limit=10)
    assert [r.id for r in found] == [pending.id]


def test_stale_returns_old_records_in_given_statuses(repository):
    now = datetime.now(UTC)
    old_upload = repository.insert(
        make_record(status=FileStatus.UPLOADING, storage_key=None, status_changed_at=now - timedelta(hours=3))
    )
    older_delete = repository.insert(
        make_record(status=FileStatus.DELETING, status_changed_at=now - timedelta(hours=5))
    )
    repository.insert(make_record(status=FileStatus.UPLOADING, storage_key=None, status_changed_at=now))
    repository.insert(make_record(status=FileStatus.READY, status_changed_at=now - timedelta(days=9)))

    before = now - timedelta(hours=1)
    found = repository.stale([FileStatus.UPLOADING, FileStatus.DELETING], before, limit=10)
    assert [r.id for r in found] == [older_delete.id, old_upload.id]
    assert len(repository.stale([FileStatus.UPLOADING, FileStatus.DELETING], before, limit=1)) == 1
