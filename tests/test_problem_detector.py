"""문제 탐지 테스트."""

from datetime import UTC, datetime, timedelta

import pytest

from conftest import make_png, make_record
from core.exceptions import ValidationFailed
from model.status import FileStatus, OptimizationStatus
from service.problem_detector import ProblemThresholds, detect_problems

THRESHOLDS = ProblemThresholds(
    stuck_uploading=timedelta(minutes=30),
    stuck_deleting=timedelta(minutes=30),
    stuck_optimization=timedelta(seconds=90),
)


def _codes(problems) -> set[str]:
    return {p.code for p in problems}


def test_healthy_record_has_no_problems():
    now = datetime.now(UTC)
    assert detect_problems(make_record(), THRESHOLDS, now, object_present=True) == []


def test_stuck_optimization_only_without_active_job():
    now = datetime.now(UTC)
    record = make_record(
        optimization_status=OptimizationStatus.PROCESSING,
        optimization_started_at=now - timedelta(minutes=5),
    )

    assert _codes(detect_problems(record, THRESHOLDS, now)) == {"OPTIMIZATION_STUCK"}
    assert detect_problems(record, THRESHOLDS, now, job_active=True) == []


def test_recent_pending_is_not_stuck():
    now = datetime.now(UTC)
    record = make_record(optimization_status=OptimizationStatus.PENDING, updated_at=now)
    assert detect_problems(record, THRESHOLDS, now) == []


def test_failed_optimization_carries_diagnostic():
    now = datetime.now(UTC)
    record = make_record(
        optimization_status=OptimizationStatus.FAILED,
        optimization_error="QueueTimeout: no worker",
    )
    problems = detect_problems(record, THRESHOLDS, now)

    assert _codes(problems) == {"OPTIMIZATION_FAILED"}
    assert "QueueTimeout" in problems[0].message


def test_status_based_codes():
    now = datetime.now(UTC)
    old = now - timedelta(hours=1)

    assert "UPLOAD_STUCK" in _codes(
        detect_problems(make_record(status=FileStatus.UPLOADING, status_changed_at=old), THRESHOLDS, now)
    )
    assert "DELETE_STUCK" in _codes(
        detect_problems(make_record(status=FileStatus.DELETING, status_changed_at=old, deleted_at=old), THRESHOLDS, now)
    )
    assert "STATUS_FAILED" in _codes(detect_problems(make_record(status=FileStatus.FAILED), THRESHOLDS, now))
    assert "DELETED_AT_MISMATCH" in _codes(detect_problems(make_record(deleted_at=old), THRESHOLDS, now))
    assert "STORAGE_KEY_MISSING" in _codes(detect_problems(make_record(storage_key=None), THRESHOLDS, now))


def test_externally_deleted_object_marks_record_missing(make_coordinator, storage):
    coordinator = make_coordinator(OPTIMIZATION_ENABLED=False)
    record = coordinator.ingest(make_png(), filename="gone.png")
    storage.delete(record.storage_key)

    reports = coordinator.scan_problems(limit=10)

    assert [r.file_id for r in reports] == [record.id]
    assert "STORAGE_OBJECT_MISSING" in {p.code for p in reports[0].problems}
    assert reports[0].observed_status == FileStatus.MISSING
    assert coordinator.get_by_id(record.id).status == FileStatus.MISSING


def test_restored_object_returns_to_ready(make_coordinator, storage):
    coordinator = make_coordinator(OPTIMIZATION_ENABLED=False)
    data = make_png(color="purple")
    record = coordinator.ingest(data)
    storage.delete(record.storage_key)
    coordinator.scan_problems()

    storage.put(data, "image/png", key=record.storage_key)
    reports = coordinator.scan_problems()

    assert reports == []
    assert coordinator.get_by_id(record.id).status == FileStatus.READY


def test_scan_is_capped_and_newest_first(coordinator, repository):
    now = datetime.now(UTC)
    ids = []
    for minutes in (30, 20, 10):
        record = repository.insert(
            make_record(status=FileStatus.FAILED, storage_key=None, status_changed_at=now - timedelta(minutes=minutes))
        )
        ids.append(record.id)

    reports = coordinator.scan_problems(limit=2)

    assert [r.file_id for r in reports] == [ids[2], ids[1]]


def test_scan_limit_is_validated(coordinator):
    with pytest.raises(ValidationFailed):
        coordinator.scan_problems(limit=0)
    with pytest.raises(ValidationFailed):
        coordinator.scan_problems(limit=51)
