"""파일 상태 머신.

두 개의 독립된 축을 다룬다.
- FileStatus: 업로드/삭제 라이프사이클
- OptimizationStatus: 비동기 최적화 파이프라인

전이 가능 여부는 아래 표와 _check() 하나로만 판단한다.
호출하는 쪽에서 if 문으로 상태를 따로 비교하지 않는다.
"""

from enum import StrEnum

from core.exceptions import InvalidTransition


class FileStatus(StrEnum):
    UPLOADING = "uploading"
    READY = "ready"
    DELETING = "deleting"
    DELETED = "deleted"
    FAILED = "failed"
    MISSING = "missing"


class OptimizationStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


FILE_TRANSITIONS: dict[FileStatus, frozenset[FileStatus]] = {
    FileStatus.UPLOADING: frozenset({FileStatus.READY, FileStatus.FAILED}),
    FileStatus.READY: frozenset({FileStatus.DELETING, FileStatus.MISSING}),
    FileStatus.DELETING: frozenset({FileStatus.DELETED, FileStatus.FAILED}),
    FileStatus.MISSING: frozenset({FileStatus.READY, FileStatus.DELETED}),
    # FAILED는 삭제(purge) 경로로만 빠져나간다
    FileStatus.FAILED: frozenset({FileStatus.DELETING, FileStatus.DELETED}),
    FileStatus.DELETED: frozenset(),
}

OPTIMIZATION_TRANSITIONS: dict[OptimizationStatus, frozenset[OptimizationStatus]] = {
    OptimizationStatus.PENDING: frozenset({OptimizationStatus.PROCESSING, OptimizationStatus.FAILED}),
    OptimizationStatus.PROCESSING: frozenset({OptimizationStatus.DONE, OptimizationStatus.FAILED}),
    # 재최적화 요청 = 새 작업
    OptimizationStatus.DONE: frozenset({OptimizationStatus.PENDING}),
    OptimizationStatus.FAILED: frozenset({OptimizationStatus.PENDING}),
    OptimizationStatus.SKIPPED: frozenset({OptimizationStatus.PENDING}),
}

# bulk delete / 삭제 대상이 될 수 있는 상태
DELETABLE_STATUSES = frozenset({FileStatus.READY, FileStatus.FAILED, FileStatus.MISSING})

# 최적화가 아직 끝나지 않은 상태
ACTIVE_OPTIMIZATION = frozenset({OptimizationStatus.PENDING, OptimizationStatus.PROCESSING})


def _check(table: dict, current, target, axis: str):
    if target not in table.get(current, frozenset()):
        raise InvalidTransition(f"{axis}: {current} -> {target} 전이는 허용되지 않습니다")
    return target


def can_transition(current: FileStatus, target: FileStatus) -> bool:
    return target in FILE_TRANSITIONS.get(current, frozenset())


def transition(current: FileStatus, target: FileStatus) -> FileStatus:
    """status 축 전이를 검증하고 새 상태를 반환한다. 불가능하면 InvalidTransition."""
    return _check(FILE_TRANSITIONS, current, target, "status")


def transition_optimization(
    current: OptimizationStatus, target: OptimizationStatus
) -> OptimizationStatus:
    """optimization_status 축 전이를 검증하고 새 상태를 반환한다."""
    return _check(OPTIMIZATION_TRANSITIONS, current, target, "optimization_status")
