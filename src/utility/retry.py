"""일시적 오류 재시도 유틸리티."""

import time
from collections.abc import Callable
from typing import TypeVar

from loguru import logger

from core.exceptions import StorageFailure

T = TypeVar("T")


def with_retry(
    fn: Callable[[], T],
    *,
    label: str,
    attempts: int = 3,
    backoff: float = 0.2,
    retry_on: tuple[type[Exception], ...] = (StorageFailure,),
) -> T:
    """fn을 실행하고 retry_on 예외면 지수 백오프로 최대 attempts번까지 다시 시도한다.

    실패한 '그 한 번의 호출'만 감싼다. 업로드 흐름 전체를 재시도하지 않는다.
    """
    attempts = max(attempts, 1)
    for attempt in range(1, attempts):
        try:
            return fn()
        except retry_on as e:
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(f"{label} failed (attempt {attempt}/{attempts}), retrying in {delay:.2f}s: {e}")
            time.sleep(delay)

    # 마지막 시도는 실패하면 그대로 올려 보낸다
    try:
        return fn()
    except retry_on as e:
        logger.error(f"{label} failed after {attempts} attempts: {e}")
        raise
