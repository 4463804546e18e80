"""작업 소요 시간 로깅."""

import time
from contextlib import contextmanager
from dataclasses import dataclass

from loguru import logger


@dataclass
class Elapsed:
    seconds: float = 0.0


@contextmanager
def timer(label: str, level: str = "INFO"):
    """블록 실행 시간을 재서 '[label] 1.234s'로 남긴다. 예외로 빠져나가도 기록한다.

    사용법:
        with timer(f"optimize {file_id}") as t:
            ...
        t.seconds
    """
    elapsed = Elapsed()
    start = time.perf_counter()
    try:
        yield elapsed
    finally:
        elapsed.seconds = time.perf_counter() - start
        logger.log(level, f"[{label}] {elapsed.seconds:.3f}s")
