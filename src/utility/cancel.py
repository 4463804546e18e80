"""협력적 취소 토큰."""

import threading
import time

from core.exceptions import JobCancelled


class CancelToken:
    """명시적 cancel() 또는 마감 시각 도달 중 먼저 오는 쪽으로 취소된다.

    스레드를 강제로 멈출 수는 없으므로, 오래 걸리는 작업은 단계 사이마다
    raise_if_cancelled()를 호출해야 한다.
    """

    def __init__(self, timeout: float | None = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self.reason: str | None = None

    def cancel(self, reason: str = "Cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def timed_out(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.timed_out:
            self.cancel("Timeout")
            return True
        return False

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise JobCancelled(f"작업이 취소되었습니다 ({self.reason})")

    def wait(self, seconds: float) -> bool:
        """최대 seconds 동안 대기하다 취소되면 즉시 True를 반환한다."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._event.wait(seconds)
        return self.cancelled
