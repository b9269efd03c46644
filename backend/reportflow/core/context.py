import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Set

from sqlalchemy.orm import Session


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CancellationRegistry:
    """Per-schedule cancellation flags observed by in-flight runs.

    Flags are set from request handlers (threadpool) and read from the
    scheduler's event loop, so access is guarded by a lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled: Set[str] = set()

    def cancel(self, schedule_id: str) -> None:
        with self._lock:
            self._cancelled.add(schedule_id)

    def is_cancelled(self, schedule_id: str) -> bool:
        with self._lock:
            return schedule_id in self._cancelled

    def reset(self, schedule_id: str) -> None:
        with self._lock:
            self._cancelled.discard(schedule_id)


@dataclass
class SchedulerContext:
    session_factory: Callable[[], Session]
    clock: Callable[[], datetime] = utc_now
    cancellations: CancellationRegistry = field(default_factory=CancellationRegistry)
    cancel_check_interval_seconds: float = 1.0

    def now(self) -> datetime:
        return self.clock()
