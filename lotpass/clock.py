import threading
from datetime import datetime, timezone


class Clock:
    """Wall clock that never steps backwards for a single instance."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: datetime | None = None

    def _read(self) -> datetime:
        return datetime.now(timezone.utc)

    def now(self) -> datetime:
        current = self._read()
        with self._lock:
            if self._last is not None and current < self._last:
                current = self._last
            self._last = current
        return current
