"""
Per-session sliding window of recent readings.

A fixed-capacity window (instead of unbounded history) keeps both the cost
of sustained-elevation scans and the memory held per session constant, no
matter how long a session runs.
"""

import bisect
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from anxiease.config import HistoryWindowConfig
from anxiease.domain.models import Reading, utc_now

logger = structlog.get_logger(__name__)


def _timestamp(reading: Reading) -> datetime:
    return reading.timestamp


class HistoryWindowStore:
    """
    Bounded, timestamp-ordered readings keyed by session id.

    Invariant: ``len(window) <= capacity``. Inserting past capacity evicts the
    single oldest reading, so a window always holds the most recent
    ``capacity`` readings by timestamp.

    The store does no locking of its own. Callers serialize access per
    session (see ``DispatchCoordinator``); all methods are synchronous, so a
    single call is never interleaved with another coroutine.
    """

    def __init__(
        self,
        config: HistoryWindowConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or HistoryWindowConfig()
        self._clock = clock
        self._windows: dict[str, list[Reading]] = {}
        self.logger = logger.bind(component="history_window_store")

    @property
    def capacity(self) -> int:
        return self.config.capacity

    def append(self, session_id: str, reading: Reading) -> list[Reading]:
        """Insert ``reading`` in timestamp order, evicting the oldest when full."""
        window = self._windows.setdefault(session_id, [])

        if not window or reading.timestamp >= window[-1].timestamp:
            window.append(reading)
        else:
            # Late arrival: keep the window sorted
            bisect.insort_right(window, reading, key=_timestamp)
            self.logger.debug(
                "out_of_order_reading_inserted",
                session_id=session_id,
                timestamp=reading.timestamp.isoformat(),
            )

        if len(window) > self.capacity:
            evicted = window.pop(0)
            self.logger.debug(
                "reading_evicted", session_id=session_id, timestamp=evicted.timestamp.isoformat()
            )

        return list(window)

    def recent_within(
        self, session_id: str, duration_seconds: float, now: datetime | None = None
    ) -> list[Reading]:
        """Readings with ``timestamp >= now - duration_seconds``, oldest first."""
        window = self._windows.get(session_id)
        if not window:
            return []

        cutoff = (now or self._clock()) - timedelta(seconds=duration_seconds)
        start = bisect.bisect_left(window, cutoff, key=_timestamp)
        return window[start:]

    def window(self, session_id: str) -> list[Reading]:
        return list(self._windows.get(session_id, ()))

    def size(self, session_id: str) -> int:
        return len(self._windows.get(session_id, ()))

    def discard(self, session_id: str) -> None:
        """Drop a session's window; called when the owning session ends."""
        if self._windows.pop(session_id, None) is not None:
            self.logger.info("history_window_discarded", session_id=session_id)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._windows

    def __len__(self) -> int:
        return len(self._windows)
