"""Time sources.

Progress ETAs, lock heartbeats, result timestamps and call latencies all
read time through a Clock. Production code uses the system clock; tests
inject MockClock and move time forward explicitly.
"""

import time
from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    def monotonic(self) -> float:
        """Seconds from an arbitrary origin; only differences are meaningful."""
        ...

    def now(self) -> datetime:
        """Aware UTC wall-clock time, for anything persisted or compared across processes."""
        ...


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(UTC)


class MockClock:
    """Clock that only moves when told to.

    Example:
        clock = MockClock()
        ledger = JobLedger(db, clock=clock)
        job_id = ledger.start(...)
        clock.advance(60)
        ledger.update_progress(job_id, 10)
    """

    EPOCH = datetime(2026, 1, 1, tzinfo=UTC)

    def __init__(self, start: float = 0.0, wall_start: datetime | None = None) -> None:
        self._elapsed = start
        self._wall = wall_start or self.EPOCH

    def monotonic(self) -> float:
        return self._elapsed

    def now(self) -> datetime:
        return self._wall

    def advance(self, seconds: float) -> None:
        """Move both clocks forward together.

        Raises:
            ValueError: If seconds is negative
        """
        if seconds < 0:
            raise ValueError(f"MockClock cannot go backwards ({seconds}s)")
        self._elapsed += seconds
        self._wall += timedelta(seconds=seconds)


DEFAULT_CLOCK: Clock = SystemClock()
