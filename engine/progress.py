"""
Run progress counters and the derived rate / percent estimates
"""

from dataclasses import dataclass
from typing import Callable, Optional
import asyncio
import math
import time

# Rate estimates need at least this much elapsed time
MIN_RATE_ELAPSED_SECONDS = 1.0


@dataclass(frozen=True)
class ProgressSnapshot:
    """Consistent view of the counters at one instant"""
    processed_rows: int
    successful_rows: int
    failed_row_count: int
    total_rows: Optional[int]
    elapsed_seconds: float
    running: bool

    @property
    def percent(self) -> Optional[int]:
        return percent_complete(self.processed_rows, self.total_rows)

    @property
    def rate(self) -> Optional[float]:
        return rate_estimate(self.processed_rows, self.elapsed_seconds, self.running)


def percent_complete(processed_rows: int, total_rows: Optional[int]) -> Optional[int]:
    """round(processed / total * 100), or None while the total is unknown"""
    if not total_rows:
        return None
    percent = math.floor(processed_rows / total_rows * 100 + 0.5)
    return min(percent, 100)


def rate_estimate(processed_rows: int, elapsed_seconds: float, running: bool) -> Optional[float]:
    """Rows per second, or None when unavailable"""
    if not running or processed_rows <= 0 or elapsed_seconds < MIN_RATE_ELAPSED_SECONDS:
        return None
    return processed_rows / elapsed_seconds


def format_rate(rate: Optional[float]) -> Optional[str]:
    """
    Display form of a rate estimate.

    Rates of at least one row per second are shown per second, slower
    rates per minute with one decimal.
    """
    if rate is None:
        return None
    if rate >= 1:
        return f"{math.floor(rate + 0.5)} rows/sec"
    return f"{rate * 60:.1f} rows/min"


class ProgressTracker:
    """
    Counters of one pipeline run.

    Every row outcome is recorded exactly once: processed_rows grows by one
    and exactly one of successful_rows / failed_row_count grows with it.
    Counters never decrease.
    """

    def __init__(
        self,
        total_rows: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self._clock = clock
        self._lock = asyncio.Lock()

        self.total_rows = total_rows
        self.processed_rows = 0
        self.successful_rows = 0
        self.failed_row_count = 0

        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None

    def start(self):
        self.started_at = self._clock()
        self.finished_at = None

    def finish(self):
        if self.finished_at is None:
            self.finished_at = self._clock()

    @property
    def running(self) -> bool:
        return self.started_at is not None and self.finished_at is None

    def set_total(self, total_rows: Optional[int]):
        """Record the row count reported by the source (never below processed)"""
        if total_rows is None:
            return
        self.total_rows = max(int(total_rows), self.processed_rows)

    async def record(self, success: bool):
        async with self._lock:
            self.processed_rows += 1
            if success:
                self.successful_rows += 1
            else:
                self.failed_row_count += 1

            # The source may have grown since it reported its count
            if self.total_rows is not None and self.processed_rows > self.total_rows:
                self.total_rows = self.processed_rows

    def elapsed_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else self._clock()
        return max(end - self.started_at, 0.0)

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            processed_rows=self.processed_rows,
            successful_rows=self.successful_rows,
            failed_row_count=self.failed_row_count,
            total_rows=self.total_rows,
            elapsed_seconds=self.elapsed_seconds(),
            running=self.running,
        )

    def rate(self) -> Optional[float]:
        return self.snapshot().rate

    def percent(self) -> Optional[int]:
        return percent_complete(self.processed_rows, self.total_rows)
