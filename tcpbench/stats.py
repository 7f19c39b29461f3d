"""
Throughput Statistics

Turns the counters of a finished session into a StatsReport.

Units:
- MB here means MiB (1024 * 1024 bytes), matching the receiver logs
- Mb/s is simply MB/s * 8
- Durations are monotonic nanoseconds
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from .errors import StatsComputationSkipped
from .session import TransferSession

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
NANOS_PER_SECOND = 1_000_000_000


class CompletionReason(Enum):
    """Why a session was finalized."""
    THRESHOLD = "threshold"
    EOF_HEURISTIC = "eof_heuristic"
    SENTINEL = "sentinel"


@dataclass(frozen=True)
class StatsReport:
    """Throughput figures for one completed session."""
    total_bytes: int
    unit_count: int
    duration_nanos: int
    mb_per_sec: float
    mbit_per_sec: float
    avg_bytes_per_unit: float
    completed_by: CompletionReason = CompletionReason.THRESHOLD

    @property
    def duration_seconds(self) -> float:
        return self.duration_nanos / NANOS_PER_SECOND

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'total_bytes': self.total_bytes,
            'unit_count': self.unit_count,
            'duration_nanos': self.duration_nanos,
            'duration_seconds': self.duration_seconds,
            'mb_per_sec': self.mb_per_sec,
            'mbit_per_sec': self.mbit_per_sec,
            'avg_bytes_per_unit': self.avg_bytes_per_unit,
            'completed_by': self.completed_by.value,
        }


def compute_stats(total_bytes: int, unit_count: int,
                  started_at: Optional[int], completed_at: int,
                  completed_by: CompletionReason = CompletionReason.THRESHOLD) -> StatsReport:
    """
    Compute a StatsReport from raw counters.

    Raises:
        StatsComputationSkipped: if the session clock was never started
    """
    if started_at is None:
        raise StatsComputationSkipped("Session clock was never started")

    duration_nanos = max(0, completed_at - started_at)
    duration_seconds = duration_nanos / NANOS_PER_SECOND
    megabytes = total_bytes / BYTES_PER_MB
    mb_per_sec = megabytes / duration_seconds if duration_seconds > 0 else 0.0
    avg = total_bytes / unit_count if unit_count > 0 else 0.0

    return StatsReport(
        total_bytes=total_bytes,
        unit_count=unit_count,
        duration_nanos=duration_nanos,
        mb_per_sec=mb_per_sec,
        mbit_per_sec=mb_per_sec * 8,
        avg_bytes_per_unit=avg,
        completed_by=completed_by,
    )


# Report listener type
ReportCallback = Callable[[StatsReport], None]


class ThroughputStatsCollector:
    """
    Finalizes sessions: computes the report, emits it, clears the session.

    Listeners registered with on_report() receive every report emitted.
    """

    def __init__(self, clock: Callable[[], int] = time.perf_counter_ns,
                 label: str = 'receiver'):
        self.clock = clock
        self.label = label
        self._callbacks: List[ReportCallback] = []
        self.reports_emitted = 0

    def on_report(self, callback: ReportCallback):
        """Register a listener for emitted reports."""
        self._callbacks.append(callback)

    def collect(self, session: TransferSession, reason: CompletionReason,
                completed_at: Optional[int] = None) -> StatsReport:
        """
        Finalize `session` and return its report.

        The session is reset to IDLE whether or not the report could be built.
        """
        if completed_at is None:
            completed_at = self.clock()
        snap = session.mark_completed()

        try:
            report = compute_stats(
                total_bytes=snap.bytes_transferred,
                unit_count=snap.units_processed,
                started_at=snap.started_at,
                completed_at=completed_at,
                completed_by=reason,
            )
        except StatsComputationSkipped:
            logger.error(f"[{self.label}] Finalizing statistics but the session clock "
                         f"was never started")
            session.reset()
            raise

        self.emit(report)
        session.reset()
        return report

    def emit(self, report: StatsReport):
        """Log a report and hand it to every listener."""
        self.reports_emitted += 1
        logger.info(f"[{self.label}] Transfer complete ({report.completed_by.value}): "
                    f"{report.mb_per_sec:.2f} MB/s ({report.mbit_per_sec:.2f} Mbps)")
        logger.info(f"[{self.label}]   Total bytes: {report.total_bytes:,}, "
                    f"units: {report.unit_count}, "
                    f"avg bytes/unit: {report.avg_bytes_per_unit:.2f}, "
                    f"elapsed: {report.duration_nanos / 1_000_000:.1f} ms")

        for callback in self._callbacks:
            try:
                callback(report)
            except Exception as e:
                logger.error(f"Report callback error: {e}")
