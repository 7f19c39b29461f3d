"""
Transfer Receiver

Design Decision: Completion Detection
=====================================

Options Considered:
1. Byte-count threshold (size known out of band)
   - Exact, no protocol overhead
   - Needs both peers to agree on the total

2. Zero-length read as end-of-stream (EOF heuristic)
   - Works without knowing the size
   - Fragile: a transport that never reports an empty read never
     completes; an unrelated empty read completes early

3. Explicit sentinel record (TEXT framing)
   - Unambiguous, costs one record

Decision: Threshold first, sentinel for TEXT framing, EOF heuristic only
when explicitly enabled
- The threshold rule wins when several rules fire on the same segment
- The EOF heuristic needs bytes > 0, a started clock and more than one
  segment processed (the empty segment itself included)

Receive Flow (per inbound segment, arrival order):
1. A zero-length first segment of a fresh session is ignored
2. The first non-empty segment starts the session clock
3. Length and unit count are added to the session under its lock
4. The detector decides; on completion the stats collector finalizes
   and resets the session
"""

import logging
import time
from enum import Enum
from typing import Callable, List, Optional

from .protocol import (
    ConnectionHandler, Framing, LineDecoder, SENTINEL, TransferConnection,
    log_socket_info
)
from ..errors import StatsComputationSkipped, UnexpectedDisconnect
from ..session import SessionSnapshot, SessionState, TransferSession
from ..stats import CompletionReason, StatsReport, ThroughputStatsCollector

logger = logging.getLogger(__name__)

SENTINEL_BYTES = SENTINEL.encode('utf-8')


class DetectorState(Enum):
    WAITING_FOR_DATA = "waiting_for_data"
    COMPLETING = "completing"


class CompletionDetector:
    """
    Decides after every segment whether the logical transfer is finished.
    """

    def __init__(self, eof_heuristic: bool = False):
        self.eof_heuristic = eof_heuristic
        self.state = DetectorState.WAITING_FOR_DATA

    def evaluate(self, snap: SessionSnapshot, segment_length: int) -> Optional[CompletionReason]:
        """
        Apply the threshold and EOF rules to the counters after a segment.

        Returns the completion reason, or None to keep waiting.
        """
        by_threshold = snap.bytes_transferred >= snap.expected_total_bytes
        by_eof = (
            self.eof_heuristic
            and segment_length == 0
            and snap.bytes_transferred > 0
            and snap.started_at is not None
            and snap.units_processed > 1
        )

        if by_threshold:
            self.state = DetectorState.COMPLETING
            logger.info(f"Completed by threshold: {snap.bytes_transferred:,} >= "
                        f"{snap.expected_total_bytes:,} bytes")
            return CompletionReason.THRESHOLD

        if by_eof:
            self.state = DetectorState.COMPLETING
            logger.warning(f"Completed by EOF heuristic before threshold was reached: "
                           f"{snap.bytes_transferred:,} of {snap.expected_total_bytes:,} bytes")
            return CompletionReason.EOF_HEURISTIC

        return None

    def sentinel(self) -> CompletionReason:
        self.state = DetectorState.COMPLETING
        logger.info("Completed by sentinel record")
        return CompletionReason.SENTINEL

    def reset(self):
        self.state = DetectorState.WAITING_FOR_DATA


class TransferReceiver:
    """
    Accumulates inbound segments of one connection into transfer sessions.
    """

    def __init__(self, collector: ThroughputStatsCollector,
                 detector: Optional[CompletionDetector] = None,
                 framing: Framing = Framing.RAW,
                 progress_interval: int = 100,
                 max_record_size: Optional[int] = None,
                 clock: Callable[[], int] = time.perf_counter_ns):
        self.collector = collector
        self.detector = detector or CompletionDetector()
        self.framing = Framing(framing)
        self.progress_interval = progress_interval
        self.clock = clock
        self.decoder = LineDecoder(max_record_size) if self.framing is Framing.TEXT else None

    def on_segment(self, session: TransferSession, data: bytes) -> Optional[StatsReport]:
        """
        Process one inbound segment.

        Returns the report if a session completed on this segment. In TEXT
        framing one segment may complete more than one session; the last
        report is returned and every report reaches the collector's listeners.
        """
        if self.decoder is None:
            return self._on_unit(session, len(data))

        reports = self._on_text_segment(session, data)
        return reports[-1] if reports else None

    def reset(self):
        """Drop per-connection decoding state."""
        self.detector.reset()
        if self.decoder is not None:
            self.decoder.reset()

    def _on_text_segment(self, session: TransferSession, data: bytes) -> List[StatsReport]:
        reports = []
        if not data:
            if self.decoder.pending:
                logger.warning(f"Discarding {self.decoder.pending} bytes of an "
                               f"unterminated record at end of stream")
                self.decoder.reset()
            report = self._on_unit(session, 0)
            if report:
                reports.append(report)
            return reports

        for record in self.decoder.feed(data):
            if not record:
                # Blank lines are not units
                logger.debug("Empty record received, ignoring")
                continue
            if record == SENTINEL_BYTES:
                report = self._on_sentinel(session)
            else:
                report = self._on_unit(session, len(record))
            if report:
                reports.append(report)
        return reports

    def _on_sentinel(self, session: TransferSession) -> Optional[StatsReport]:
        if session.state is not SessionState.IN_PROGRESS:
            logger.debug("Sentinel received with no transfer in progress, ignoring")
            return None
        return self._finalize(session, self.detector.sentinel())

    def _on_unit(self, session: TransferSession, length: int) -> Optional[StatsReport]:
        if length == 0 and session.is_fresh:
            if session.completed_count:
                logger.debug(f"End of stream after {session.completed_count} "
                             f"completed transfer(s) ({session.session_id})")
            else:
                logger.warning("Initial empty segment received, ignoring for statistics")
            return None

        if session.is_fresh:
            logger.info(f"Reception started ({session.session_id})")

        snap = session.record(length, self.clock())

        if (length > 0 and self.progress_interval
                and snap.units_processed % self.progress_interval == 0
                and snap.bytes_transferred < snap.expected_total_bytes):
            logger.debug(f"  ... {length} bytes in segment #{snap.units_processed}, "
                         f"total {snap.bytes_transferred:,} bytes")

        reason = self.detector.evaluate(snap, length)
        if reason is None:
            return None
        return self._finalize(session, reason)

    def _finalize(self, session: TransferSession, reason: CompletionReason) -> Optional[StatsReport]:
        try:
            return self.collector.collect(session, reason)
        except StatsComputationSkipped:
            return None
        finally:
            self.detector.reset()


class ReceiverHandler(ConnectionHandler):
    """
    Connection hooks for the receiving side.

    Owns the session of its connection; nothing else mutates it.
    """

    def __init__(self, receiver: TransferReceiver, session: TransferSession,
                 socket_buffer_size: Optional[int] = None):
        self.receiver = receiver
        self.session = session
        self.socket_buffer_size = socket_buffer_size
        self.reports: List[StatsReport] = []

    def on_open(self, connection: TransferConnection):
        if self.socket_buffer_size:
            try:
                connection.apply_buffer_size(self.socket_buffer_size)
            except OSError as e:
                logger.warning(f"Could not set buffer size on connection "
                               f"{connection.connection_id}: {e}")
        log_socket_info(connection, label='[receiver] ')

    def on_data(self, connection: TransferConnection, data: bytes):
        report = self.receiver.on_segment(self.session, data)
        if report:
            self.reports.append(report)

        if not data and self.session.state is SessionState.IN_PROGRESS:
            raise UnexpectedDisconnect(self.session.bytes_transferred,
                                       self.session.expected_total_bytes)

    def on_error(self, connection: TransferConnection, error: BaseException):
        if isinstance(error, UnexpectedDisconnect):
            logger.warning(f"Connection {connection.connection_id}: {error}")
        else:
            logger.error(f"Connection {connection.connection_id} failed: {error}")
        self.release()

    def on_close(self, connection: TransferConnection):
        logger.info(f"Connection {connection.connection_id} closed "
                    f"({len(self.reports)} transfer(s) completed)")
        self.release()

    def release(self):
        """Discard any partial session state."""
        self.session.reset()
        self.receiver.reset()
