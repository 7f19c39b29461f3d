"""
Chunk Writer

Design Decision: Write Strategy
===============================

Options Considered:
1. Single write of the whole payload
   - One acknowledgment for everything; a stall is only noticed at the end

2. Sequential units, await each acknowledgment
   - Straight-line code, exactly one write in flight

3. Callback-chained units
   - Next write is issued from the previous unit's completion callback
   - Still one write in flight, no await between units

4. Unbounded pipelining
   - Nothing to time out per unit; not supported

Decision: Support 2 and 3 as alternative strategies
- Both consume the same WriteAck from WriteAcknowledgmentTracker
- A session uses one strategy from start to finish
- The first TimedOut / Failed outcome aborts: no more units are written,
  the connection is aborted, the error is raised
- After the final unit: sender statistics, then graceful close
  (flush, close, wait bounded by close_timeout)

"Acknowledged" means the transport drained the unit below its high-water
mark, i.e. the bytes were handed to the socket.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, Optional, Tuple

from .ack import OutcomeKind, WriteAck, WriteAcknowledgmentTracker, WriteOutcome
from .chunker import PayloadChunker, PayloadLike, TransferUnit, UNIT_SIZE
from .protocol import (
    Framing, SENTINEL_RECORD, TransferConnection, check_text_payload, encode_record
)
from ..errors import TransferError, WriteFailure, WriteTimeout
from ..session import TransferSession
from ..stats import CompletionReason, StatsReport, ThroughputStatsCollector

logger = logging.getLogger(__name__)

DEFAULT_WRITE_TIMEOUT = 35.0
DEFAULT_CLOSE_TIMEOUT = 5.0


class WriteMode(Enum):
    """How the writer waits for each unit."""
    SEQUENTIAL = "sequential"
    CALLBACK = "callback"


@dataclass(frozen=True)
class SendResult:
    """Outcome of a completed send."""
    units_sent: int
    bytes_written: int
    report: Optional[StatsReport] = None


# (unit or None for the sentinel record, bytes put on the wire)
Frame = Tuple[Optional[TransferUnit], bytes]


class ChunkWriter:
    """
    Pushes a payload to a connection one bounded unit at a time.
    """

    def __init__(self, connection: TransferConnection,
                 unit_size: int = UNIT_SIZE,
                 write_timeout: float = DEFAULT_WRITE_TIMEOUT,
                 mode: WriteMode = WriteMode.SEQUENTIAL,
                 framing: Framing = Framing.RAW,
                 close_timeout: Optional[float] = DEFAULT_CLOSE_TIMEOUT,
                 progress_interval: int = 100,
                 clock: Callable[[], int] = time.perf_counter_ns):
        self.connection = connection
        self.chunker = PayloadChunker(unit_size)
        self.tracker = WriteAcknowledgmentTracker(write_timeout)
        self.mode = WriteMode(mode)
        self.framing = Framing(framing)
        self.close_timeout = close_timeout
        self.progress_interval = progress_interval
        self.clock = clock
        self.collector = ThroughputStatsCollector(clock=clock, label='sender')

    @property
    def unit_size(self) -> int:
        return self.chunker.unit_size

    @property
    def write_timeout(self) -> float:
        return self.tracker.timeout

    async def send(self, payload: PayloadLike) -> SendResult:
        """
        Send the whole payload, then close the connection gracefully.

        Raises:
            WriteTimeout: a unit was not acknowledged in time
            WriteFailure: the transport failed a unit
            ValueError: TEXT framing with CR/LF in the payload
        """
        size = len(payload)
        if self.framing is Framing.TEXT:
            check_text_payload(payload)

        session = TransferSession(size, session_id=f"send-{self.connection.connection_id}")
        frames = self._frames(payload)

        logger.info(f"Sending {size:,} bytes in {self.chunker.get_unit_count(size)} units "
                    f"of up to {self.unit_size} bytes ({self.mode.value}, {self.framing.value})")

        try:
            if self.mode is WriteMode.SEQUENTIAL:
                await self._send_sequential(frames, session)
            else:
                await self._send_chained(frames, session)
        except TransferError as e:
            logger.error(f"Send aborted after {session.bytes_transferred:,} bytes: {e}")
            session.reset()
            self.connection.abort()
            raise

        snap = session.snapshot()
        report = None
        if snap.started_at is not None:
            report = self.collector.collect(session, CompletionReason.THRESHOLD)
        else:
            logger.info("Empty payload, nothing to send")

        await self.connection.close(timeout=self.close_timeout)
        return SendResult(
            units_sent=snap.units_processed,
            bytes_written=snap.bytes_transferred,
            report=report,
        )

    def _frames(self, payload: PayloadLike) -> Iterator[Frame]:
        for unit in self.chunker.iter_units(payload):
            if self.framing is Framing.TEXT:
                yield unit, encode_record(unit.payload)
            else:
                yield unit, unit.payload
        if self.framing is Framing.TEXT:
            yield None, SENTINEL_RECORD

    def _start_write(self, frame: Frame) -> WriteAck:
        unit, wire = frame
        offset = unit.offset if unit else -1
        try:
            self.connection.write(wire)
        except (ConnectionError, OSError) as e:
            future = asyncio.get_running_loop().create_future()
            future.set_result(WriteOutcome.failed(e))
            return WriteAck(future, offset=offset, length=len(wire))
        return self.tracker.track(self.connection.drain(), offset=offset, length=len(wire))

    def _account(self, session: TransferSession, frame: Frame, written_at: int):
        unit = frame[0]
        if unit is None:
            return
        snap = session.record(unit.length, written_at)
        if self.progress_interval and snap.units_processed % self.progress_interval == 0:
            logger.debug(f"  ... {snap.bytes_transferred:,}/{snap.expected_total_bytes:,} "
                         f"bytes written ({snap.units_processed} units)")

    def _error_for(self, ack: WriteAck, outcome: WriteOutcome) -> TransferError:
        if outcome.kind is OutcomeKind.TIMED_OUT:
            return WriteTimeout(ack.offset, self.write_timeout)
        return WriteFailure(ack.offset, outcome.cause)

    async def _send_sequential(self, frames: Iterator[Frame], session: TransferSession):
        for frame in frames:
            written_at = self.clock()
            ack = self._start_write(frame)
            outcome = await ack
            if not outcome.ok:
                raise self._error_for(ack, outcome)
            self._account(session, frame, written_at)

    async def _send_chained(self, frames: Iterator[Frame], session: TransferSession):
        loop = asyncio.get_running_loop()
        finished: asyncio.Future = loop.create_future()

        def send_next():
            frame = next(frames, None)
            if frame is None:
                finished.set_result(None)
                return
            written_at = self.clock()
            ack = self._start_write(frame)
            ack.add_done_callback(
                lambda outcome: on_outcome(frame, ack, outcome, written_at)
            )

        def on_outcome(frame: Frame, ack: WriteAck, outcome: WriteOutcome, written_at: int):
            if finished.done():
                return
            if not outcome.ok:
                finished.set_exception(self._error_for(ack, outcome))
                return
            self._account(session, frame, written_at)
            send_next()

        send_next()
        await finished
