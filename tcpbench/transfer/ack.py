"""
Write Acknowledgment Tracking

Design Decision: One Result Abstraction
=======================================

Options Considered:
1. Block on each write with a timeout, separately from callbacks
   - Two code paths that drift apart

2. Callback-only API
   - Awkward for straight-line senders

3. A future-backed WriteAck that can be awaited OR given a continuation
   - One resolution path, two consumption styles

Decision: WriteAck over an asyncio.Future
- The tracker starts the flush, arms a timer and resolves the ack once
- Written / Failed(cause) / TimedOut, whichever happens first
- On timeout the flush is cancelled; anything it reports later is ignored
- No retries here; a caller that wants them layers them on top
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class OutcomeKind(Enum):
    WRITTEN = "written"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class WriteOutcome:
    """Result of one write unit."""
    kind: OutcomeKind
    cause: Optional[BaseException] = None

    @classmethod
    def written(cls) -> 'WriteOutcome':
        return cls(OutcomeKind.WRITTEN)

    @classmethod
    def failed(cls, cause: BaseException) -> 'WriteOutcome':
        return cls(OutcomeKind.FAILED, cause)

    @classmethod
    def timed_out(cls) -> 'WriteOutcome':
        return cls(OutcomeKind.TIMED_OUT)

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.WRITTEN


# Continuation type
OutcomeCallback = Callable[[WriteOutcome], None]


class WriteAck:
    """
    Pending outcome of one write unit.

    `await ack` yields the WriteOutcome; add_done_callback() runs a
    continuation with it instead.
    """

    def __init__(self, future: asyncio.Future, offset: int = 0, length: int = 0):
        self._future = future
        self.offset = offset
        self.length = length

    def done(self) -> bool:
        return self._future.done()

    def outcome(self) -> WriteOutcome:
        """The resolved outcome. Raises InvalidStateError while pending."""
        return self._future.result()

    def add_done_callback(self, callback: OutcomeCallback):
        self._future.add_done_callback(lambda fut: callback(fut.result()))

    def __await__(self):
        return self._future.__await__()


class WriteAcknowledgmentTracker:
    """
    Resolves write units against a per-unit timeout.
    """

    def __init__(self, timeout: float):
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self.timeout = timeout

        # Statistics
        self.written = 0
        self.failed = 0
        self.timed_out = 0

    def track(self, flush: Awaitable, offset: int = 0, length: int = 0) -> WriteAck:
        """
        Start tracking one outstanding write.

        Args:
            flush: awaitable that completes once the transport took the bytes
            offset: payload offset of the unit (for logging)
            length: unit length (for logging)

        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        result: asyncio.Future = loop.create_future()
        flush_task = asyncio.ensure_future(flush)

        timer = loop.call_later(self.timeout, self._expire, flush_task, result, offset)
        flush_task.add_done_callback(
            lambda task: self._resolve(task, result, timer, offset)
        )
        return WriteAck(result, offset=offset, length=length)

    def _expire(self, flush_task: asyncio.Future, result: asyncio.Future, offset: int):
        if result.done():
            return
        self.timed_out += 1
        logger.warning(f"Write at offset {offset} not acknowledged within {self.timeout}s")
        result.set_result(WriteOutcome.timed_out())
        flush_task.cancel()

    def _resolve(self, flush_task: asyncio.Future, result: asyncio.Future,
                 timer: asyncio.TimerHandle, offset: int):
        timer.cancel()

        if flush_task.cancelled():
            outcome = WriteOutcome.failed(asyncio.CancelledError())
        elif flush_task.exception() is not None:
            outcome = WriteOutcome.failed(flush_task.exception())
        else:
            outcome = WriteOutcome.written()

        if result.done():
            # Already timed out; the late outcome is abandoned
            logger.debug(f"Ignoring late {outcome.kind.value} for offset {offset}")
            return

        if outcome.ok:
            self.written += 1
        else:
            self.failed += 1
        result.set_result(outcome)
