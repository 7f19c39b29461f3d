"""
Transfer Session

Design Decision: Session Ownership
==================================

Options Considered:
1. Process-wide counters shared by every connection
   - Simplest wiring
   - Concurrent transfers corrupt each other's totals

2. One session per connection, created at accept time
   - Isolated totals per transfer
   - Must be passed explicitly into the handler

Decision: One TransferSession per connection
- The receiver handler owns its session and nobody else touches it
- Counters are mutated under a lock; the task servicing a connection
  may hop threads when the loop runs in an executor
- After completion the session is reset to IDLE so the same connection
  can carry another transfer
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SessionState(Enum):
    """Lifecycle of a logical transfer."""
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen=True)
class SessionSnapshot:
    """Consistent read of the session counters."""
    expected_total_bytes: int
    bytes_transferred: int
    units_processed: int
    started_at: Optional[int]
    state: SessionState


class TransferSession:
    """
    Counters for one logical end-to-end transfer.

    Invariants:
    - bytes_transferred never decreases while IN_PROGRESS
    - started_at is assigned once, by the first non-empty unit
    """

    def __init__(self, expected_total_bytes: int, session_id: str = ''):
        if expected_total_bytes < 0:
            raise ValueError("expected_total_bytes must be >= 0")
        self.expected_total_bytes = expected_total_bytes
        self.session_id = session_id
        self._lock = threading.Lock()
        self._bytes_transferred = 0
        self._units_processed = 0
        self._started_at: Optional[int] = None
        self._state = SessionState.IDLE
        # Number of completed transfers on this session object
        self.completed_count = 0

    @property
    def bytes_transferred(self) -> int:
        with self._lock:
            return self._bytes_transferred

    @property
    def units_processed(self) -> int:
        with self._lock:
            return self._units_processed

    @property
    def started_at(self) -> Optional[int]:
        with self._lock:
            return self._started_at

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def is_fresh(self) -> bool:
        """True when nothing has been recorded since the last reset."""
        with self._lock:
            return (self._started_at is None and self._bytes_transferred == 0
                    and self._units_processed == 0)

    def record(self, length: int, now: int) -> SessionSnapshot:
        """
        Account for one unit of `length` bytes observed at `now`.

        Starts the session clock on the first non-empty unit. Returns the
        counters as they stand right after this unit.
        """
        if length < 0:
            raise ValueError("unit length must be >= 0")
        with self._lock:
            if self._started_at is None and length > 0:
                self._started_at = now
                self._state = SessionState.IN_PROGRESS
            self._bytes_transferred += length
            self._units_processed += 1
            return self._snapshot_locked()

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def mark_completed(self) -> SessionSnapshot:
        with self._lock:
            self._state = SessionState.COMPLETED
            self.completed_count += 1
            return self._snapshot_locked()

    def reset(self):
        """Zero every counter and return to IDLE."""
        with self._lock:
            self._bytes_transferred = 0
            self._units_processed = 0
            self._started_at = None
            self._state = SessionState.IDLE

    def _snapshot_locked(self) -> SessionSnapshot:
        return SessionSnapshot(
            expected_total_bytes=self.expected_total_bytes,
            bytes_transferred=self._bytes_transferred,
            units_processed=self._units_processed,
            started_at=self._started_at,
            state=self._state,
        )

    def __repr__(self) -> str:
        snap = self.snapshot()
        return (f"TransferSession(id={self.session_id!r}, state={snap.state.value}, "
                f"bytes={snap.bytes_transferred}/{snap.expected_total_bytes}, "
                f"units={snap.units_processed})")
