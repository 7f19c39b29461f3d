from __future__ import annotations

import asyncio
import itertools


class FakeConnection:
    """In-memory stand-in for TransferConnection on the sending side.

    `behaviours` maps a write index to 'ok', 'hang' or 'fail'.
    """

    def __init__(self, behaviours: dict | None = None):
        self.connection_id = 1
        self.behaviours = behaviours or {}
        self.written: list[bytes] = []
        self.gracefully_closed = False
        self.aborted = False
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def write(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionError("Connection closed")
        self.written.append(bytes(data))

    async def drain(self) -> None:
        behaviour = self.behaviours.get(len(self.written) - 1, "ok")
        if behaviour == "hang":
            await asyncio.sleep(3600)
        elif behaviour == "fail":
            raise ConnectionResetError("reset by peer")
        await asyncio.sleep(0)

    async def close(self, timeout=None) -> None:
        self._closed = True
        self.gracefully_closed = True

    def abort(self) -> None:
        self._closed = True
        self.aborted = True


def step_clock(start: int = 0, step: int = 1_000_000):
    """Clock that advances by `step` nanoseconds per call."""
    counter = itertools.count(start, step)
    return lambda: next(counter)
