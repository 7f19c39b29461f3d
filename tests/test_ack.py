from __future__ import annotations

import asyncio

import pytest

from tcpbench.transfer.ack import OutcomeKind, WriteAcknowledgmentTracker


async def _ok():
    await asyncio.sleep(0)


async def _fail():
    await asyncio.sleep(0)
    raise ConnectionResetError("reset")


async def _hang():
    await asyncio.sleep(3600)


def test_written_before_timeout():
    async def run():
        tracker = WriteAcknowledgmentTracker(timeout=1.0)
        return await tracker.track(_ok()), tracker

    outcome, tracker = asyncio.run(run())
    assert outcome.kind is OutcomeKind.WRITTEN
    assert outcome.ok
    assert tracker.written == 1


def test_failure_carries_cause():
    async def run():
        return await WriteAcknowledgmentTracker(timeout=1.0).track(_fail())

    outcome = asyncio.run(run())
    assert outcome.kind is OutcomeKind.FAILED
    assert isinstance(outcome.cause, ConnectionResetError)


def test_timeout_abandons_pending_write():
    async def run():
        tracker = WriteAcknowledgmentTracker(timeout=0.05)
        flush = asyncio.ensure_future(_hang())
        outcome = await tracker.track(flush)
        await asyncio.sleep(0.01)
        return outcome, flush, tracker

    outcome, flush, tracker = asyncio.run(run())
    assert outcome.kind is OutcomeKind.TIMED_OUT
    assert flush.cancelled()
    assert tracker.timed_out == 1
    assert tracker.failed == 0


def test_late_outcome_is_ignored():
    async def run():
        tracker = WriteAcknowledgmentTracker(timeout=0.01)

        async def slow_fail():
            try:
                await asyncio.sleep(3600)
            finally:
                raise ConnectionResetError("too late")

        ack = tracker.track(slow_fail())
        outcome = await ack
        await asyncio.sleep(0.02)
        return outcome, ack.outcome()

    first, later = asyncio.run(run())
    assert first.kind is OutcomeKind.TIMED_OUT
    assert later.kind is OutcomeKind.TIMED_OUT


def test_done_callback_receives_outcome():
    async def run():
        seen = []
        done = asyncio.Event()
        ack = WriteAcknowledgmentTracker(timeout=1.0).track(_ok(), offset=128, length=64)

        def on_done(outcome):
            seen.append(outcome)
            done.set()

        ack.add_done_callback(on_done)
        await asyncio.wait_for(done.wait(), timeout=1.0)
        return seen, ack

    seen, ack = asyncio.run(run())
    assert [o.kind for o in seen] == [OutcomeKind.WRITTEN]
    assert ack.done()
    assert ack.offset == 128
    assert ack.length == 64


def test_timeout_must_be_positive():
    with pytest.raises(ValueError):
        WriteAcknowledgmentTracker(timeout=0)
