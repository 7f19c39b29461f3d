from __future__ import annotations

import logging

import pytest

from fakes import step_clock
from tcpbench.errors import UnexpectedDisconnect
from tcpbench.session import SessionState, TransferSession
from tcpbench.stats import CompletionReason, ThroughputStatsCollector
from tcpbench.transfer.protocol import Framing, SENTINEL_RECORD
from tcpbench.transfer.receiver import (
    CompletionDetector, DetectorState, ReceiverHandler, TransferReceiver
)


def make_receiver(eof_heuristic=False, framing=Framing.RAW):
    clock = step_clock(start=1_000, step=1_000_000)
    collector = ThroughputStatsCollector(clock=clock)
    reports = []
    collector.on_report(reports.append)
    receiver = TransferReceiver(
        collector=collector,
        detector=CompletionDetector(eof_heuristic=eof_heuristic),
        framing=framing,
        clock=clock,
    )
    return receiver, reports


def feed(receiver, session, lengths):
    """Feed segments of the given lengths; return indexes that completed."""
    fired = []
    for i, length in enumerate(lengths):
        if receiver.on_segment(session, b"z" * length):
            fired.append(i)
    return fired


@pytest.mark.parametrize(
    "lengths",
    [[500], [100, 200, 200], [1, 1, 498], [65536, 65536, 1000, 7], [250, 0, 250]],
)
def test_threshold_fires_once_where_sum_reaches_total(lengths):
    expected = sum(lengths)
    receiver, reports = make_receiver()
    session = TransferSession(expected)

    fired = feed(receiver, session, lengths)

    assert fired == [len(lengths) - 1]
    assert len(reports) == 1
    assert reports[0].total_bytes == expected
    assert reports[0].completed_by is CompletionReason.THRESHOLD


def test_threshold_exceeded_within_segment():
    receiver, reports = make_receiver()
    session = TransferSession(150)
    assert feed(receiver, session, [100, 100]) == [1]
    assert reports[0].total_bytes == 200


def test_eof_heuristic_completes_before_threshold():
    receiver, reports = make_receiver(eof_heuristic=True)
    session = TransferSession(500)

    fired = feed(receiver, session, [100, 0])

    assert fired == [1]
    assert reports[0].completed_by is CompletionReason.EOF_HEURISTIC
    assert reports[0].total_bytes == 100
    assert reports[0].unit_count == 2
    assert session.state is SessionState.IDLE


def test_eof_heuristic_disabled_keeps_waiting():
    receiver, reports = make_receiver(eof_heuristic=False)
    session = TransferSession(500)

    assert feed(receiver, session, [100, 0]) == []
    assert reports == []
    assert session.state is SessionState.IN_PROGRESS


def test_even_division_completes_by_threshold_on_second_segment():
    receiver, reports = make_receiver(eof_heuristic=True)
    session = TransferSession(131072)

    assert feed(receiver, session, [65536, 65536]) == [1]
    assert reports[0].completed_by is CompletionReason.THRESHOLD
    assert reports[0].unit_count == 2


def test_initial_empty_segment_is_ignored():
    receiver, reports = make_receiver(eof_heuristic=True)
    session = TransferSession(100)

    assert receiver.on_segment(session, b"") is None
    assert session.is_fresh
    assert session.started_at is None
    assert session.units_processed == 0

    feed(receiver, session, [100])
    assert reports[0].unit_count == 1


def test_session_resets_and_is_reusable():
    receiver, reports = make_receiver()
    session = TransferSession(1)

    feed(receiver, session, [1])
    assert session.state is SessionState.IDLE
    assert session.started_at is None
    assert session.bytes_transferred == 0

    receiver.on_segment(session, b"q")
    assert len(reports) == 2
    assert reports[1].total_bytes == 1
    assert reports[1].unit_count == 1
    assert session.completed_count == 2


def test_clock_restarts_for_each_session():
    receiver, reports = make_receiver()
    session = TransferSession(10)

    receiver.on_segment(session, b"a" * 5)
    first_start = session.started_at
    receiver.on_segment(session, b"a" * 5)
    receiver.on_segment(session, b"a" * 5)
    second_start = session.started_at

    assert first_start is not None
    assert second_start is not None
    assert second_start > first_start
    assert reports[0].total_bytes == 10


def test_detector_returns_to_waiting_after_completion():
    receiver, _ = make_receiver()
    session = TransferSession(3)
    feed(receiver, session, [3])
    assert receiver.detector.state is DetectorState.WAITING_FOR_DATA


def test_text_records_split_across_segments():
    receiver, reports = make_receiver(framing=Framing.TEXT)
    session = TransferSession(1000)

    receiver.on_segment(session, b"abc\r")
    assert session.is_fresh
    receiver.on_segment(session, b"\nde\r\nfg")
    assert session.bytes_transferred == 5
    assert session.units_processed == 2

    report = receiver.on_segment(session, b"h\r\n" + SENTINEL_RECORD)
    assert report is not None
    assert report.completed_by is CompletionReason.SENTINEL
    assert report.total_bytes == 8
    assert report.unit_count == 3
    assert len(reports) == 1


def test_sentinel_after_threshold_is_ignored():
    receiver, reports = make_receiver(framing=Framing.TEXT)
    session = TransferSession(4)

    receiver.on_segment(session, b"abcd\r\n" + SENTINEL_RECORD)

    assert len(reports) == 1
    assert reports[0].completed_by is CompletionReason.THRESHOLD
    assert session.is_fresh


def test_handler_reports_unexpected_disconnect():
    receiver, reports = make_receiver()
    session = TransferSession(1000)
    handler = ReceiverHandler(receiver, session)

    handler.on_data(None, b"x" * 10)
    with pytest.raises(UnexpectedDisconnect) as exc_info:
        handler.on_data(None, b"")

    assert exc_info.value.bytes_transferred == 10
    assert reports == []


def test_handler_release_discards_partial_session():
    receiver, reports = make_receiver()
    session = TransferSession(1000)
    handler = ReceiverHandler(receiver, session)

    handler.on_data(None, b"x" * 10)
    handler.release()

    assert session.is_fresh
    assert session.state is SessionState.IDLE
    assert reports == []


def test_handler_clean_eof_after_completion():
    receiver, reports = make_receiver()
    session = TransferSession(10)
    handler = ReceiverHandler(receiver, session)

    handler.on_data(None, b"x" * 10)
    handler.on_data(None, b"")

    assert len(handler.reports) == 1
    assert len(reports) == 1


def test_blank_text_record_does_not_complete_by_eof():
    receiver, reports = make_receiver(eof_heuristic=True, framing=Framing.TEXT)
    session = TransferSession(1000)

    assert receiver.on_segment(session, b"abc\r\n\r\ndef\r\n") is None

    assert reports == []
    assert session.state is SessionState.IN_PROGRESS
    assert session.bytes_transferred == 6
    assert session.units_processed == 2


def test_text_eof_still_completes_by_heuristic():
    receiver, reports = make_receiver(eof_heuristic=True, framing=Framing.TEXT)
    session = TransferSession(1000)

    receiver.on_segment(session, b"abc\r\n\r\n")
    report = receiver.on_segment(session, b"")

    assert report is not None
    assert report.completed_by is CompletionReason.EOF_HEURISTIC
    assert report.total_bytes == 3


def test_clean_close_after_completion_is_not_a_warning(caplog):
    receiver, reports = make_receiver()
    session = TransferSession(10)
    handler = ReceiverHandler(receiver, session)

    with caplog.at_level(logging.DEBUG, logger="tcpbench.transfer.receiver"):
        handler.on_data(None, b"x" * 10)
        handler.on_data(None, b"")

    assert len(reports) == 1
    assert not [r for r in caplog.records if r.levelno >= logging.WARNING]


def test_empty_first_segment_is_a_warning(caplog):
    receiver, _ = make_receiver()
    session = TransferSession(10)

    with caplog.at_level(logging.WARNING, logger="tcpbench.transfer.receiver"):
        receiver.on_segment(session, b"")

    assert any("Initial empty segment" in r.getMessage() for r in caplog.records)
