from __future__ import annotations

import asyncio
import socket

import pytest

from tcpbench.config import Config
from tcpbench.errors import ConnectFailure
from tcpbench.node import ReceiverNode, SenderHandler, SenderNode, check_buffers, run_loopback
from tcpbench.stats import CompletionReason
from tcpbench.transfer import ChunkWriter, connect_to_peer, synthetic_payload

MIB = 1024 * 1024


def loopback_config(**overrides) -> Config:
    config = Config(host='127.0.0.1', port=0, unit_size=64 * 1024,
                    write_timeout=10.0, read_timeout=10.0, close_timeout=2.0)
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


@pytest.mark.parametrize('mode', ['sequential', 'callback'])
def test_loopback_raw_transfer(mode):
    payload = synthetic_payload(MIB)
    result, report = asyncio.run(run_loopback(loopback_config(write_mode=mode), payload))

    assert result.bytes_written == MIB
    assert result.units_sent == 16
    assert report.total_bytes == MIB
    assert report.completed_by is CompletionReason.THRESHOLD
    assert report.unit_count >= 1


def test_loopback_text_transfer():
    payload = synthetic_payload(200_000, b'abc')
    config = loopback_config(framing='text', unit_size=1000)
    result, report = asyncio.run(run_loopback(config, payload))

    assert result.bytes_written == 200_000
    assert report.total_bytes == 200_000
    assert report.unit_count == 200


def test_concurrent_connections_have_isolated_sessions():
    size = 256 * 1024

    async def run():
        receiver = ReceiverNode(loopback_config(expected_total_bytes=size))
        await receiver.start()
        try:
            host, port = receiver.address
            sender_config = loopback_config(unit_size=8192)
            sender_config.host, sender_config.port = host, port
            await asyncio.gather(*[
                SenderNode(sender_config).send(synthetic_payload(size))
                for _ in range(3)
            ])
            await receiver.wait_for_reports(3, timeout=10.0)
            return list(receiver.reports)
        finally:
            await receiver.stop()

    reports = asyncio.run(run())
    assert len(reports) == 3
    assert all(r.total_bytes == size for r in reports)


def test_partial_transfer_emits_no_report():
    async def run():
        receiver = ReceiverNode(loopback_config(expected_total_bytes=10_000))
        await receiver.start()
        try:
            host, port = receiver.address
            conn = await connect_to_peer(host, port, timeout=5.0)
            conn.write(b'x' * 500)
            await conn.drain()
            await conn.close(timeout=2.0)
            await asyncio.sleep(0.2)
            return list(receiver.reports), receiver.server.active_connections
        finally:
            await receiver.stop()

    reports, active = asyncio.run(run())
    assert reports == []
    assert active == 0


def test_eof_heuristic_over_loopback():
    async def run():
        receiver = ReceiverNode(loopback_config(expected_total_bytes=10_000,
                                                eof_heuristic=True))
        await receiver.start()
        try:
            host, port = receiver.address
            conn = await connect_to_peer(host, port, timeout=5.0)
            conn.write(b'x' * 300)
            await conn.drain()
            await conn.close(timeout=2.0)
            await receiver.wait_for_reports(1, timeout=5.0)
            return list(receiver.reports)
        finally:
            await receiver.stop()

    reports = asyncio.run(run())
    assert len(reports) == 1
    assert reports[0].completed_by is CompletionReason.EOF_HEURISTIC
    assert reports[0].total_bytes == 300


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


def test_connect_failure():
    config = loopback_config(connect_timeout=2.0)
    config.port = _unused_port()

    with pytest.raises(ConnectFailure):
        asyncio.run(SenderNode(config).send(b'data'))


def test_check_buffers_reports_socket_sizes():
    async def run():
        receiver = ReceiverNode(loopback_config())
        await receiver.start()
        try:
            host, port = receiver.address
            return await check_buffers(host, port, timeout=5.0)
        finally:
            await receiver.stop()

    info = asyncio.run(run())
    assert info.send_buffer > 0
    assert info.receive_buffer > 0


def test_text_payload_with_newlines_rejected_before_connecting():
    # Nothing listens on this port: a connect attempt would raise ConnectFailure
    config = loopback_config(framing='text', connect_timeout=2.0)
    config.port = _unused_port()

    with pytest.raises(ValueError, match="CR or LF"):
        asyncio.run(SenderNode(config).send(b'hello\nworld\n'))


class RecordingSenderHandler(SenderHandler):
    def __init__(self):
        self.connections = []

    def on_open(self, connection):
        self.connections.append(connection)


def test_sender_connection_aborted_when_send_raises(monkeypatch):
    async def broken_send(self, payload):
        raise RuntimeError("writer crashed")

    monkeypatch.setattr(ChunkWriter, 'send', broken_send)

    async def run():
        receiver = ReceiverNode(loopback_config())
        await receiver.start()
        try:
            config = loopback_config()
            config.host, config.port = receiver.address
            handler = RecordingSenderHandler()
            with pytest.raises(RuntimeError):
                await SenderNode(config, handler=handler).send(b'data')
            return handler.connections
        finally:
            await receiver.stop()

    connections = asyncio.run(run())
    assert len(connections) == 1
    assert connections[0].is_closed


def test_wait_for_reports_times_out():
    async def run():
        receiver = ReceiverNode(loopback_config())
        await receiver.start()
        try:
            await receiver.wait_for_reports(1, timeout=0.1)
        finally:
            await receiver.stop()

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(run())
