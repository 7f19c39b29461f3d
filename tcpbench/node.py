"""
Harness Nodes - Main Controllers

Orchestrate the transfer components into the two runnable harnesses:
- ReceiverNode: accepts connections, one session per connection
- SenderNode: connects and pushes a payload through a ChunkWriter
- run_loopback: both ends in one process, for quick benchmarks
"""

import asyncio
import logging
from typing import Callable, List, Optional, Tuple

from .config import Config
from .errors import TransferError
from .session import TransferSession
from .stats import StatsReport, ThroughputStatsCollector
from .transfer import (
    ChunkWriter, CompletionDetector, ConnectionHandler, Framing, ReceiverHandler,
    SendResult, TransferConnection, TransferReceiver, TransferServer, WriteMode,
    connect_to_peer
)
from .transfer.protocol import SocketInfo, check_text_payload, log_socket_info

logger = logging.getLogger(__name__)


class ReceiverNode:
    """
    The receiving harness.

    Every accepted connection gets its own TransferSession and
    TransferReceiver; reports from all connections go through one
    collector and are kept in `reports`.
    """

    def __init__(self, config: Optional[Config] = None,
                 on_report: Optional[Callable[[StatsReport], None]] = None):
        self.config = config or Config()
        self.collector = ThroughputStatsCollector(label='receiver')
        self.reports: List[StatsReport] = []
        self._report_event: Optional[asyncio.Event] = None
        self.collector.on_report(self._on_report)
        if on_report:
            self.collector.on_report(on_report)

        self.server = TransferServer(
            handler_factory=self._create_handler,
            host=self.config.host,
            port=self.config.port,
            concurrency_limit=self.config.concurrency_limit,
            read_size=self.config.read_size,
            read_timeout=self.config.read_timeout,
        )
        self.connections_accepted = 0

    @property
    def address(self) -> Tuple[str, int]:
        return self.server.address

    def _create_handler(self, connection: TransferConnection) -> ReceiverHandler:
        self.connections_accepted += 1
        session = TransferSession(
            self.config.expected_total_bytes,
            session_id=f"conn-{connection.connection_id}",
        )
        receiver = TransferReceiver(
            collector=self.collector,
            detector=CompletionDetector(eof_heuristic=self.config.eof_heuristic),
            framing=Framing(self.config.framing),
            progress_interval=self.config.progress_interval,
            max_record_size=self.config.read_size * 2,
        )
        return ReceiverHandler(receiver, session,
                               socket_buffer_size=self.config.socket_buffer_size)

    def _on_report(self, report: StatsReport):
        self.reports.append(report)
        if self._report_event is not None:
            self._report_event.set()

    async def start(self):
        self._report_event = asyncio.Event()
        logger.info(f"Starting receiver, expecting {self.config.expected_total_bytes:,} "
                    f"bytes per transfer ({self.config.framing} framing)")
        await self.server.start()

    async def stop(self):
        await self.server.stop()
        logger.info(f"Receiver stopped. {len(self.reports)} transfer(s) completed over "
                    f"{self.connections_accepted} connection(s)")

    async def wait_for_reports(self, count: int = 1, timeout: Optional[float] = None):
        """Wait until at least `count` reports have been emitted."""
        if self._report_event is None:
            self._report_event = asyncio.Event()
        event = self._report_event

        async def wait():
            while len(self.reports) < count:
                event.clear()
                await event.wait()
        await asyncio.wait_for(wait(), timeout=timeout)

    def get_stats(self) -> dict:
        """Get receiver statistics."""
        return {
            'connections_accepted': self.connections_accepted,
            'active_connections': self.server.active_connections,
            'transfers_completed': len(self.reports),
            'port': self.address[1],
        }


class SenderHandler(ConnectionHandler):
    """Connection hooks for the sending side."""

    def on_open(self, connection: TransferConnection):
        logger.info(f"[sender] Session opened (connection {connection.connection_id})")
        log_socket_info(connection, label='[sender] ')

    def on_data(self, connection: TransferConnection, data: bytes):
        if data:
            logger.info(f"[sender] Received {len(data)} bytes from the receiver")

    def on_error(self, connection: TransferConnection, error: BaseException):
        logger.error(f"[sender] Error on connection {connection.connection_id}: {error}")
        connection.abort()

    def on_close(self, connection: TransferConnection):
        logger.info(f"[sender] Session closed (connection {connection.connection_id})")


class SenderNode:
    """
    The sending harness: connect, push the payload, close.
    """

    def __init__(self, config: Optional[Config] = None,
                 handler: Optional[ConnectionHandler] = None):
        self.config = config or Config()
        self.handler = handler or SenderHandler()

    async def send(self, payload: bytes) -> SendResult:
        """
        Connect to the configured receiver and send `payload`.

        Raises:
            ConnectFailure, WriteTimeout, WriteFailure
            ValueError: TEXT framing with CR/LF in the payload
        """
        if self.config.framing == Framing.TEXT.value:
            check_text_payload(payload)

        logger.info(f"Connecting to {self.config.host}:{self.config.port}...")
        connection = await connect_to_peer(
            self.config.host, self.config.port,
            timeout=self.config.connect_timeout
        )
        watcher = None
        try:
            if self.config.socket_buffer_size:
                try:
                    connection.apply_buffer_size(self.config.socket_buffer_size)
                except OSError as e:
                    logger.warning(f"Could not set buffer size: {e}")

            writer = ChunkWriter(
                connection,
                unit_size=self.config.unit_size,
                write_timeout=self.config.write_timeout,
                mode=WriteMode(self.config.write_mode),
                framing=Framing(self.config.framing),
                close_timeout=self.config.close_timeout,
                progress_interval=self.config.progress_interval,
            )
            self.handler.on_open(connection)
            watcher = asyncio.ensure_future(self._watch(connection))
            return await writer.send(payload)
        except TransferError as e:
            self.handler.on_error(connection, e)
            raise
        finally:
            # A successful send has closed gracefully; anything else aborts
            if not connection.is_closed:
                connection.abort()
            if watcher is not None:
                watcher.cancel()
                try:
                    await watcher
                except asyncio.CancelledError:
                    pass
            self.handler.on_close(connection)

    async def _watch(self, connection: TransferConnection):
        """Deliver anything the peer sends; surface transport errors."""
        try:
            while not connection.is_closed:
                data = await connection.read()
                self.handler.on_data(connection, data)
                if not data:
                    break
        except (ConnectionError, OSError) as e:
            if not connection.is_closed:
                self.handler.on_error(connection, e)


async def run_loopback(config: Config, payload: bytes,
                       report_timeout: float = 30.0) -> Tuple[SendResult, StatsReport]:
    """
    Run a receiver on an ephemeral port and send `payload` to it.

    The receiver expects exactly len(payload) bytes.

    Returns:
        (sender result, receiver report)
    """
    if not payload:
        raise ValueError("Loopback run needs a non-empty payload")

    receiver_config = Config(**config.to_dict())
    receiver_config.host = '127.0.0.1'
    receiver_config.port = 0
    receiver_config.expected_total_bytes = len(payload)

    receiver = ReceiverNode(receiver_config)
    await receiver.start()
    try:
        sender_config = Config(**config.to_dict())
        sender_config.host, sender_config.port = receiver.address

        result = await SenderNode(sender_config).send(payload)
        await receiver.wait_for_reports(1, timeout=report_timeout)
        return result, receiver.reports[0]
    finally:
        await receiver.stop()


async def check_buffers(host: str, port: int, timeout: float = 10.0) -> SocketInfo:
    """Connect, read the default socket buffer sizes, disconnect."""
    connection = await connect_to_peer(host, port, timeout=timeout)
    try:
        return connection.socket_info()
    finally:
        connection.abort()
