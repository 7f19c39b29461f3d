"""
Transfer Protocol

Design Decision: Wire Framing
=============================

Options Considered:
1. Raw byte stream, size agreed out of band
   - Zero overhead, measures the pipe and nothing else
   - Receiver must decide completion from the byte count alone

2. CRLF-terminated text records with a sentinel record
   - Explicit end-of-transfer signal
   - Payload must not contain CR/LF, 2 bytes overhead per record

3. Length-prefixed messages
   - Robust, but the peer harnesses do not speak it

Decision: Raw as primary, CRLF records as alternative
- RAW: the receiver counts bytes until the expected total is reached
- TEXT: each unit is sent as `<payload>\\r\\n`; the sender finishes with
  `END_OF_TRANSMISSION\\r\\n`

Record Format (TEXT):
```
+----------------------+------+
| Payload (no CR / LF) | CRLF |
+----------------------+------+
```

Connection Handling
===================
Every connection is driven through one ConnectionHandler with four hooks:
on_open, on_data, on_error and on_close. The server creates a handler per
accepted connection, so per-connection state lives in the handler.
"""

import asyncio
import itertools
import logging
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from ..errors import ConnectFailure, ReadTimeout

logger = logging.getLogger(__name__)

CRLF = b'\r\n'
SENTINEL = 'END_OF_TRANSMISSION'
SENTINEL_RECORD = SENTINEL.encode('utf-8') + CRLF

# Largest single read handed to a handler
DEFAULT_READ_SIZE = 128 * 1024


class Framing(Enum):
    """Wire framing."""
    RAW = "raw"
    TEXT = "text"


def encode_record(data: bytes) -> bytes:
    """Frame one payload as a CRLF-terminated record."""
    if b'\r' in data or b'\n' in data:
        raise ValueError("Text records must not contain CR or LF")
    return data + CRLF


def check_text_payload(payload) -> None:
    """Raise ValueError if `payload` cannot be sent as CRLF text records."""
    raw = memoryview(payload).tobytes()
    if b'\r' in raw or b'\n' in raw:
        raise ValueError("TEXT framing requires a payload without CR or LF")


class LineDecoder:
    """
    Splits an arbitrary sequence of inbound segments into CRLF records.

    A record split across segments is held back until its terminator
    arrives.
    """

    def __init__(self, max_record_size: Optional[int] = None):
        self.max_record_size = max_record_size
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Bytes buffered waiting for a terminator."""
        return len(self._buffer)

    def feed(self, data: bytes) -> List[bytes]:
        """
        Add a segment and return the records it completes (without CRLF).

        Raises:
            ValueError: if an unterminated record grows past max_record_size
        """
        self._buffer.extend(data)
        records = []
        while True:
            idx = self._buffer.find(CRLF)
            if idx < 0:
                break
            records.append(bytes(self._buffer[:idx]))
            del self._buffer[:idx + len(CRLF)]

        # Sanity check
        if self.max_record_size is not None and len(self._buffer) > self.max_record_size:
            raise ValueError(f"Record too large: {len(self._buffer)} bytes without CRLF")
        return records

    def reset(self):
        self._buffer.clear()


@dataclass(frozen=True)
class SocketInfo:
    """Kernel buffer sizes of a connected socket."""
    send_buffer: int
    receive_buffer: int


def read_socket_info(sock: socket.socket) -> SocketInfo:
    return SocketInfo(
        send_buffer=sock.getsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF),
        receive_buffer=sock.getsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF),
    )


_connection_ids = itertools.count(1)


class TransferConnection:
    """
    One TCP connection wrapped around an asyncio stream pair.
    """

    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter,
                 connection_id: Optional[int] = None):
        self.reader = reader
        self.writer = writer
        self.connection_id = connection_id if connection_id is not None else next(_connection_ids)
        self._closed = False

    @property
    def remote_address(self) -> Tuple[str, int]:
        """Get remote peer address."""
        return self.writer.get_extra_info('peername')

    @property
    def is_closed(self) -> bool:
        return self._closed

    def socket_info(self) -> SocketInfo:
        """
        Read SO_SNDBUF / SO_RCVBUF of the underlying socket.

        Raises:
            OSError: if the socket cannot be queried
        """
        sock = self.writer.get_extra_info('socket')
        if sock is None:
            raise OSError("Socket not available")
        return read_socket_info(sock)

    def apply_buffer_size(self, size: int):
        """Request SO_SNDBUF and SO_RCVBUF of `size` bytes."""
        sock = self.writer.get_extra_info('socket')
        if sock is None:
            raise OSError("Socket not available")
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, size)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, size)

    def write(self, data: bytes):
        """Queue bytes on the transport."""
        if self._closed:
            raise ConnectionError("Connection closed")
        self.writer.write(data)

    async def drain(self):
        """Wait until the transport buffer is below its high-water mark."""
        await self.writer.drain()

    async def read(self, size: int = DEFAULT_READ_SIZE) -> bytes:
        """Read up to `size` bytes; b'' means the peer closed."""
        return await self.reader.read(size)

    async def close(self, timeout: Optional[float] = None):
        """Graceful close: flush what is buffered, then close."""
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await asyncio.wait_for(self.writer.wait_closed(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Connection {self.connection_id}: close did not finish "
                           f"within {timeout}s, aborting")
            self.writer.transport.abort()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Connection {self.connection_id}: error while closing: {e}")

    def abort(self):
        """Immediate close; buffered data is discarded."""
        if self._closed:
            return
        self._closed = True
        self.writer.transport.abort()


class ConnectionHandler:
    """
    Event hooks for one connection.

    Subclasses override what they need; the defaults only log.
    """

    def on_open(self, connection: TransferConnection):
        logger.info(f"Connection {connection.connection_id} opened "
                    f"(remote {connection.remote_address})")

    def on_data(self, connection: TransferConnection, data: bytes):
        pass

    def on_error(self, connection: TransferConnection, error: BaseException):
        logger.error(f"Connection {connection.connection_id} error: {error}")

    def on_close(self, connection: TransferConnection):
        logger.info(f"Connection {connection.connection_id} closed")


def log_socket_info(connection: TransferConnection, label: str = ''):
    """Log buffer sizes of a connection; failures are only warnings."""
    try:
        info = connection.socket_info()
    except (OSError, NotImplementedError) as e:
        logger.warning(f"Could not get buffer sizes for connection "
                       f"{connection.connection_id}: {e}")
        return None

    host_port = connection.remote_address
    logger.info(f"{label}TCP connection {connection.connection_id} opened, remote {host_port}")
    logger.info(f"{label}  Send buffer (SO_SNDBUF):    {info.send_buffer} bytes "
                f"({info.send_buffer // 1024} KB)")
    logger.info(f"{label}  Receive buffer (SO_RCVBUF): {info.receive_buffer} bytes "
                f"({info.receive_buffer // 1024} KB)")
    return info


# Factory building one handler per accepted connection
HandlerFactory = Callable[[TransferConnection], ConnectionHandler]


class TransferServer:
    """
    TCP server delivering inbound segments to per-connection handlers.

    At most `concurrency_limit` connections are serviced at once; further
    connections wait for a free slot. Segments of one connection are
    delivered by a single task, in arrival order.
    """

    def __init__(self, handler_factory: HandlerFactory,
                 host: str = '0.0.0.0', port: int = 12345,
                 concurrency_limit: int = 10,
                 read_size: int = DEFAULT_READ_SIZE,
                 read_timeout: Optional[float] = None):
        if concurrency_limit <= 0:
            raise ValueError("concurrency_limit must be positive")
        self.handler_factory = handler_factory
        self.host = host
        self.port = port
        self.concurrency_limit = concurrency_limit
        self.read_size = read_size
        self.read_timeout = read_timeout
        self.server: Optional[asyncio.AbstractServer] = None
        self._slots: Optional[asyncio.Semaphore] = None
        self._connections: set = set()
        self._running = False

    @property
    def address(self) -> Tuple[str, int]:
        """Bound (host, port); useful when started on port 0."""
        if not self.server or not self.server.sockets:
            return self.host, self.port
        return self.server.sockets[0].getsockname()[:2]

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    async def start(self):
        """Start the transfer server."""
        self._slots = asyncio.Semaphore(self.concurrency_limit)
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port
        )
        self._running = True

        logger.info(f"Transfer server listening on {self.address} "
                    f"(concurrency limit {self.concurrency_limit}, "
                    f"read size {self.read_size} bytes)")

    async def stop(self):
        """Stop the transfer server."""
        self._running = False
        if self.server:
            self.server.close()
            for connection in list(self._connections):
                connection.abort()
            await self.server.wait_closed()
            logger.info("Transfer server stopped")

    async def serve_forever(self):
        if not self.server:
            await self.start()
        await self.server.serve_forever()

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        """Handle an incoming connection."""
        connection = TransferConnection(reader, writer)

        async with self._slots:
            self._connections.add(connection)
            handler = self.handler_factory(connection)
            try:
                handler.on_open(connection)
                while self._running:
                    data = await self._read(connection)
                    handler.on_data(connection, data)
                    if not data:
                        break
            except Exception as e:
                handler.on_error(connection, e)
                connection.abort()
            finally:
                self._connections.discard(connection)
                await connection.close()
                handler.on_close(connection)

    async def _read(self, connection: TransferConnection) -> bytes:
        try:
            return await asyncio.wait_for(
                connection.read(self.read_size),
                timeout=self.read_timeout
            )
        except asyncio.TimeoutError:
            raise ReadTimeout(self.read_timeout)


async def connect_to_peer(host: str, port: int,
                          timeout: float = 30.0) -> TransferConnection:
    """
    Connect to a receiver.

    Raises:
        ConnectFailure: if the connection could not be established in time
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=timeout
        )
    except asyncio.TimeoutError as e:
        raise ConnectFailure(host, port, TimeoutError(f"timed out after {timeout}s")) from e
    except OSError as e:
        raise ConnectFailure(host, port, e) from e
    return TransferConnection(reader, writer)
