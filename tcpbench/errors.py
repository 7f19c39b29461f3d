"""
Transfer Errors

Every failure the harness can report derives from TransferError so the CLI
can catch one type and still show the specific cause.
"""

from typing import Optional


class TransferError(Exception):
    """Base class for all transfer failures."""


class ConnectFailure(TransferError):
    """The connector could not reach the peer."""

    def __init__(self, host: str, port: int, cause: Optional[BaseException] = None):
        self.host = host
        self.port = port
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Failed to connect to {host}:{port}{detail}")


class WriteTimeout(TransferError):
    """A write unit was not acknowledged within the write timeout."""

    def __init__(self, offset: int, timeout: float):
        self.offset = offset
        self.timeout = timeout
        super().__init__(f"Write at offset {offset} not acknowledged within {timeout}s")


class WriteFailure(TransferError):
    """The transport reported an error while flushing a write unit."""

    def __init__(self, offset: int, cause: BaseException):
        self.offset = offset
        self.cause = cause
        super().__init__(f"Write at offset {offset} failed: {cause}")


class UnexpectedDisconnect(TransferError):
    """The peer went away while a session was still in progress."""

    def __init__(self, bytes_transferred: int, expected_total_bytes: int):
        self.bytes_transferred = bytes_transferred
        self.expected_total_bytes = expected_total_bytes
        super().__init__(
            f"Connection closed after {bytes_transferred:,} of "
            f"{expected_total_bytes:,} bytes"
        )


class ReadTimeout(TransferError):
    """No inbound data arrived within the read timeout."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"No data received within {timeout}s")


class StatsComputationSkipped(TransferError):
    """Finalize was reached but the session clock never started."""
