"""
tcpbench - chunked TCP transfer throughput harness

A sender pushes a fixed-size payload over one TCP connection in bounded
write units; a receiver reassembles the inbound segments into logical
transfers and reports throughput when each transfer completes.
"""

from .config import Config, load_config
from .errors import (
    ConnectFailure, ReadTimeout, StatsComputationSkipped, TransferError,
    UnexpectedDisconnect, WriteFailure, WriteTimeout
)
from .session import SessionState, TransferSession
from .stats import CompletionReason, StatsReport, ThroughputStatsCollector, compute_stats

__version__ = '0.1.0'

__all__ = [
    'Config',
    'load_config',
    'ConnectFailure',
    'ReadTimeout',
    'StatsComputationSkipped',
    'TransferError',
    'UnexpectedDisconnect',
    'WriteFailure',
    'WriteTimeout',
    'SessionState',
    'TransferSession',
    'CompletionReason',
    'StatsReport',
    'ThroughputStatsCollector',
    'compute_stats',
]
