"""
Transfer Module - Chunked Send / Receive

Handles splitting, writing, acknowledging and reassembling a payload
over a single TCP connection.
"""

from .ack import OutcomeKind, WriteAck, WriteAcknowledgmentTracker, WriteOutcome
from .chunker import PayloadChunker, TransferUnit, UNIT_SIZE, load_payload, synthetic_payload
from .protocol import (
    ConnectionHandler, Framing, LineDecoder, TransferConnection, TransferServer,
    connect_to_peer
)
from .receiver import CompletionDetector, ReceiverHandler, TransferReceiver
from .writer import ChunkWriter, SendResult, WriteMode

__all__ = [
    'OutcomeKind',
    'WriteAck',
    'WriteAcknowledgmentTracker',
    'WriteOutcome',
    'PayloadChunker',
    'TransferUnit',
    'UNIT_SIZE',
    'load_payload',
    'synthetic_payload',
    'ConnectionHandler',
    'Framing',
    'LineDecoder',
    'TransferConnection',
    'TransferServer',
    'connect_to_peer',
    'CompletionDetector',
    'ReceiverHandler',
    'TransferReceiver',
    'ChunkWriter',
    'SendResult',
    'WriteMode',
]
