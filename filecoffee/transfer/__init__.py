"""
Transfer Module - File Send/Receive over the Data Channel

Metadata handshake, backpressure-aware chunk pump, reassembly and
progress acknowledgment.
"""

from .protocol import FileMetadata, ProgressReport, compute_percent, parse_control_message
from .chunker import FileChunker, describe_file
from .sender import FileSender, SendProgress
from .receiver import FileReceiver, ReceiveProgress, ReceivedFile, save_received_file

__all__ = [
    'FileMetadata',
    'ProgressReport',
    'compute_percent',
    'parse_control_message',
    'FileChunker',
    'describe_file',
    'FileSender',
    'SendProgress',
    'FileReceiver',
    'ReceiveProgress',
    'ReceivedFile',
    'save_received_file',
]
