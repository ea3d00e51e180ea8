"""
Data Channel Transfer Protocol

Design Decision: Framing on the data channel
============================================

Options Considered:
1. Length-prefixed binary frames with a JSON header per chunk
   - Self-describing chunks, but every chunk pays for a header
   - Needs our own framing on top of SCTP messages
2. Tagged JSON for everything, chunks base64-encoded
   - Simple, but +33% bytes on the wire
3. Text frames for control, raw binary frames for data
   - Data channel already preserves message boundaries and order
   - Zero per-chunk overhead

Decision: Text = control (JSON), Binary = file bytes
- The frame type (str vs bytes) tells control and data apart
- Chunk offset is implied by arrival order (ordered, reliable channel)
- Completion is implied by byte count; there is no "done" message

Message Format:
```
Text:   {"type": "metadata", "fileName": "...", "fileSize": 123, "fileType": "..."}
        {"type": "progress", "percent": 42}
Binary: raw chunk bytes
```
"""

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from ..errors import ProtocolError

# Chunk size: 256KB
CHUNK_SIZE = 256 * 1024

# Sender pauses above this many queued bytes
MAX_BUFFERED_AMOUNT = 64 * 1024 * 1024

# ... and resumes when the channel reports it drained to this level
BUFFERED_AMOUNT_LOW_THRESHOLD = 0

DEFAULT_MIME_TYPE = 'application/octet-stream'


class TransferMessageType(Enum):
    """Control message types on the data channel."""
    METADATA = "metadata"
    PROGRESS = "progress"


@dataclass
class FileMetadata:
    """What the receiver needs before the first chunk."""
    name: str
    size: int
    mime_type: str = DEFAULT_MIME_TYPE

    def to_json(self) -> str:
        return json.dumps({
            'type': TransferMessageType.METADATA.value,
            'fileName': self.name,
            'fileSize': self.size,
            'fileType': self.mime_type,
        })

    @classmethod
    def from_dict(cls, data: dict) -> 'FileMetadata':
        """
        Raises:
            ProtocolError: missing or invalid fields
        """
        name = data.get('fileName')
        size = data.get('fileSize')
        mime_type = data.get('fileType') or DEFAULT_MIME_TYPE

        if not isinstance(name, str) or not name:
            raise ProtocolError(f"Metadata has no file name: {data!r}")
        # bool is an int subclass; JSON true is not a size
        if isinstance(size, bool) or not isinstance(size, (int, float)):
            raise ProtocolError(f"Metadata has no numeric file size: {data!r}")
        if size < 0 or (isinstance(size, float) and not size.is_integer()):
            raise ProtocolError(f"Invalid file size {size!r}")
        if not isinstance(mime_type, str):
            raise ProtocolError(f"Invalid file type {mime_type!r}")

        return cls(name=name, size=int(size), mime_type=mime_type)


@dataclass
class ProgressReport:
    """Receiver -> sender acknowledgment."""
    percent: int

    def to_json(self) -> str:
        return json.dumps({
            'type': TransferMessageType.PROGRESS.value,
            'percent': self.percent,
        })

    @classmethod
    def from_dict(cls, data: dict) -> 'ProgressReport':
        percent = data.get('percent')
        if isinstance(percent, bool) or not isinstance(percent, (int, float)):
            raise ProtocolError(f"Progress has no numeric percent: {data!r}")
        if not 0 <= percent <= 100:
            raise ProtocolError(f"Progress out of range: {percent!r}")
        return cls(percent=int(percent))


ControlMessage = Union[FileMetadata, ProgressReport]


def parse_control_message(text: str) -> ControlMessage:
    """
    Parse a text frame from the data channel.

    Raises:
        ProtocolError: not JSON, unknown type, or invalid fields
    """
    try:
        data = json.loads(text)
    except ValueError as e:
        raise ProtocolError(f"Control message is not JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError(f"Control message is not an object: {data!r}")

    try:
        msg_type = TransferMessageType(data.get('type'))
    except ValueError:
        raise ProtocolError(f"Unknown control message type {data.get('type')!r}")

    if msg_type == TransferMessageType.METADATA:
        return FileMetadata.from_dict(data)
    return ProgressReport.from_dict(data)


def compute_percent(received_bytes: int, expected_size: int) -> int:
    """floor(received / expected * 100), capped at 100. Empty files are 100%."""
    if expected_size <= 0:
        return 100
    return min(100, math.floor(received_bytes * 100 / expected_size))


def is_binary(data: Any) -> bool:
    return isinstance(data, (bytes, bytearray, memoryview))
