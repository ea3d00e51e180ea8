"""
File Receiver

Reassembles a file from the data channel and acknowledges progress.

Receive Flow:
1. Metadata (text) resets everything and announces the incoming file
2. Binary chunks are appended in arrival order
3. After each chunk, the integer percentage is reported back to the
   sender if it advanced
4. Once received_bytes >= expected size, the chunks are joined into the
   final artifact

The channel is ordered and reliable, so there is no reordering,
deduplication or per-chunk verification: completion is driven purely
by the byte count from the metadata.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import aiofiles
import aiofiles.os

from ..errors import ProtocolError, TransferError
from .protocol import FileMetadata, ProgressReport, TransferMessageType, compute_percent, is_binary

logger = logging.getLogger(__name__)


@dataclass
class ReceivedFile:
    """The reassembled artifact."""
    name: str
    mime_type: str
    data: bytes
    saved_path: Optional[Path] = None

    @property
    def size(self) -> int:
        return len(self.data)

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'mime_type': self.mime_type,
            'size': self.size,
            'saved_path': str(self.saved_path) if self.saved_path else None,
        }


@dataclass
class ReceiveProgress:
    """Receiver-side counters for the current transfer."""
    file_name: str = ''
    file_size: int = 0
    received_bytes: int = 0
    chunks_received: int = 0
    last_reported_percent: int = 0
    phase: str = 'waiting'  # 'waiting', 'receiving', 'complete', 'failed'
    error: Optional[str] = None
    reports: List[int] = field(default_factory=list)

    @property
    def percent(self) -> int:
        if self.phase == 'waiting':
            return 0
        return compute_percent(self.received_bytes, self.file_size)

    def to_dict(self) -> dict:
        return {
            'file_name': self.file_name,
            'file_size': self.file_size,
            'received_bytes': self.received_bytes,
            'chunks_received': self.chunks_received,
            'percent': self.percent,
            'last_reported_percent': self.last_reported_percent,
            'phase': self.phase,
            'error': self.error,
        }


class FileReceiver:
    """
    Receive path of the transfer protocol.

    Args:
        send: sends a text message back over the channel (progress acks)
        progress_step: report only when the percent advanced by at least
            this much (100% is always reported)

    Callbacks (all optional):
        on_file_started(metadata)
        on_progress(progress)
        on_complete(received_file)
        on_error(message)
    """

    def __init__(self, send: Callable[[str], None], progress_step: int = 1):
        if progress_step < 1:
            raise ValueError(f"progress_step must be >= 1, got {progress_step}")
        self.send = send
        self.progress_step = progress_step

        self.metadata: Optional[FileMetadata] = None
        self.progress = ReceiveProgress()
        self.result: Optional[ReceivedFile] = None
        self._chunks: List[bytes] = []

        self.on_file_started: Optional[Callable[[FileMetadata], None]] = None
        self.on_progress: Optional[Callable[[ReceiveProgress], None]] = None
        self.on_complete: Optional[Callable[[ReceivedFile], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None

    @property
    def is_complete(self) -> bool:
        return self.progress.phase == 'complete'

    def handle_message(self, data):
        """Handle one message from the data channel."""
        if isinstance(data, str):
            self._handle_text(data)
        elif is_binary(data):
            self._handle_chunk(bytes(data))
        else:
            logger.warning(f"Ignoring data channel message of type {type(data).__name__}")

    # === Control messages ===

    def _handle_text(self, text: str):
        try:
            message = json.loads(text)
        except ValueError as e:
            self._fail(f"Unreadable control message: {e}")
            return

        if not isinstance(message, dict):
            self._fail(f"Control message is not an object: {text[:80]!r}")
            return

        if message.get('type') != TransferMessageType.METADATA.value:
            logger.debug(f"Ignoring control message {message.get('type')!r}")
            return

        try:
            metadata = FileMetadata.from_dict(message)
        except ProtocolError as e:
            self._fail(f"Invalid file metadata: {e}")
            return

        self._start(metadata)

    def _start(self, metadata: FileMetadata):
        if self.progress.phase == 'receiving':
            logger.warning(
                f"New metadata while receiving {self.progress.file_name}, "
                f"discarding {self.progress.received_bytes:,} bytes"
            )

        self.metadata = metadata
        self.result = None
        self._chunks = []
        self.progress = ReceiveProgress(
            file_name=metadata.name,
            file_size=metadata.size,
            phase='receiving',
        )
        logger.info(f"Receiving {metadata.name} ({metadata.size:,} bytes, {metadata.mime_type})")

        if self.on_file_started:
            self.on_file_started(metadata)

        if metadata.size == 0:
            self._report(100)
            self._finish()

    # === Data ===

    def _handle_chunk(self, chunk: bytes):
        if self.metadata is None or self.progress.phase != 'receiving':
            logger.warning(f"Dropping {len(chunk):,} byte chunk received outside a transfer")
            return

        self._chunks.append(chunk)
        self.progress.received_bytes += len(chunk)
        self.progress.chunks_received += 1

        percent = compute_percent(self.progress.received_bytes, self.metadata.size)
        last = self.progress.last_reported_percent
        if percent > last and (percent - last >= self.progress_step or percent == 100):
            self._report(percent)

        if self.on_progress:
            self.on_progress(self.progress)

        if self.progress.received_bytes >= self.metadata.size:
            self._finish()

    def _report(self, percent: int):
        self.progress.last_reported_percent = percent
        self.progress.reports.append(percent)
        try:
            self.send(ProgressReport(percent).to_json())
        except Exception as e:
            # The sender is gone; the data we hold is still valid
            logger.warning(f"Could not send progress report: {e}")

    def _finish(self):
        metadata = self.metadata
        data = b"".join(self._chunks)
        self._chunks = []

        if len(data) > metadata.size:
            logger.warning(f"Received {len(data):,} bytes, expected {metadata.size:,}")

        self.result = ReceivedFile(name=metadata.name, mime_type=metadata.mime_type, data=data)
        self.progress.phase = 'complete'
        logger.info(f"Received {metadata.name} ({len(data):,} bytes)")

        if self.on_complete:
            self.on_complete(self.result)

    def _fail(self, reason: str):
        error = TransferError(reason)
        logger.error(str(error))

        self.metadata = None
        self.result = None
        self._chunks = []
        self.progress.phase = 'failed'
        self.progress.error = str(error)

        if self.on_error:
            self.on_error(str(error))


def safe_file_name(name: str) -> str:
    """Strip any directory parts from a sender-supplied name."""
    base = Path(name.replace('\\', '/')).name
    if base in ('', '.', '..'):
        return 'download'
    return base


async def _unique_path(directory: Path, name: str) -> Path:
    path = directory / name
    stem, suffix = path.stem, path.suffix
    counter = 1
    while await aiofiles.os.path.exists(path):
        path = directory / f"{stem} ({counter}){suffix}"
        counter += 1
    return path


async def save_received_file(received: ReceivedFile, directory: Path) -> Path:
    """
    Write the artifact into directory without overwriting existing files.

    Returns:
        The path written
    """
    directory = Path(directory)
    await aiofiles.os.makedirs(directory, exist_ok=True)

    path = await _unique_path(directory, safe_file_name(received.name))
    async with aiofiles.open(path, 'wb') as f:
        await f.write(received.data)

    received.saved_path = path
    logger.info(f"Saved {received.name} to {path}")
    return path
