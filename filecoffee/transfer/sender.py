"""
File Sender

Design Decision: Flow Control
=============================

Options Considered:
1. Send every chunk immediately
   - The channel queues the whole file in memory
   - Progress acks wait behind megabytes of queued data
2. Stop-and-wait: one chunk, then wait for the receiver's ack
   - Bounded memory, but one round trip per chunk
3. High/low watermarks on the channel's own send buffer
   - Bounded memory, the pipe stays full
   - aiortc exposes bufferedAmount and a "bufferedamountlow" event

Decision: Watermarks
- Before each chunk, if bufferedAmount > high-water mark, suspend
- Resume when the channel emits "bufferedamountlow"
  (bufferedAmountLowThreshold = low-water mark)
- No polling, no timers

Send Flow:
1. Metadata (text)
2. Chunks (binary) in offset order, read from disk one at a time
3. Progress acks from the receiver arrive as text on the same channel;
   100% marks the transfer complete
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from aiortc.exceptions import InvalidStateError

from ..errors import ProtocolError, TransferError
from .chunker import FileChunker, describe_file
from .protocol import (
    BUFFERED_AMOUNT_LOW_THRESHOLD, CHUNK_SIZE, MAX_BUFFERED_AMOUNT,
    FileMetadata, ProgressReport, is_binary, parse_control_message,
)

logger = logging.getLogger(__name__)


@dataclass
class SendProgress:
    """Sender-side view of one transfer."""
    file_name: str = ''
    file_size: int = 0
    bytes_sent: int = 0
    chunks_sent: int = 0
    acknowledged_percent: int = 0
    pauses: int = 0
    start_time: float = field(default_factory=time.time)
    phase: str = 'pending'  # 'pending', 'sending', 'sent', 'complete', 'disconnected', 'failed'
    error: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.phase in ('complete', 'disconnected', 'failed')

    @property
    def elapsed_seconds(self) -> float:
        return time.time() - self.start_time

    @property
    def speed_bytes_per_sec(self) -> float:
        elapsed = self.elapsed_seconds
        if elapsed == 0:
            return 0
        return self.bytes_sent / elapsed

    def to_dict(self) -> dict:
        return {
            'file_name': self.file_name,
            'file_size': self.file_size,
            'bytes_sent': self.bytes_sent,
            'chunks_sent': self.chunks_sent,
            'acknowledged_percent': self.acknowledged_percent,
            'pauses': self.pauses,
            'elapsed_seconds': self.elapsed_seconds,
            'speed_bytes_per_sec': self.speed_bytes_per_sec,
            'phase': self.phase,
            'error': self.error,
        }


# Progress callback type
ProgressCallback = Callable[[SendProgress], None]


class FileSender:
    """
    Pumps one file through an open data channel.

    Usage:
        sender = FileSender(path)
        channel.on("message", sender.handle_message)
        await sender.send(channel)
    """

    def __init__(self, file_path: Path, chunk_size: int = CHUNK_SIZE,
                 max_buffered_amount: int = MAX_BUFFERED_AMOUNT,
                 buffered_amount_low_threshold: int = BUFFERED_AMOUNT_LOW_THRESHOLD,
                 progress_callback: Optional[ProgressCallback] = None):
        if buffered_amount_low_threshold > max_buffered_amount:
            raise ValueError("Low-water mark must not exceed the high-water mark")

        self.file_path = Path(file_path)
        self.chunker = FileChunker(chunk_size)
        self.max_buffered_amount = max_buffered_amount
        self.buffered_amount_low_threshold = buffered_amount_low_threshold
        self.progress_callback = progress_callback

        self.metadata: Optional[FileMetadata] = None
        self.progress = SendProgress(file_name=self.file_path.name)

        self._channel = None
        self._channel_closed = False
        self._drained = asyncio.Event()
        self._finished = asyncio.Event()

    def _notify(self):
        if self.progress_callback:
            self.progress_callback(self.progress)

    def _set_phase(self, phase: str, error: Optional[str] = None):
        if self.progress.is_finished:
            return
        self.progress.phase = phase
        if error:
            self.progress.error = error
        logger.debug(f"Send {self.progress.file_name}: {phase}")
        if self.progress.is_finished:
            self._detach()
            self._finished.set()
        self._notify()

    def _detach(self):
        channel, self._channel = self._channel, None
        if channel is not None:
            channel.remove_listener("close", self._on_close)

    async def wait_finished(self) -> SendProgress:
        """Wait until the transfer is complete, disconnected or failed."""
        await self._finished.wait()
        return self.progress

    # === Channel events ===

    def _on_buffered_amount_low(self):
        self._drained.set()

    def _on_close(self):
        self._channel_closed = True
        self._drained.set()
        self._set_phase('disconnected')

    def handle_message(self, data):
        """Handle a message from the receiver (progress acks)."""
        if is_binary(data):
            logger.debug("Ignoring binary message on sending side")
            return

        try:
            message = parse_control_message(data)
        except ProtocolError as e:
            logger.debug(f"Ignoring control message: {e}")
            return

        if not isinstance(message, ProgressReport):
            logger.debug(f"Ignoring {type(message).__name__} on sending side")
            return

        if message.percent <= self.progress.acknowledged_percent:
            return
        self.progress.acknowledged_percent = message.percent
        self._notify()

        if message.percent >= 100:
            logger.info(f"Receiver confirmed {self.progress.file_name}")
            self._set_phase('complete')

    # === Pump ===

    async def _wait_for_capacity(self, channel) -> bool:
        """Suspend while the channel holds more than the high-water mark."""
        while not self._channel_closed and channel.bufferedAmount > self.max_buffered_amount:
            self._drained.clear()
            self.progress.pauses += 1
            logger.debug(f"Send buffer full ({channel.bufferedAmount:,} bytes), pausing")
            await self._drained.wait()
        return not self._channel_closed

    async def send(self, channel) -> SendProgress:
        """
        Send metadata and all chunks.

        Returns once the last chunk is handed to the channel (or the channel
        closed, or the file could not be read). Completion from the receiver's
        side is signalled later by its 100% ack; see wait_finished().
        """
        try:
            self.metadata = describe_file(self.file_path)
        except OSError as e:
            self._set_phase('failed', f"Cannot read {self.file_path}: {e}")
            return self.progress

        self.progress.file_name = self.metadata.name
        self.progress.file_size = self.metadata.size
        self.progress.start_time = time.time()

        if channel.readyState != "open":
            self._set_phase('disconnected')
            return self.progress

        channel.bufferedAmountLowThreshold = self.buffered_amount_low_threshold
        channel.on("bufferedamountlow", self._on_buffered_amount_low)
        channel.on("close", self._on_close)
        self._channel = channel

        try:
            channel.send(self.metadata.to_json())
            logger.info(f"Sending {self.metadata.name} ({self.metadata.size:,} bytes)")
            self._set_phase('sending')

            if self.metadata.size == 0:
                self._set_phase('complete')
                return self.progress

            async for _, chunk in self.chunker.chunk_file(self.file_path):
                if not await self._wait_for_capacity(channel):
                    break
                channel.send(chunk)
                self.progress.bytes_sent += len(chunk)
                self.progress.chunks_sent += 1
                self._notify()

            if self._channel_closed:
                logger.warning(f"Channel closed after {self.progress.bytes_sent:,} bytes")
            elif self.progress.phase == 'sending':
                self._set_phase('sent')
                logger.info(f"All {self.progress.chunks_sent} chunks handed to the channel")

        except InvalidStateError:
            self._on_close()
        except OSError as e:
            error = TransferError(f"Error reading {self.file_path}: {e}")
            logger.error(str(error))
            self._set_phase('failed', str(error))
        finally:
            channel.remove_listener("bufferedamountlow", self._on_buffered_amount_low)
            # a close before the final ack still has to finish the transfer
            if self.progress.is_finished:
                self._detach()

        return self.progress
