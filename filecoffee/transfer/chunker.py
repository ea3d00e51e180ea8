"""
File Chunker

Splits a file into fixed-size slices for the data channel.

Each slice is read from disk only when the sender is ready to send it,
so memory use on the sending side stays at one chunk plus whatever the
channel has buffered.
"""

import mimetypes
from pathlib import Path
from typing import AsyncIterator, Tuple

import aiofiles

from .protocol import CHUNK_SIZE, DEFAULT_MIME_TYPE, FileMetadata


class FileChunker:
    """
    Reads a file as (chunk_index, chunk_data) in offset order.

    Features:
    - Fixed-size chunks (last one may be shorter)
    - Async file reading
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size

    async def chunk_file(self, file_path: Path) -> AsyncIterator[Tuple[int, bytes]]:
        """
        Split a file into chunks.

        Yields:
            (chunk_index, chunk_data) tuples
        """
        async with aiofiles.open(file_path, 'rb') as f:
            chunk_index = 0
            while True:
                chunk_data = await f.read(self.chunk_size)
                if not chunk_data:
                    break
                yield chunk_index, chunk_data
                chunk_index += 1


def describe_file(file_path: Path) -> FileMetadata:
    """Build the metadata message for a file on disk."""
    file_path = Path(file_path)
    mime_type, _ = mimetypes.guess_type(file_path.name)
    return FileMetadata(
        name=file_path.name,
        size=file_path.stat().st_size,
        mime_type=mime_type or DEFAULT_MIME_TYPE,
    )
