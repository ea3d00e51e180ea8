import json

import pytest

from filecoffee.errors import ProtocolError
from filecoffee.transfer.chunker import FileChunker, describe_file
from filecoffee.transfer.protocol import (
    FileMetadata, ProgressReport, compute_percent, parse_control_message,
)


def test_metadata_wire_form():
    metadata = FileMetadata(name="photo.jpg", size=1048576, mime_type="image/jpeg")
    assert json.loads(metadata.to_json()) == {
        'type': 'metadata',
        'fileName': 'photo.jpg',
        'fileSize': 1048576,
        'fileType': 'image/jpeg',
    }


def test_parse_control_messages():
    metadata = parse_control_message(
        '{"type": "metadata", "fileName": "a.txt", "fileSize": 3, "fileType": ""}'
    )
    assert metadata == FileMetadata(name="a.txt", size=3, mime_type="application/octet-stream")
    assert parse_control_message('{"type": "progress", "percent": 42}') == ProgressReport(42)


@pytest.mark.parametrize("text", [
    "{broken",
    '"metadata"',
    '{"type": "unknown"}',
    '{"type": "metadata", "fileSize": 3}',
    '{"type": "metadata", "fileName": "a", "fileSize": -1}',
    '{"type": "metadata", "fileName": "a", "fileSize": true}',
    '{"type": "metadata", "fileName": "a", "fileSize": 1.5}',
    '{"type": "progress", "percent": 101}',
])
def test_invalid_control_messages(text):
    with pytest.raises(ProtocolError):
        parse_control_message(text)


@pytest.mark.parametrize("received, expected, percent", [
    (0, 100, 0),
    (1, 3, 33),
    (2, 3, 66),
    (3, 3, 100),
    (262144, 1048576, 25),
    (5, 4, 100),
    (0, 0, 100),
])
def test_compute_percent_floors_and_caps(received, expected, percent):
    assert compute_percent(received, expected) == percent


def test_chunk_size_must_be_positive():
    with pytest.raises(ValueError):
        FileChunker(chunk_size=0)


async def test_chunk_file_reads_in_offset_order(tmp_path):
    path = tmp_path / "data.bin"
    data = bytes(range(256)) * 40
    path.write_bytes(data)

    chunks = [chunk async for chunk in FileChunker(chunk_size=1000).chunk_file(path)]

    assert [index for index, _ in chunks] == list(range(11))
    assert all(len(c) == 1000 for _, c in chunks[:-1])
    assert b"".join(c for _, c in chunks) == data


def test_describe_file_guesses_type(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("hello")
    assert describe_file(path) == FileMetadata(name="notes.txt", size=5, mime_type="text/plain")

    blob = tmp_path / "blob.zzunknown"
    blob.write_bytes(b"\x00")
    assert describe_file(blob).mime_type == "application/octet-stream"
