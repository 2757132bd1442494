"""Tests for frame I/O - length prefix, size limits and stream errors

Tests use # TEST###: comments for cross-tracking in TEST_CATALOG.md.
"""

import io

import cbor2
import pytest

from plughost.frame import ErrorResponse, Hello, PreviewRequest, TAG_KEY
from plughost.io import (
    DEFAULT_MAX_FRAME,
    DecodeError,
    FrameReader,
    FrameTooLargeError,
    FrameWriter,
    UnexpectedEofError,
    encode,
    encode_frame,
    read_message,
    write_message,
)


class CountingReader(io.BytesIO):
    """BytesIO that records how many bytes were consumed"""

    def __init__(self, data):
        super().__init__(data)
        self.consumed = 0

    def read(self, size=-1):
        chunk = super().read(size)
        self.consumed += len(chunk)
        return chunk


def frame_bytes(payload: bytes) -> bytes:
    return len(payload).to_bytes(4, "little") + payload


# TEST101: Length prefix is 4 bytes little-endian followed by the CBOR payload
def test_101_length_prefix_little_endian():
    message = PreviewRequest(path="/tmp/a.txt")
    payload = encode(message)
    data = encode_frame(message)
    assert data[:4] == len(payload).to_bytes(4, "little")
    assert data[4:] == payload


# TEST102: Messages written back to back are read back in order, then clean EOF
def test_102_write_read_sequence():
    buf = io.BytesIO()
    writer = FrameWriter(buf)
    writer.write(Hello())
    writer.write(PreviewRequest(path="a.txt"))
    writer.write(ErrorResponse(message="boom"))

    buf.seek(0)
    reader = FrameReader(buf)
    assert reader.read() == Hello()
    assert reader.read() == PreviewRequest(path="a.txt")
    assert reader.read() == ErrorResponse(message="boom")
    assert reader.read() is None


# TEST103: Empty stream is a clean EOF, not an error
def test_103_clean_eof():
    assert read_message(io.BytesIO(b"")) is None


# TEST104: Stream ending inside the length prefix is an unexpected EOF
def test_104_partial_prefix():
    with pytest.raises(UnexpectedEofError):
        read_message(io.BytesIO(b"\x05\x00"))


# TEST105: Stream ending inside the payload is an unexpected EOF
def test_105_partial_payload():
    data = encode_frame(PreviewRequest(path="/some/long/path.txt"))
    with pytest.raises(UnexpectedEofError):
        read_message(io.BytesIO(data[:-3]))


# TEST106: Oversized length is rejected after reading only the prefix
def test_106_oversized_frame_rejected_before_payload():
    declared = DEFAULT_MAX_FRAME + 1
    reader = CountingReader(declared.to_bytes(4, "little") + b"\x00" * 64)
    with pytest.raises(FrameTooLargeError) as excinfo:
        read_message(reader)
    assert excinfo.value.size == declared
    assert excinfo.value.max == DEFAULT_MAX_FRAME
    assert reader.consumed == 4


# TEST107: The configured maximum applies on both read and write
def test_107_custom_max_frame():
    message = PreviewRequest(path="x" * 100)
    with pytest.raises(FrameTooLargeError):
        encode_frame(message, max_frame=32)

    data = encode_frame(message)
    with pytest.raises(FrameTooLargeError):
        read_message(io.BytesIO(data), max_frame=32)
    assert read_message(io.BytesIO(data), max_frame=1024) == message


# TEST108: Payload that is not CBOR is a decode error
def test_108_garbage_payload():
    with pytest.raises(DecodeError):
        read_message(io.BytesIO(frame_bytes(b"\xff\xff\xff")))


# TEST109: Payload that is CBOR but not a tagged message map is a decode error
@pytest.mark.parametrize("value", [
    [1, 2, 3],
    "Hello",
    {"protocol_version": 1},
    {TAG_KEY: "Heartbeat"},
])
def test_109_untagged_or_unknown_payload(value):
    with pytest.raises(DecodeError):
        read_message(io.BytesIO(frame_bytes(cbor2.dumps(value))))


# TEST110: write_message flushes so the peer sees the frame immediately
def test_110_write_message_flushes():
    raw = io.BytesIO()
    buffered = io.BufferedWriter(raw)
    write_message(buffered, Hello())
    assert raw.getvalue() == encode_frame(Hello())


# TEST111: A zero-length frame is read as a payload and rejected, not treated as EOF
def test_111_zero_length_frame():
    with pytest.raises(DecodeError):
        read_message(io.BytesIO(b"\x00\x00\x00\x00"))
