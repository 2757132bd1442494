"""Frame I/O - Reading and Writing protocol messages

This module provides length-prefixed CBOR message encoding/decoding over
stdio pipes.

## Wire Format

```
┌─────────────────────────────────────────────────────────┐
│  4 bytes: u32 little-endian length                      │
├─────────────────────────────────────────────────────────┤
│  N bytes: CBOR-encoded message map                      │
└─────────────────────────────────────────────────────────┘
```

The CBOR payload is a map tagged with ``_T`` (see frame.py).

A declared length above the configured maximum is rejected before any payload
byte is read. After any error raised here the stream position is undefined,
so callers tear the connection down instead of trying to resynchronize.
"""

from typing import Any, BinaryIO, Optional

import cbor2

from plughost.descriptor import DescriptorError
from plughost.errors import PlugHostError
from plughost.frame import MESSAGE_TYPES, TAG_KEY, Message, MessageType


# Default maximum frame size (16 MB)
DEFAULT_MAX_FRAME = 16 * 1024 * 1024

LENGTH_PREFIX_SIZE = 4

# Largest value the length prefix can carry
MAX_FRAME_HARD_LIMIT = 0xFFFFFFFF


class ProtocolError(PlugHostError):
    """Base error for malformed or oversized frames"""
    pass


class EncodeError(ProtocolError):
    """Message could not be encoded"""
    pass


class DecodeError(ProtocolError):
    """Payload could not be decoded into a known message"""
    pass


class FrameTooLargeError(ProtocolError):
    """Frame exceeds size limits"""

    def __init__(self, size: int, max_size: int):
        super().__init__(f"Frame too large: {size} bytes (max {max_size})")
        self.size = size
        self.max = max_size


class UnexpectedEofError(ProtocolError):
    """Stream ended in the middle of a frame"""

    def __init__(self, message: str = "unexpected end of stream"):
        super().__init__(message)


def encode(message: Message) -> bytes:
    """Encode a message to CBOR bytes (no length prefix)

    Raises:
        EncodeError: If encoding fails
    """
    try:
        return cbor2.dumps(message.to_dict())
    except (cbor2.CBOREncodeError, TypeError, ValueError) as e:
        raise EncodeError(f"CBOR encoding failed: {e}")


def decode(data: bytes) -> Message:
    """Decode a message from CBOR bytes (no length prefix)

    Raises:
        DecodeError: If the bytes are not CBOR, not a tagged map, or carry
            a tag or field this protocol does not define
    """
    try:
        payload = cbor2.loads(data)
    except (cbor2.CBORDecodeError, ValueError, TypeError, EOFError) as e:
        raise DecodeError(f"CBOR decoding failed: {e}")

    if not isinstance(payload, dict):
        raise DecodeError("expected map")

    tag = payload.get(TAG_KEY)
    if tag is None:
        raise DecodeError(f"missing message tag '{TAG_KEY}'")

    message_type = MessageType.from_tag(tag)
    if message_type is None:
        raise DecodeError(f"unknown message tag: {tag!r}")

    try:
        return MESSAGE_TYPES[message_type].from_fields(payload)
    except (ValueError, TypeError, DescriptorError) as e:
        raise DecodeError(f"invalid {message_type.value}: {e}")


def encode_frame(message: Message, max_frame: int = DEFAULT_MAX_FRAME) -> bytes:
    """Encode a message with its 4-byte little-endian length prefix

    Raises:
        EncodeError: If encoding fails
        FrameTooLargeError: If the payload exceeds ``max_frame``
    """
    payload = encode(message)
    limit = min(max_frame, MAX_FRAME_HARD_LIMIT)
    if len(payload) > limit:
        raise FrameTooLargeError(len(payload), limit)
    return len(payload).to_bytes(LENGTH_PREFIX_SIZE, byteorder="little") + payload


def _read_exact(reader: BinaryIO, size: int) -> bytes:
    """Read up to ``size`` bytes, looping over short reads; shorter only at EOF"""
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = reader.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def write_message(writer: BinaryIO, message: Message, max_frame: int = DEFAULT_MAX_FRAME) -> None:
    """Write one length-prefixed message and flush

    Raises:
        ProtocolError: If the message cannot be framed
        OSError: If the underlying write fails
    """
    writer.write(encode_frame(message, max_frame))
    writer.flush()


def read_message(reader: BinaryIO, max_frame: int = DEFAULT_MAX_FRAME) -> Optional[Message]:
    """Read one length-prefixed message

    Returns None on clean EOF (no bytes before the length prefix).

    Raises:
        UnexpectedEofError: On a partial prefix or payload
        FrameTooLargeError: If the declared length exceeds ``max_frame``
        DecodeError: If the payload is not a valid message
    """
    len_buf = _read_exact(reader, LENGTH_PREFIX_SIZE)

    if len(len_buf) == 0:
        # Clean EOF
        return None

    if len(len_buf) < LENGTH_PREFIX_SIZE:
        raise UnexpectedEofError("stream ended inside length prefix")

    length = int.from_bytes(len_buf, byteorder="little")

    limit = min(max_frame, MAX_FRAME_HARD_LIMIT)
    if length > limit:
        raise FrameTooLargeError(length, limit)

    payload = _read_exact(reader, length)
    if len(payload) < length:
        raise UnexpectedEofError(f"stream ended after {len(payload)} of {length} payload bytes")

    return decode(payload)


class FrameReader:
    """Message reader bound to one input stream"""

    def __init__(self, reader: BinaryIO, max_frame: int = DEFAULT_MAX_FRAME):
        """Create a new frame reader

        Args:
            reader: Binary input stream
            max_frame: Largest payload accepted, in bytes
        """
        self.reader = reader
        self.max_frame = max_frame

    def read(self) -> Optional[Message]:
        """Read the next message

        Returns:
            Message or None on EOF

        Raises:
            ProtocolError: If the frame is malformed
        """
        return read_message(self.reader, self.max_frame)

    def inner(self) -> BinaryIO:
        """Get the underlying stream"""
        return self.reader


class FrameWriter:
    """Message writer bound to one output stream"""

    def __init__(self, writer: BinaryIO, max_frame: int = DEFAULT_MAX_FRAME):
        """Create a new frame writer

        Args:
            writer: Binary output stream
            max_frame: Largest payload sent, in bytes
        """
        self.writer = writer
        self.max_frame = max_frame

    def write(self, message: Message) -> None:
        """Write a message

        Raises:
            ProtocolError: If the message cannot be framed
            OSError: If the write fails
        """
        write_message(self.writer, message, self.max_frame)

    def inner(self) -> BinaryIO:
        """Get the underlying stream"""
        return self.writer


def describe(payload: Any) -> str:
    """Short human-readable name of a decoded message, for log lines"""
    if isinstance(payload, Message):
        return payload.message_type.value
    return type(payload).__name__
