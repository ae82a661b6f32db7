"""Length-prefixed framing for control messages.

Frame layout: 8-byte length prefix (unsigned, little-endian) + JSON payload.
The prefix width and byte order are fixed so that clients and servers of
the same deployment interoperate regardless of how they were built.
"""

import asyncio
import logging
import struct

from .errors import ConnectionClosedError, ProtocolError
from .events import ControlMessage, deserialize_message, serialize_message


logger = logging.getLogger(__name__)


HEADER_FORMAT = "<Q"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
MAX_FRAME_SIZE = 10 * 1024 * 1024  # 10 MB max


def encode(message: ControlMessage) -> bytes:
    """Encode a message as a single frame."""
    try:
        payload = serialize_message(message).encode("utf-8")
    except UnicodeEncodeError as e:
        # Surrogate-escaped text, e.g. a non-UTF-8 filename taken from argv
        raise ProtocolError(f"Message is not encodable as UTF-8: {e}") from e
    if len(payload) > MAX_FRAME_SIZE:
        raise ProtocolError(f"Message too large: {len(payload)} bytes")
    return struct.pack(HEADER_FORMAT, len(payload)) + payload


def _decode_header(header: bytes) -> int:
    length = struct.unpack(HEADER_FORMAT, header)[0]
    if length > MAX_FRAME_SIZE:
        raise ProtocolError(f"Message too large: {length} bytes")
    return length


def _decode_payload(payload: bytes) -> ControlMessage:
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolError(f"Payload is not valid UTF-8: {e}") from e
    return deserialize_message(text)


def decode(frame: bytes) -> ControlMessage:
    """Decode one complete frame.

    Raises:
        ProtocolError: If the frame is truncated, has trailing bytes, or
            carries a malformed message.
    """
    if len(frame) < HEADER_SIZE:
        raise ProtocolError(f"Truncated header: {len(frame)} of {HEADER_SIZE} bytes")
    length = _decode_header(frame[:HEADER_SIZE])
    payload = frame[HEADER_SIZE:]
    if len(payload) != length:
        raise ProtocolError(f"Frame declares {length} bytes but carries {len(payload)}")
    return _decode_payload(payload)


async def read_frame(reader: asyncio.StreamReader) -> ControlMessage:
    """Read exactly one frame from the stream.

    Raises:
        ConnectionClosedError: If the stream ends before a header arrives.
        ProtocolError: If the body is truncated or malformed.
    """
    try:
        header = await reader.readexactly(HEADER_SIZE)
    except asyncio.IncompleteReadError as e:
        if e.partial:
            raise ProtocolError(
                f"Truncated header: {len(e.partial)} of {HEADER_SIZE} bytes"
            ) from e
        raise ConnectionClosedError("Connection closed by peer") from e

    length = _decode_header(header)

    try:
        payload = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise ProtocolError(
            f"Truncated frame: {len(e.partial)} of {length} bytes"
        ) from e

    message = _decode_payload(payload)
    logger.debug(f"read_frame: {type(message).__name__} ({length} bytes)")
    return message


async def write_frame(writer: asyncio.StreamWriter, message: ControlMessage) -> None:
    """Write one frame and wait for the transport to drain."""
    writer.write(encode(message))
    await writer.drain()
