"""Tests for hypermangle.framing: length-prefixed frames."""

import asyncio
import os
import struct

import pytest

from hypermangle.errors import ConnectionClosedError, ProtocolError
from hypermangle.events import Args, CloseSocket, IdResponse, Packet
from hypermangle.framing import (
    HEADER_SIZE,
    MAX_FRAME_SIZE,
    decode,
    encode,
    read_frame,
    write_frame,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _reader_with(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


class _BufferWriter:
    """Minimal StreamWriter stand-in collecting written bytes."""

    def __init__(self):
        self.data = bytearray()

    def write(self, data: bytes) -> None:
        self.data.extend(data)

    async def drain(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestEncode:

    def test_header_is_eight_byte_little_endian_length(self):
        frame = encode(Packet(text="hi"))
        assert HEADER_SIZE == 8
        (length,) = struct.unpack("<Q", frame[:HEADER_SIZE])
        assert length == len(frame) - HEADER_SIZE

    def test_round_trip(self):
        for message in (Args(args=["p", "status"]), IdResponse(pid=99), CloseSocket()):
            assert decode(encode(message)) == message

    def test_oversized_message_rejected(self):
        with pytest.raises(ProtocolError):
            encode(Packet(text="x" * (MAX_FRAME_SIZE + 1)))

    def test_surrogate_escaped_text_rejected(self):
        # os.fsdecode keeps undecodable bytes as lone surrogates
        with pytest.raises(ProtocolError):
            encode(Args(args=["prog", "echo", os.fsdecode(b"\xff")]))
        with pytest.raises(ProtocolError):
            encode(Packet(text="\udcff"))


class TestDecode:

    def test_truncated_header(self):
        with pytest.raises(ProtocolError):
            decode(b"\x01\x00")

    def test_truncated_body(self):
        frame = encode(Packet(text="hello"))
        with pytest.raises(ProtocolError):
            decode(frame[:-1])

    def test_trailing_bytes(self):
        with pytest.raises(ProtocolError):
            decode(encode(CloseSocket()) + b"x")

    def test_declared_length_too_large(self):
        with pytest.raises(ProtocolError):
            decode(struct.pack("<Q", MAX_FRAME_SIZE + 1))

    def test_invalid_utf8(self):
        payload = b"\xff\xfe"
        with pytest.raises(ProtocolError):
            decode(struct.pack("<Q", len(payload)) + payload)

    def test_unknown_tag(self):
        payload = b'{"type": "shout"}'
        with pytest.raises(ProtocolError):
            decode(struct.pack("<Q", len(payload)) + payload)


class TestStreamFrames:

    @pytest.mark.asyncio
    async def test_reads_consecutive_frames(self):
        reader = _reader_with(encode(Packet(text="a")) + encode(CloseSocket()))
        assert await read_frame(reader) == Packet(text="a")
        assert await read_frame(reader) == CloseSocket()

    @pytest.mark.asyncio
    async def test_eof_before_header_is_connection_closed(self):
        with pytest.raises(ConnectionClosedError):
            await read_frame(_reader_with(b""))

    @pytest.mark.asyncio
    async def test_partial_header_is_protocol_error(self):
        with pytest.raises(ProtocolError):
            await read_frame(_reader_with(b"\x05\x00\x00"))

    @pytest.mark.asyncio
    async def test_truncated_body_is_protocol_error(self):
        with pytest.raises(ProtocolError):
            await read_frame(_reader_with(encode(Packet(text="hello"))[:-2]))

    @pytest.mark.asyncio
    async def test_waits_for_split_delivery(self):
        frame = encode(Packet(text="split"))
        reader = asyncio.StreamReader()
        task = asyncio.create_task(read_frame(reader))
        reader.feed_data(frame[:3])
        await asyncio.sleep(0)
        reader.feed_data(frame[3:10])
        await asyncio.sleep(0)
        assert not task.done()
        reader.feed_data(frame[10:])
        assert await asyncio.wait_for(task, timeout=1.0) == Packet(text="split")

    @pytest.mark.asyncio
    async def test_write_frame(self):
        writer = _BufferWriter()
        await write_frame(writer, Packet(text="out"))
        assert bytes(writer.data) == encode(Packet(text="out"))
