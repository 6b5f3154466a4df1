"""
Shared fixtures for the relay tests.

Provides:
- A real loopback TCP connection and its remote peer
- In-memory local output
- A scripted connection for error injection
"""

import asyncio
import contextlib

import pytest
import pytest_asyncio

from socketconsole.streams import DuplexConnection


class BufferOutput:
    """Local output that keeps everything written to it."""

    def __init__(self):
        self.data = bytearray()
        self.writes: list[bytes] = []

    def write(self, data: bytes):
        self.data += data
        self.writes.append(bytes(data))

    async def drain(self):
        pass


class Peer:
    """The remote end of a loopback connection."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer

    async def send(self, data: bytes):
        self.writer.write(data)
        await self.writer.drain()

    async def close(self):
        if self.writer.is_closing():
            return
        self.writer.close()
        with contextlib.suppress(OSError):
            await self.writer.wait_closed()


class ScriptedConnection:
    """Connection whose reads replay `chunks`; an exception in `chunks` is raised
    instead of returned. Once the script is exhausted reads block forever."""

    def __init__(self, chunks=(), *, write_error=None, write_eof_error=None):
        self._chunks = list(chunks)
        self._write_error = write_error
        self._write_eof_error = write_eof_error
        self.sent = bytearray()
        self.eof_written = False
        self.read_sizes: list[int] = []

    async def read(self, max_bytes: int) -> bytes:
        self.read_sizes.append(max_bytes)
        if self._chunks:
            chunk = self._chunks.pop(0)
            if isinstance(chunk, Exception):
                raise chunk
            return chunk
        await asyncio.Event().wait()

    async def write(self, data: bytes):
        if self._write_error is not None:
            raise self._write_error
        self.sent += data

    async def write_eof(self):
        if self._write_eof_error is not None:
            raise self._write_eof_error
        self.eof_written = True


@pytest.fixture
def buffer_output():
    return BufferOutput()


@pytest_asyncio.fixture
async def local_input():
    return asyncio.StreamReader()


@pytest.fixture
def scripted_connection():
    return ScriptedConnection


@pytest_asyncio.fixture
async def loopback():
    """Yields a connected `DuplexConnection` and the `Peer` on the other side."""

    peers: asyncio.Queue[Peer] = asyncio.Queue()
    server = await asyncio.start_server(
        lambda reader, writer: peers.put_nowait(Peer(reader, writer)),
        "127.0.0.1",
        0,
    )
    port = server.sockets[0].getsockname()[1]

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    peer = await asyncio.wait_for(peers.get(), timeout=5)
    connection = DuplexConnection(reader, writer)

    yield connection, peer

    await peer.close()
    with contextlib.suppress(OSError):
        await connection.close()
    server.close()
