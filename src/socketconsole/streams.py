import os
import sys
import stat
import asyncio
from typing import BinaryIO, TextIO

from socketconsole.logging import get_logger
from socketconsole.common import ReadError, WriteError

LOGGER = get_logger(__name__)


class DuplexConnection:
    """A connected byte stream on top of an asyncio reader/writer pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer

    @property
    def peername(self):
        return self._writer.get_extra_info("peername")

    async def read(self, max_bytes: int) -> bytes:
        """Reads at most `max_bytes`. An empty result means end of stream."""

        try:
            return await self._reader.read(max_bytes)
        except OSError as e:
            raise ReadError(f"Failed to read from connection. {e}") from e

    async def write(self, data: bytes):
        if self._writer.is_closing():
            raise WriteError("Connection is closing.")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as e:
            raise WriteError(f"Failed to write to connection. {e}") from e

    async def write_eof(self):
        if self._writer.is_closing() or not self._writer.can_write_eof():
            raise WriteError("Connection cannot be half-closed.")
        try:
            self._writer.write_eof()
        except OSError as e:
            raise WriteError(f"Failed to half-close connection. {e}") from e

    async def close(self):
        if not self._writer.is_closing():
            self._writer.close()
        await self._writer.wait_closed()


class FileInput:
    """Local input backed by a regular file or a device that cannot be polled."""

    def __init__(self, file: BinaryIO):
        self._fd = file.fileno()

    async def read(self, n: int) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, os.read, self._fd, n)


class FileOutput:
    """Local output backed by a regular file."""

    def __init__(self, file: BinaryIO):
        self._file = file

    def write(self, data: bytes):
        self._file.write(data)

    async def drain(self):
        self._file.flush()


def _pollable(fileno: int) -> bool:
    mode = os.fstat(fileno).st_mode
    return stat.S_ISFIFO(mode) or stat.S_ISSOCK(mode) or os.isatty(fileno)


async def connect_stdin_stdout(
    stdin: TextIO | None = None, stdout: TextIO | None = None
):
    if stdin is None:
        stdin = sys.stdin
    if stdout is None:
        stdout = sys.stdout
    loop = asyncio.get_running_loop()

    if _pollable(stdin.fileno()):
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: protocol, stdin)
    else:
        LOGGER.debug("Standard input is not pollable, reading it in a worker thread.")
        reader = FileInput(stdin.buffer)

    if _pollable(stdout.fileno()):
        w_transport, w_protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, stdout
        )
        writer = asyncio.StreamWriter(w_transport, w_protocol, None, loop)
    else:
        LOGGER.debug("Standard output is not pollable, writing it synchronously.")
        writer = FileOutput(stdout.buffer)

    return reader, writer
