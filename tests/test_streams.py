"""
Test: Connection and local stream adapters
"""

import asyncio
import os
import sys

import pytest

from socketconsole.common import ReadError, WriteError
from socketconsole.relay import RelayEngine, RelayOutcome
from socketconsole.streams import (
    DuplexConnection,
    FileInput,
    FileOutput,
    connect_stdin_stdout,
)

TIMEOUT = 5


class TestDuplexConnection:

    @pytest.mark.asyncio
    async def test_read_and_write(self, loopback):
        connection, peer = loopback

        await connection.write(b"to peer")
        assert await asyncio.wait_for(peer.reader.readexactly(7), TIMEOUT) == b"to peer"

        await peer.send(b"to us")
        assert await asyncio.wait_for(connection.read(1024), TIMEOUT) == b"to us"

    @pytest.mark.asyncio
    async def test_read_is_bounded(self, loopback):
        connection, peer = loopback
        await peer.send(b"0123456789")

        chunk = await asyncio.wait_for(connection.read(4), TIMEOUT)
        assert chunk == b"0123"

    @pytest.mark.asyncio
    async def test_end_of_stream(self, loopback):
        connection, peer = loopback
        await peer.close()

        assert await asyncio.wait_for(connection.read(1024), TIMEOUT) == b""

    @pytest.mark.asyncio
    async def test_read_error(self, loopback):
        _, peer = loopback
        reader = asyncio.StreamReader()
        reader.set_exception(ConnectionResetError("reset"))
        connection = DuplexConnection(reader, peer.writer)

        with pytest.raises(ReadError) as excinfo:
            await connection.read(1024)
        assert isinstance(excinfo.value.__cause__, ConnectionResetError)

    @pytest.mark.asyncio
    async def test_write_after_close(self, loopback):
        connection, _ = loopback
        await connection.close()

        with pytest.raises(WriteError):
            await connection.write(b"too late")
        with pytest.raises(WriteError):
            await connection.write_eof()

    @pytest.mark.asyncio
    async def test_write_eof(self, loopback):
        connection, peer = loopback
        await connection.write(b"last")
        await connection.write_eof()

        assert await asyncio.wait_for(peer.reader.read(), TIMEOUT) == b"last"

        # Receiving still works after the half-close.
        await peer.send(b"reply")
        assert await asyncio.wait_for(connection.read(1024), TIMEOUT) == b"reply"

    @pytest.mark.asyncio
    async def test_peername(self, loopback):
        connection, _ = loopback
        assert connection.peername[0] == "127.0.0.1"


class TestFileStreams:

    @pytest.mark.asyncio
    async def test_file_input(self, tmp_path):
        path = tmp_path / "input.txt"
        path.write_bytes(b"line one\nline two\n")

        with open(path, "rb") as file:
            local_input = FileInput(file)
            assert await local_input.read(9) == b"line one\n"
            assert await local_input.read(1024) == b"line two\n"
            assert await local_input.read(1024) == b""

    @pytest.mark.asyncio
    async def test_file_output(self, tmp_path):
        path = tmp_path / "output.txt"

        with open(path, "wb") as file:
            local_output = FileOutput(file)
            local_output.write(b"abc")
            local_output.write(b"def")
            await local_output.drain()
            assert path.read_bytes() == b"abcdef"

    @pytest.mark.asyncio
    async def test_regular_files_as_standard_streams(self, tmp_path):
        stdin_path = tmp_path / "stdin"
        stdout_path = tmp_path / "stdout"
        stdin_path.write_bytes(b"from file\n")

        with open(stdin_path, "r") as stdin, open(stdout_path, "w") as stdout:
            local_input, local_output = await connect_stdin_stdout(stdin, stdout)

            assert isinstance(local_input, FileInput)
            assert isinstance(local_output, FileOutput)

            assert await local_input.read(1024) == b"from file\n"
            local_output.write(b"to file\n")
            await local_output.drain()

        assert stdout_path.read_bytes() == b"to file\n"

    @pytest.mark.asyncio
    async def test_standard_streams_resolved_at_call_time(self, tmp_path, monkeypatch):
        stdin_path = tmp_path / "stdin"
        stdout_path = tmp_path / "stdout"
        stdin_path.write_bytes(b"replaced stdin\n")

        with open(stdin_path, "r") as stdin, open(stdout_path, "w") as stdout:
            monkeypatch.setattr(sys, "stdin", stdin)
            monkeypatch.setattr(sys, "stdout", stdout)

            local_input, local_output = await connect_stdin_stdout()

            assert await local_input.read(1024) == b"replaced stdin\n"
            local_output.write(b"replaced stdout\n")
            await local_output.drain()

        assert stdout_path.read_bytes() == b"replaced stdout\n"


class TestPipeStreams:

    @pytest.mark.asyncio
    async def test_pipes_as_standard_streams(self):
        stdin_r, stdin_w = os.pipe()
        stdout_r, stdout_w = os.pipe()
        stdin = os.fdopen(stdin_r, "r")
        stdout = os.fdopen(stdout_w, "w")

        try:
            local_input, local_output = await connect_stdin_stdout(stdin, stdout)

            assert isinstance(local_input, asyncio.StreamReader)
            assert isinstance(local_output, asyncio.StreamWriter)

            os.write(stdin_w, b"typed line\n")
            assert await asyncio.wait_for(local_input.read(1024), TIMEOUT) == b"typed line\n"

            local_output.write(b"printed line\n")
            await asyncio.wait_for(local_output.drain(), TIMEOUT)
            printed = await asyncio.wait_for(asyncio.to_thread(os.read, stdout_r, 1024), TIMEOUT)
            assert printed == b"printed line\n"

            os.close(stdin_w)
            stdin_w = None
            assert await asyncio.wait_for(local_input.read(1024), TIMEOUT) == b""

            local_output.close()
            # Let the pipe transports finish closing their ends.
            await asyncio.sleep(0.01)
        finally:
            if stdin_w is not None:
                os.close(stdin_w)
            os.close(stdout_r)

    @pytest.mark.asyncio
    async def test_relay_through_pipes(self, loopback):
        connection, peer = loopback
        stdin_r, stdin_w = os.pipe()
        stdout_r, stdout_w = os.pipe()
        local_input, local_output = await connect_stdin_stdout(
            os.fdopen(stdin_r, "r"), os.fdopen(stdout_w, "w")
        )
        payload = os.urandom(5000)

        engine = RelayEngine()
        task = asyncio.create_task(engine.run(connection, local_input, local_output))

        try:
            os.write(stdin_w, b"over the pipe\n")
            assert await asyncio.wait_for(peer.reader.readexactly(14), TIMEOUT) == b"over the pipe\n"

            await peer.send(payload)
            await peer.close()
            result = await asyncio.wait_for(task, timeout=TIMEOUT)

            received = bytearray()
            while len(received) < len(payload):
                received += await asyncio.wait_for(
                    asyncio.to_thread(os.read, stdout_r, 65536), TIMEOUT
                )
            assert bytes(received) == payload
            assert result.outcome is RelayOutcome.CONNECTION_CLOSED_BY_PEER

            local_output.close()
            await asyncio.sleep(0.01)
        finally:
            os.close(stdin_w)
            os.close(stdout_r)
