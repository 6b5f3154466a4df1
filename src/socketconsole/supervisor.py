import tap
import enum
import signal
import asyncio
import logging
from typing import Awaitable, Callable

from socketconsole.logging import get_logger
from socketconsole.common import Constants, ConnectError
from socketconsole.streams import DuplexConnection, connect_stdin_stdout
from socketconsole.relay import (
    LocalInput,
    LocalOutput,
    RelayEngine,
    RelayOutcome,
    RelayResult,
)

LOGGER = get_logger(__name__)


class ConsoleArgs(tap.Tap):

    address: str = Constants.DEFAULT_ADDRESS
    """Address to listen on, or to connect to."""

    port: int = Constants.DEFAULT_PORT
    """Port to listen on, or to connect to."""

    debug: bool = False
    """Print diagnostic messages to stderr."""

    half_close: bool = False
    """On end of local input, only shut down the sending side and keep receiving
    until the peer closes."""

    chunk_size: int = Constants.CHUNK_SIZE
    """Largest number of bytes moved by a single read."""


class Mode(enum.Enum):
    LISTEN = "listen"
    CONNECT = "connect"


class ExitCode(enum.IntEnum):
    OK = 0
    CONNECT_FAILED = 1
    RELAY_FAILED = 2
    INTERRUPTED = 130


def exit_code_for(result: RelayResult) -> ExitCode:
    if result.outcome is RelayOutcome.ERROR:
        return ExitCode.RELAY_FAILED
    return ExitCode.OK


async def open_connection(address: str, port: int) -> DuplexConnection:
    LOGGER.debug("Connecting to %s:%d.", address, port)
    try:
        reader, writer = await asyncio.open_connection(address, port)
    except OSError as e:
        raise ConnectError(f"Failed to connect to {address}:{port}. {e}") from e
    LOGGER.info("Connected to %s:%d.", address, port)
    return DuplexConnection(reader, writer)


async def accept_connection(
    address: str,
    port: int,
    *,
    on_listening: Callable[[tuple], None] | None = None,
) -> DuplexConnection:
    """Listens on `address`:`port` and returns the first peer that connects.

    The listening socket is closed as soon as a peer has been accepted; peers
    that race in before that are turned away.
    """

    loop = asyncio.get_running_loop()
    accepted: asyncio.Future[DuplexConnection] = loop.create_future()

    def new_connection_callback(
        reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ):
        if accepted.done():
            LOGGER.warning(
                "Rejecting connection from %s, a peer is already connected.",
                writer.get_extra_info("peername"),
            )
            writer.close()
            return
        accepted.set_result(DuplexConnection(reader, writer))

    try:
        server = await asyncio.start_server(
            new_connection_callback,
            address,
            port,
            backlog=Constants.LISTEN_BACKLOG,
        )
    except OSError as e:
        raise ConnectError(f"Failed to listen on {address}:{port}. {e}") from e

    try:
        sockname = server.sockets[0].getsockname()
        LOGGER.info("Listening on %s:%d.", sockname[0], sockname[1])
        if on_listening is not None:
            on_listening(sockname)

        connection = await accepted
    finally:
        # Stops accepting; already accepted connections stay open.
        server.close()

    LOGGER.info("Accepted connection from %s.", connection.peername)
    return connection


class ProcessSupervisor:
    """Obtains one connection, relays it with the local streams and reports
    how the process should exit."""

    def __init__(
        self,
        mode: Mode,
        address: str = Constants.DEFAULT_ADDRESS,
        port: int = Constants.DEFAULT_PORT,
        *,
        half_close: bool = False,
        chunk_size: int = Constants.CHUNK_SIZE,
        local_streams: Callable[
            [], Awaitable[tuple[LocalInput, LocalOutput]]
        ] = connect_stdin_stdout,
        handle_signals: bool = True,
        on_listening: Callable[[tuple], None] | None = None,
        logger: logging.Logger | None = None,
    ):
        self._mode = mode
        self._address = address
        self._port = port
        self._local_streams = local_streams
        self._handle_signals = handle_signals
        self._on_listening = on_listening
        self._logger = logger if logger is not None else LOGGER

        self.engine = RelayEngine(
            chunk_size=chunk_size, half_close=half_close, logger=self._logger
        )

        self._establishing: asyncio.Task[DuplexConnection] | None = None
        self._interrupted = False

    def interrupt(self):
        """Handles a user stop request. Repeated requests have no further effect."""

        if self.engine.active:
            self.engine.interrupt()
            return

        if not self._interrupted:
            self._logger.info("Interrupted before the relay started.")
        self._interrupted = True
        if self._establishing is not None and not self._establishing.done():
            self._establishing.cancel()

    def _install_interrupt_handler(self, loop: asyncio.AbstractEventLoop):
        try:
            loop.add_signal_handler(signal.SIGINT, self.interrupt)
        except NotImplementedError:
            signal.signal(
                signal.SIGINT,
                lambda signum, frame: loop.call_soon_threadsafe(self.interrupt),
            )

    def _remove_interrupt_handler(self, loop: asyncio.AbstractEventLoop):
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            signal.signal(signal.SIGINT, signal.default_int_handler)

    async def _establish(self) -> DuplexConnection:
        if self._mode is Mode.LISTEN:
            return await accept_connection(
                self._address, self._port, on_listening=self._on_listening
            )
        return await open_connection(self._address, self._port)

    async def _relay(self, connection: DuplexConnection) -> ExitCode:
        try:
            local_input, local_output = await self._local_streams()
        except (OSError, AttributeError) as e:
            # e.g. fd 0 closed at startup leaves sys.stdin as None.
            self._logger.error("Failed to attach local streams. %s", e)
            return ExitCode.RELAY_FAILED

        # A stop request may have arrived while the streams were attached.
        if self._interrupted:
            return ExitCode.INTERRUPTED

        result = await self.engine.run(connection, local_input, local_output)
        if result.error is not None:
            self._logger.error("Relay failed. %s", result.error)
        return exit_code_for(result)

    async def _run(self) -> ExitCode:
        if self._interrupted:
            return ExitCode.INTERRUPTED

        self._establishing = asyncio.create_task(self._establish())
        try:
            connection = await self._establishing
        except ConnectError as e:
            self._logger.error(e.message)
            return ExitCode.CONNECT_FAILED
        except asyncio.CancelledError:
            if not self._interrupted:
                raise
            return ExitCode.INTERRUPTED
        finally:
            self._establishing = None

        try:
            return await self._relay(connection)
        finally:
            try:
                await connection.close()
            except OSError as e:
                self._logger.warning("Error while closing connection. %s", e)

    async def run(self) -> ExitCode:
        loop = asyncio.get_running_loop()
        if self._handle_signals:
            self._install_interrupt_handler(loop)
        try:
            return await self._run()
        finally:
            if self._handle_signals:
                self._remove_interrupt_handler(loop)
