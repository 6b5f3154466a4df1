import enum
import contextlib
import asyncio
import logging
import dataclasses
from typing import Awaitable, Callable, Protocol

from socketconsole.logging import get_logger
from socketconsole.common import (
    Constants,
    Interrupted,
    ReadError,
    WriteError,
)

LOGGER = get_logger(__name__)


class Direction(enum.Enum):
    INBOUND = "connection -> local output"
    OUTBOUND = "local input -> connection"


class PumpState(enum.Enum):
    IDLE = enum.auto()
    RUNNING = enum.auto()
    STOPPED = enum.auto()


class EngineState(enum.Enum):
    IDLE = enum.auto()
    RUNNING = enum.auto()
    DRAINING = enum.auto()
    STOPPED = enum.auto()


class PumpExit(enum.Enum):
    END_OF_STREAM = enum.auto()
    READ_ERROR = enum.auto()
    WRITE_ERROR = enum.auto()
    INTERRUPTED = enum.auto()
    FAILED = enum.auto()


class RelayOutcome(enum.Enum):
    COMPLETED = enum.auto()
    CONNECTION_CLOSED_BY_PEER = enum.auto()
    LOCAL_INPUT_CLOSED = enum.auto()
    ERROR = enum.auto()


@dataclasses.dataclass(frozen=True, slots=True)
class Termination:
    reason: PumpExit
    # None when the stop came from outside the session.
    direction: Direction | None = None
    error: Exception | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class RelayResult:
    outcome: RelayOutcome
    error: Exception | None = None
    bytes_received: int = 0
    bytes_sent: int = 0


class LocalInput(Protocol):
    async def read(self, n: int) -> bytes:
        ...


class LocalOutput(Protocol):
    def write(self, data: bytes) -> None:
        ...

    async def drain(self) -> None:
        ...


class Connection(Protocol):
    async def read(self, max_bytes: int) -> bytes:
        ...

    async def write(self, data: bytes) -> None:
        ...

    async def write_eof(self) -> None:
        ...


class CancellationCoordinator:
    """Shared stop signal of one relay session.

    The first `signal` call decides the session's termination cause, every
    later call only re-sets the already set token. All state lives on the
    event loop thread; other threads go through `RelayEngine.interrupt_threadsafe`.
    """

    def __init__(self):
        self._token = asyncio.Event()
        self._cause: Termination | None = None
        self._running: dict[Direction, bool] = {
            direction: False for direction in Direction
        }

    @property
    def cancelled(self) -> bool:
        return self._token.is_set()

    @property
    def cause(self) -> Termination | None:
        return self._cause

    def is_running(self, direction: Direction) -> bool:
        return self._running[direction]

    def mark_running(self, direction: Direction, running: bool):
        self._running[direction] = running

    def signal(self, termination: Termination) -> bool:
        """Asks every pump of the session to stop.

        Returns
        -------
        bool
            True if this call decided the termination cause, False if the
            session was already cancelled.
        """

        if self._cause is not None:
            return False
        self._cause = termination
        self._token.set()
        return True

    def interrupt(self) -> bool:
        """Entry point for an external stop request such as SIGINT."""

        # Pumps that have not started yet find the token set on their first read.
        return self.signal(Termination(PumpExit.INTERRUPTED))

    async def interruptible(self, read: Callable[[], Awaitable[bytes]]) -> bytes:
        """Runs `read` until it completes or the token is set.

        Data returned by a read that finished before the token was observed is
        handed back, so nothing that was already consumed gets lost.

        Raises
        ------
        Interrupted
            If the token was set before or during the read.
        """

        if self._token.is_set():
            raise Interrupted("Session cancelled before read.")

        read_task = asyncio.ensure_future(read())
        cancel_task = asyncio.create_task(self._token.wait())
        try:
            done, _ = await asyncio.wait(
                {read_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            read_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if read_task in done:
            return read_task.result()

        read_task.cancel()
        await asyncio.wait({read_task})
        if not read_task.cancelled():
            return read_task.result()
        raise Interrupted("Read interrupted by cancellation.")


class Pump:
    """Moves chunks from one side of the session to the other."""

    direction: Direction

    def __init__(
        self,
        coordinator: CancellationCoordinator,
        *,
        chunk_size: int = Constants.CHUNK_SIZE,
        logger: logging.Logger = LOGGER,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive.")
        self._coordinator = coordinator
        self._chunk_size = chunk_size
        self._logger = logger

        self.state = PumpState.IDLE
        self.exit: Termination | None = None
        self.bytes_relayed = 0

    async def _read(self, max_bytes: int) -> bytes:
        raise NotImplementedError

    async def _write(self, data: bytes):
        raise NotImplementedError

    async def _stop(self, termination: Termination):
        self._coordinator.signal(termination)

    async def _relay(self) -> Termination:
        while True:
            try:
                data = await self._coordinator.interruptible(
                    lambda: self._read(self._chunk_size)
                )
            except Interrupted:
                return Termination(PumpExit.INTERRUPTED, self.direction)
            except ReadError as e:
                return Termination(PumpExit.READ_ERROR, self.direction, e)

            if not data:
                return Termination(PumpExit.END_OF_STREAM, self.direction)

            try:
                await self._write(data)
            except WriteError as e:
                return Termination(PumpExit.WRITE_ERROR, self.direction, e)

            self.bytes_relayed += len(data)

    async def run(self) -> Termination:
        self.state = PumpState.RUNNING
        self._coordinator.mark_running(self.direction, True)
        self._logger.debug("Relaying %s.", self.direction.value)

        try:
            try:
                termination = await self._relay()
            except Exception as e:
                self._logger.exception("Pump %s failed.", self.direction.value)
                termination = Termination(PumpExit.FAILED, self.direction, e)

            self._logger.debug(
                "Stopped relaying %s: %s after %d bytes.",
                self.direction.value,
                termination.reason.name,
                self.bytes_relayed,
            )
            self.exit = termination
            await self._stop(termination)
        finally:
            self._coordinator.mark_running(self.direction, False)
            self.state = PumpState.STOPPED
        return termination


class InputPump(Pump):
    direction = Direction.OUTBOUND

    def __init__(
        self,
        coordinator: CancellationCoordinator,
        local_input: LocalInput,
        connection: Connection,
        *,
        half_close: bool = False,
        **kwargs,
    ):
        super().__init__(coordinator, **kwargs)
        self._local_input = local_input
        self._connection = connection
        self._half_close = half_close

    async def _read(self, max_bytes: int) -> bytes:
        try:
            return await self._local_input.read(max_bytes)
        except OSError as e:
            raise ReadError(f"Failed to read local input. {e}") from e

    async def _write(self, data: bytes):
        await self._connection.write(data)

    async def _stop(self, termination: Termination):
        if not self._half_close or termination.reason is not PumpExit.END_OF_STREAM:
            await super()._stop(termination)
            return

        # Let the peer see our EOF and keep receiving until it closes.
        try:
            await self._connection.write_eof()
        except WriteError as e:
            self._logger.warning("Could not half-close connection. %s", e.message)
            self._coordinator.signal(
                Termination(PumpExit.WRITE_ERROR, self.direction, e)
            )


class OutputPump(Pump):
    direction = Direction.INBOUND

    def __init__(
        self,
        coordinator: CancellationCoordinator,
        connection: Connection,
        local_output: LocalOutput,
        **kwargs,
    ):
        super().__init__(coordinator, **kwargs)
        self._connection = connection
        self._local_output = local_output

    async def _read(self, max_bytes: int) -> bytes:
        return await self._connection.read(max_bytes)

    async def _write(self, data: bytes):
        try:
            self._local_output.write(data)
            await self._local_output.drain()
        except OSError as e:
            raise WriteError(f"Failed to write local output. {e}") from e


def _outcome(
    cause: Termination | None, input_exit: Termination | None
) -> RelayOutcome:
    if cause is None or cause.reason is PumpExit.INTERRUPTED:
        return RelayOutcome.COMPLETED

    if cause.reason is PumpExit.END_OF_STREAM:
        if cause.direction is Direction.OUTBOUND:
            return RelayOutcome.LOCAL_INPUT_CLOSED
        if input_exit is not None and input_exit.reason is PumpExit.END_OF_STREAM:
            # Half-closed session where both sides finished.
            return RelayOutcome.COMPLETED
        return RelayOutcome.CONNECTION_CLOSED_BY_PEER

    return RelayOutcome.ERROR


class RelaySession:
    """One connection, its two pumps and their coordinator."""

    def __init__(
        self,
        connection: Connection,
        local_input: LocalInput,
        local_output: LocalOutput,
        *,
        chunk_size: int,
        half_close: bool,
        logger: logging.Logger,
    ):
        self._logger = logger
        self.state = EngineState.IDLE
        self.coordinator = CancellationCoordinator()
        self.input_pump = InputPump(
            self.coordinator,
            local_input,
            connection,
            half_close=half_close,
            chunk_size=chunk_size,
            logger=logger,
        )
        self.output_pump = OutputPump(
            self.coordinator,
            connection,
            local_output,
            chunk_size=chunk_size,
            logger=logger,
        )

    def _set_state(self, state: EngineState):
        self._logger.debug("Relay session %s -> %s.", self.state.name, state.name)
        self.state = state

    async def run(self) -> RelayResult:
        assert self.state is EngineState.IDLE

        tasks = [
            asyncio.create_task(self.input_pump.run(), name="input-pump"),
            asyncio.create_task(self.output_pump.run(), name="output-pump"),
        ]
        self._set_state(EngineState.RUNNING)

        try:
            _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            self._set_state(EngineState.DRAINING)
            if pending:
                await asyncio.wait(pending)
        except asyncio.CancelledError:
            self._logger.debug("Relay session cancelled by caller.")
            for task in tasks:
                task.cancel()
            await asyncio.wait(tasks)
            raise
        finally:
            self._set_state(EngineState.STOPPED)

        cause = self.coordinator.cause
        outcome = _outcome(cause, self.input_pump.exit)
        return RelayResult(
            outcome=outcome,
            error=cause.error if outcome is RelayOutcome.ERROR else None,
            bytes_received=self.output_pump.bytes_relayed,
            bytes_sent=self.input_pump.bytes_relayed,
        )


class RelayEngine:
    """Bridges local input and output with a connected byte stream.

    Parameters
    ----------
    chunk_size : int
        Largest number of bytes moved by a single read.
    half_close : bool
        If True, end of local input only shuts down the sending side of the
        connection and the session keeps receiving until the peer closes.
        Otherwise end of local input stops the whole session.
    logger : logging.Logger, optional
        Destination of diagnostic messages, handed to both pumps.
    """

    def __init__(
        self,
        *,
        chunk_size: int = Constants.CHUNK_SIZE,
        half_close: bool = False,
        logger: logging.Logger | None = None,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive.")
        self._chunk_size = chunk_size
        self._half_close = half_close
        self._logger = logger if logger is not None else LOGGER

        self._session: RelaySession | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._state = EngineState.IDLE

    @property
    def state(self) -> EngineState:
        if self._session is not None:
            return self._session.state
        return self._state

    @property
    def active(self) -> bool:
        return self._session is not None

    async def run(
        self,
        connection: Connection,
        local_input: LocalInput,
        local_output: LocalOutput,
    ) -> RelayResult:
        """Relays until both directions have stopped.

        The connection is borrowed, it is neither opened nor closed here.
        """

        if self._session is not None:
            raise RuntimeError("A relay session is already running.")

        session = RelaySession(
            connection,
            local_input,
            local_output,
            chunk_size=self._chunk_size,
            half_close=self._half_close,
            logger=self._logger,
        )
        self._session = session
        self._loop = asyncio.get_running_loop()
        try:
            result = await session.run()
        finally:
            self._state = session.state
            self._session = None
            self._loop = None

        self._logger.info(
            "Relay finished: %s (%d bytes received, %d bytes sent).",
            result.outcome.name,
            result.bytes_received,
            result.bytes_sent,
        )
        return result

    def interrupt(self):
        """Stops the running session. Does nothing when no session runs."""

        session = self._session
        if session is None:
            self._logger.debug("Interrupt ignored, no relay session is running.")
            return
        running = [
            direction.value
            for direction in Direction
            if session.coordinator.is_running(direction)
        ]
        if session.coordinator.interrupt():
            self._logger.info(
                "Relay interrupted, stopping %s.",
                ", ".join(running) if running else "pumps before they start",
            )

    def interrupt_threadsafe(self):
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        # The loop may close between the check above and this call.
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(self.interrupt)
