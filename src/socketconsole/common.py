class GenericException(Exception):
    def __init__(self, msg: str):
        super().__init__(msg)
        self._msg = msg

    @property
    def message(self) -> str:
        return self._msg


class ConnectError(GenericException):
    """The connection could not be created, accepted or connected."""


class RelayError(GenericException):
    pass


class ReadError(RelayError):
    pass


class WriteError(RelayError):
    pass


class Interrupted(RelayError):
    """A blocking read was released by the session's cancellation token."""


class Constants:

    CHUNK_SIZE = 1024

    DEFAULT_ADDRESS = "127.0.0.1"
    DEFAULT_PORT = 5555

    LISTEN_BACKLOG = 1
