"""Error types for the hypermangle control channel."""

from typing import Optional


class ControlError(Exception):
    """Base class for control channel failures."""


class ProtocolError(ControlError):
    """A frame or message did not match the wire protocol."""


class ConnectionClosedError(ControlError):
    """The peer closed the connection before a full frame arrived."""


class ServiceNotRunningError(ControlError):
    """No instance is listening on the control socket."""


class CommandParseError(ControlError):
    """The argument vector could not be parsed into a command.

    ``status`` is the exit code a local invocation should use: 0 when help
    was requested, 2 for a usage error.
    """

    def __init__(self, message: str, status: int = 2):
        self.status = status
        super().__init__(message)


class AlreadyRunningError(ControlError):
    """Another live instance already owns the control socket."""

    def __init__(self, socket_path: str, pid: Optional[int] = None):
        self.socket_path = socket_path
        self.pid = pid
        if pid is not None:
            message = f"Another instance is already running (PID: {pid}) on {socket_path}"
        else:
            message = f"Another instance is already listening on {socket_path}"
        super().__init__(message)
