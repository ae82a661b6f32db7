"""hypermangle - local control channel for a singleton background service.

A short-lived command-line invocation talks to the long-running instance over
a Unix domain socket: the instance is unique per program name, arguments are
relayed into it for dispatch, and output is streamed back.
"""

from .client import (
    does_remote_exist,
    forward_args,
    probe_existence,
    send_args_to_remote,
)
from .errors import (
    AlreadyRunningError,
    CommandParseError,
    ConnectionClosedError,
    ControlError,
    ProtocolError,
    ServiceNotRunningError,
)
from .events import (
    Args,
    CloseSocket,
    ControlMessage,
    IdRequest,
    IdResponse,
    MessageType,
    Packet,
)
from .ipc import ControlListener, RemoteClient, listen_for_commands
from .service import ControlService
from .shutdown import ShutdownToken

__version__ = "0.6.1"

__all__ = [
    "AlreadyRunningError",
    "Args",
    "CloseSocket",
    "CommandParseError",
    "ConnectionClosedError",
    "ControlError",
    "ControlListener",
    "ControlMessage",
    "ControlService",
    "IdRequest",
    "IdResponse",
    "MessageType",
    "Packet",
    "ProtocolError",
    "RemoteClient",
    "ServiceNotRunningError",
    "ShutdownToken",
    "does_remote_exist",
    "forward_args",
    "listen_for_commands",
    "probe_existence",
    "send_args_to_remote",
]
