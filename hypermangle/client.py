"""Command-line side of the control channel.

Two operations:

- ``probe_existence()`` asks whether an instance is already listening and
  returns its process id.
- ``forward_args()`` relays an argument vector into the running instance and
  copies the streamed output to a local stream until the server signals the
  end of the command.

Usage:
    from hypermangle.client import does_remote_exist, send_args_to_remote

    if does_remote_exist() is not None:
        sys.exit(send_args_to_remote())
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, TextIO, Tuple, Union

from rich.console import Console
from rich.markup import escape

from .errors import ConnectionClosedError, ControlError, ProtocolError, ServiceNotRunningError
from .events import Args, CloseSocket, IdRequest, IdResponse, Packet
from .framing import read_frame, write_frame
from .paths import get_socket_path


logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 5.0

PathLike = Union[str, Path]


async def _open(
    socket_path: PathLike,
    timeout: float,
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    return await asyncio.wait_for(
        asyncio.open_unix_connection(str(socket_path)),
        timeout=timeout,
    )


async def _disconnect(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass


async def probe_existence(
    socket_path: Optional[PathLike] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Optional[int]:
    """Check whether an instance is listening on the control socket.

    Args:
        socket_path: Control socket path. Defaults to the derived path.
        timeout: Seconds allowed for connecting and for the answer.

    Returns:
        The process id of the running instance, or None if nothing is
        listening (no socket file, connection refused, or the instance
        closed the connection before answering because it is shutting down).

    Raises:
        ProtocolError: If the peer answered with something other than
            IdResponse.
        ControlError: If the socket cannot be connected to for a reason
            other than absence, or the peer accepted the connection but did
            not answer within the timeout.
    """
    path = socket_path or get_socket_path()

    try:
        reader, writer = await _open(path, timeout)
    except (FileNotFoundError, ConnectionRefusedError, NotADirectoryError):
        logger.debug(f"No instance listening on {path}")
        return None
    except asyncio.TimeoutError as e:
        raise ControlError(f"Timed out connecting to {path}") from e
    except OSError as e:
        # e.g. PermissionError on a socket owned by another user
        raise ControlError(f"Could not connect to {path}: {e}") from e

    try:
        await write_frame(writer, IdRequest())
        response = await asyncio.wait_for(read_frame(reader), timeout=timeout)
    except (ConnectionClosedError, ConnectionResetError, BrokenPipeError):
        logger.debug(f"Instance on {path} closed the connection before answering")
        return None
    except asyncio.TimeoutError as e:
        raise ControlError(f"Instance on {path} did not answer within {timeout}s") from e
    except OSError as e:
        raise ControlError(f"Transport error while probing {path}: {e}") from e
    finally:
        await _disconnect(writer)

    if not isinstance(response, IdResponse):
        raise ProtocolError(
            f"Expected id.response from {path}, got {response.type.value}"
        )
    return response.pid


async def forward_args(
    argv: List[str],
    socket_path: Optional[PathLike] = None,
    stream: Optional[TextIO] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> None:
    """Send an argument vector to the running instance and stream its output.

    Packet text is written to ``stream`` verbatim. Returns once the server
    sends CloseSocket.

    Args:
        argv: Full argument vector, program name included.
        socket_path: Control socket path. Defaults to the derived path.
        stream: Destination for output. Defaults to sys.stdout.
        timeout: Seconds allowed for connecting.

    Raises:
        ServiceNotRunningError: If the connection cannot be made.
        ConnectionClosedError: If the server went away before CloseSocket.
        ProtocolError: On a malformed or unexpected frame.
    """
    path = socket_path or get_socket_path()
    out = stream if stream is not None else sys.stdout

    try:
        reader, writer = await _open(path, timeout)
    except (OSError, asyncio.TimeoutError) as e:
        raise ServiceNotRunningError(f"Could not connect to {path}: {e}") from e

    try:
        await write_frame(writer, Args(args=tuple(argv)))
        while True:
            message = await read_frame(reader)
            if isinstance(message, Packet):
                out.write(message.text)
                out.flush()
            elif isinstance(message, CloseSocket):
                logger.debug("Server closed the command stream")
                return
            else:
                raise ProtocolError(f"Unexpected {message.type.value} from server")
    except (ConnectionError, OSError) as e:
        raise ConnectionClosedError(f"Connection to {path} failed: {e}") from e
    finally:
        await _disconnect(writer)


def does_remote_exist(
    socket_path: Optional[PathLike] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Optional[int]:
    """Blocking wrapper around probe_existence()."""
    return asyncio.run(probe_existence(socket_path, timeout=timeout))


def send_args_to_remote(
    argv: Optional[List[str]] = None,
    socket_path: Optional[PathLike] = None,
    stream: Optional[TextIO] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> int:
    """Blocking wrapper around forward_args().

    Returns:
        Process exit code: 0 after a clean end of stream, 1 on failure.
    """
    if argv is None:
        argv = list(sys.argv)
    try:
        asyncio.run(forward_args(argv, socket_path, stream=stream, timeout=timeout))
    except ControlError as e:
        Console(stderr=True).print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        return 1
    return 0
