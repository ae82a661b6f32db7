"""Control listener using a Unix domain socket.

The listener is the single command entry point of a running instance:

- Binding the socket is what makes a process "the" running instance; a
  second process fails to bind while the first is alive.
- Connections are accepted one at a time. Each carries exactly one request
  frame, and only one command handler runs at any moment. Further clients
  wait in the kernel's accept backlog.
- A handler that returns True retires the shutdown token, which stops the
  accept loop and hands control back to the host.

Stale sockets:
    A crashed instance leaves its socket file behind. The next instance
    removes it at its own bind time, after confirming that nothing answers
    on it. Between that removal and the new bind, a concurrent probe sees
    no socket and reports that no service is running, even though one is
    about to start.

Usage:
    from hypermangle.ipc import ControlListener

    listener = ControlListener(socket_path, parse, execute, shutdown)
    await listener.start()
    await listener.serve()

"""

import asyncio
import contextlib
import errno
import logging
import os
import socket
import stat
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Set

from .client import probe_existence
from .errors import AlreadyRunningError, ControlError, ProtocolError
from .events import Args, CloseSocket, IdRequest, IdResponse, Packet
from .framing import read_frame, write_frame
from .paths import get_socket_path
from .shutdown import ShutdownToken


logger = logging.getLogger(__name__)


DEFAULT_CLOSE_TIMEOUT = 2.0
DEFAULT_REQUEST_TIMEOUT = 5.0
ACCEPT_BACKLOG = 16

ParseFn = Callable[[List[str]], Any]
ExecuteFn = Callable[[Any, "RemoteClient"], Awaitable[bool]]


# Close notifications run detached from the handler that owned the client.
# Strong references keep the tasks alive until they finish.
_pending_closes: Set[asyncio.Task] = set()


def pending_close_count() -> int:
    """Number of close notifications still in flight."""
    return len(_pending_closes)


async def drain_closes(timeout: Optional[float] = None) -> None:
    """Wait for in-flight close notifications to finish."""
    if not _pending_closes:
        return
    done, pending = await asyncio.wait(set(_pending_closes), timeout=timeout)
    if pending:
        logger.warning(f"{len(pending)} close notification(s) still pending at shutdown")


async def _close_writer(writer: asyncio.StreamWriter, timeout: float) -> None:
    writer.close()
    try:
        await asyncio.wait_for(writer.wait_closed(), timeout=timeout)
    except (asyncio.TimeoutError, ConnectionError, OSError) as e:
        logger.debug(f"wait_closed failed: {e}")


class RemoteClient:
    """Output handle for one dispatched command.

    Owns its connection for the duration of the handler call. ``send()``
    streams ``Packet`` frames; ``close()`` schedules the terminal
    ``CloseSocket`` frame as a detached task, exactly once.

    Delivery failures (client gone, broken pipe) are logged and never raised
    to the handler.
    """

    def __init__(
        self,
        writer: asyncio.StreamWriter,
        client_id: str,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT,
    ):
        self._writer = writer
        self.client_id = client_id
        self._close_timeout = close_timeout
        self._closed = False
        self._broken = False
        self._shutdown_requested = False
        self.packets_sent = 0

    @property
    def closed(self) -> bool:
        """True once close() has been called."""
        return self._closed

    @property
    def connected(self) -> bool:
        """False once a write has failed or the client has been closed."""
        return not (self._closed or self._broken)

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def request_shutdown(self) -> None:
        """Mark that the service should terminate after this command.

        Honoured even if the handler fails afterwards.
        """
        self._shutdown_requested = True

    async def send(self, text: str) -> bool:
        """Send one chunk of output to the client.

        Returns:
            True if the frame was written, False if it was dropped.
        """
        if self._closed:
            logger.warning(f"send() on closed client {self.client_id} dropped")
            return False
        if self._broken:
            return False
        try:
            await write_frame(self._writer, Packet(text=text))
        except ProtocolError as e:
            # Unencodable text; the connection itself is still usable
            logger.warning(f"Dropped packet for {self.client_id}: {e}")
            return False
        except (ConnectionError, OSError) as e:
            self._broken = True
            logger.warning(f"Send error to {self.client_id}: {e}")
            return False
        self.packets_sent += 1
        return True

    # Handlers written against a file-like writer call write()
    write = send

    def close(self) -> None:
        """Schedule the terminal CloseSocket frame and release the connection.

        Idempotent. Returns immediately; the write happens in a detached task
        whose failure is logged and never propagated.
        """
        if self._closed:
            return
        self._closed = True
        task = asyncio.get_running_loop().create_task(
            self._send_close(self._writer, self._broken, self.client_id, self._close_timeout)
        )
        _pending_closes.add(task)
        task.add_done_callback(_pending_closes.discard)

    @staticmethod
    async def _send_close(
        writer: asyncio.StreamWriter,
        broken: bool,
        client_id: str,
        timeout: float,
    ) -> None:
        try:
            if not broken:
                await asyncio.wait_for(write_frame(writer, CloseSocket()), timeout=timeout)
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            logger.warning(f"Close notification to {client_id} failed: {e}")
        finally:
            await _close_writer(writer, timeout)
        logger.debug(f"Client {client_id} closed")

    async def __aenter__(self) -> "RemoteClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class ControlListener:
    """Serial accept loop on the control socket.

    Protocol:
    - Each connection carries exactly one request frame.
    - ``IdRequest`` is answered with ``IdResponse(os.getpid())``.
    - ``Args`` is parsed and dispatched to the handler with a RemoteClient;
      the connection always ends with ``CloseSocket``.
    - Anything else is logged and the connection is dropped.
    """

    def __init__(
        self,
        socket_path: str,
        parse: ParseFn,
        execute: ExecuteFn,
        shutdown: ShutdownToken,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        """Initialize the listener.

        Args:
            socket_path: Path to the Unix domain socket.
            parse: Turns an argument vector into a command. Any exception it
                raises is reported to the caller as a parse failure.
            execute: Coroutine called with (command, client). Returns True to
                terminate the service.
            shutdown: Token observed by the accept loop.
            close_timeout: Seconds allowed for the CloseSocket write.
            request_timeout: Seconds allowed for a client to send its request.
        """
        self.socket_path = str(socket_path)
        self._parse = parse
        self._execute = execute
        self._shutdown = shutdown
        self._close_timeout = close_timeout
        self._request_timeout = request_timeout

        self._sock: Optional[socket.socket] = None
        self._socket_inode: Optional[int] = None
        self._connection_counter = 0

    @property
    def is_running(self) -> bool:
        """Check if the listener is bound and accepting."""
        return self._sock is not None and not self._shutdown.retired

    @property
    def connections_handled(self) -> int:
        return self._connection_counter

    async def start(self) -> None:
        """Bind the control socket.

        Raises:
            AlreadyRunningError: If a live instance answers on the socket.
            ControlError: If the path is occupied by something that is not
                a socket.
        """
        socket_file = Path(self.socket_path)
        await self._remove_stale_socket(socket_file)

        socket_file.parent.mkdir(parents=True, exist_ok=True)

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(self.socket_path)
        except OSError as e:
            sock.close()
            if e.errno == errno.EADDRINUSE:
                raise AlreadyRunningError(self.socket_path) from e
            raise ControlError(f"Could not bind {self.socket_path}: {e}") from e
        # Owner read/write only
        os.chmod(self.socket_path, 0o600)
        sock.listen(ACCEPT_BACKLOG)
        sock.setblocking(False)

        self._sock = sock
        self._socket_inode = os.stat(self.socket_path).st_ino
        logger.info(f"Control listener bound on {self.socket_path}")

    async def _remove_stale_socket(self, socket_file: Path) -> None:
        try:
            mode = socket_file.lstat().st_mode
        except FileNotFoundError:
            return
        if not stat.S_ISSOCK(mode):
            raise ControlError(f"{self.socket_path} exists and is not a socket")

        try:
            pid = await probe_existence(self.socket_path, timeout=self._request_timeout)
        except ControlError as e:
            # Something accepted the connection but did not answer properly
            raise AlreadyRunningError(self.socket_path) from e
        if pid is not None:
            raise AlreadyRunningError(self.socket_path, pid)

        logger.info(f"Removing stale control socket {self.socket_path}")
        with contextlib.suppress(FileNotFoundError):
            socket_file.unlink()

    async def serve(self) -> None:
        """Accept and dispatch connections until the shutdown token retires."""
        if self._sock is None:
            await self.start()

        loop = asyncio.get_running_loop()
        shutdown_task = asyncio.ensure_future(self._shutdown.wait())
        accept_task: Optional[asyncio.Future] = None
        try:
            while not self._shutdown.retired:
                accept_task = asyncio.ensure_future(loop.sock_accept(self._sock))
                await asyncio.wait(
                    {accept_task, shutdown_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if self._shutdown.retired:
                    break

                try:
                    conn, _ = accept_task.result()
                except OSError as e:
                    logger.error(f"Error while accepting a control connection: {e}")
                    continue
                finally:
                    accept_task = None

                try:
                    terminate = await self._handle_connection(conn)
                except Exception:
                    logger.exception("Unhandled error while serving a control connection")
                    continue

                if terminate:
                    self._shutdown.retire("terminate command received")
        finally:
            if accept_task is not None:
                if accept_task.done() and not accept_task.cancelled() and accept_task.exception() is None:
                    # Accepted in the same turn the token retired
                    accept_task.result()[0].close()
                else:
                    accept_task.cancel()
            shutdown_task.cancel()
            self.close()
            # Each close notification may spend close_timeout on the write and
            # again on the transport close
            await drain_closes(timeout=2 * self._close_timeout)

        logger.info("Control listener stopped")

    def close(self) -> None:
        """Close the listening socket and remove the socket file if it is ours."""
        if self._sock is None:
            return
        self._sock.close()
        self._sock = None

        try:
            if os.stat(self.socket_path).st_ino == self._socket_inode:
                os.unlink(self.socket_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove control socket {self.socket_path}: {e}")

    async def _handle_connection(self, conn: socket.socket) -> bool:
        """Serve exactly one request on an accepted connection.

        Returns:
            True if the dispatched command asked the service to terminate.
        """
        self._connection_counter += 1
        client_id = f"ctl_{self._connection_counter}"

        try:
            reader, writer = await asyncio.open_unix_connection(sock=conn)
        except OSError as e:
            conn.close()
            logger.error(f"Could not open streams for {client_id}: {e}")
            return False

        # Until dispatch takes over the writer, every exit path closes it here
        dispatched = False
        try:
            try:
                message = await asyncio.wait_for(read_frame(reader), timeout=self._request_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"{client_id} sent no request within {self._request_timeout}s")
                return False
            except (ControlError, ConnectionError, OSError) as e:
                logger.warning(f"Bad request from {client_id}: {e}")
                return False

            if isinstance(message, IdRequest):
                try:
                    await write_frame(writer, IdResponse(pid=os.getpid()))
                except (ConnectionError, OSError) as e:
                    logger.warning(f"Could not answer IdRequest from {client_id}: {e}")
                return False

            if not isinstance(message, Args):
                logger.warning(
                    f"Protocol violation from {client_id}: unexpected {message.type.value} request"
                )
                return False

            dispatched = True
            return await self._dispatch(client_id, list(message.args), writer)
        finally:
            if not dispatched:
                await _close_writer(writer, self._close_timeout)

    async def _dispatch(
        self,
        client_id: str,
        argv: List[str],
        writer: asyncio.StreamWriter,
    ) -> bool:
        logger.info(f"{client_id} requested: {argv[1:]}")

        try:
            command = self._parse(argv)
        except Exception as e:
            logger.info(f"{client_id} sent unparseable arguments: {e}")
            try:
                await write_frame(writer, Packet(text=str(e)))
            except (ProtocolError, ConnectionError, OSError) as write_error:
                logger.warning(f"Could not report parse error to {client_id}: {write_error}")
            await _close_writer(writer, self._close_timeout)
            return False

        client = RemoteClient(writer, client_id, close_timeout=self._close_timeout)
        result: Any = False
        try:
            result = await self._execute(command, client)
        except ProtocolError as e:
            logger.warning(f"Protocol error while handling {client_id}: {e}")
            await client.send(f"protocol error: {e}\n")
        except Exception as e:
            logger.exception(f"Command handler failed for {client_id}")
            await client.send(f"error: {e}\n")
        finally:
            client.close()

        if result is not True and result is not False:
            logger.warning(
                f"Command handler for {client_id} returned {type(result).__name__}, expected bool"
            )
        return result is True or client.shutdown_requested


async def listen_for_commands(
    shutdown: ShutdownToken,
    parse: ParseFn,
    execute: ExecuteFn,
    socket_path: Optional[str] = None,
    close_timeout: float = DEFAULT_CLOSE_TIMEOUT,
) -> None:
    """Bind the control socket and serve commands until shutdown retires.

    Args:
        shutdown: Token whose retirement stops the accept loop.
        parse: Turns an argument vector into a command.
        execute: Coroutine called with (command, client); True terminates.
        socket_path: Control socket path. Defaults to the derived path.
        close_timeout: Seconds allowed for each CloseSocket write.
    """
    listener = ControlListener(
        socket_path=str(socket_path or get_socket_path()),
        parse=parse,
        execute=execute,
        shutdown=shutdown,
        close_timeout=close_timeout,
    )
    await listener.start()
    await listener.serve()
