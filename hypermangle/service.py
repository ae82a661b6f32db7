"""Host integration for the control listener.

``ControlService`` ties together the pieces a host needs to run as a
singleton daemon:

1. A ShutdownToken shared by the control listener, signal handlers and the
   host's own serve coroutine.
2. The control listener, dispatching into the command grammar.
3. An orderly shutdown once the token retires: the host's serve coroutine
   returns, pending close notifications are flushed, the socket is removed.
"""

import asyncio
import functools
import logging
import signal
from typing import Awaitable, Callable, Optional

from .commands import ServiceState, execute_command, parse_command
from .config import ControlConfig
from .ipc import ControlListener, ExecuteFn, ParseFn, drain_closes
from .shutdown import ShutdownToken

logger = logging.getLogger(__name__)


HostServeFn = Callable[[ShutdownToken], Awaitable[None]]


class ControlService:
    """Runs the control listener alongside the host's own work."""

    def __init__(
        self,
        config: ControlConfig,
        parse: ParseFn = parse_command,
        execute: Optional[ExecuteFn] = None,
    ):
        """Initialize the service.

        Args:
            config: Resolved configuration.
            parse: Command grammar. Defaults to the built-in commands.
            execute: Command handler. Defaults to the built-in commands bound
                to this service's state.
        """
        self.config = config
        self.state = ServiceState(program_name=config.program_name)
        self.shutdown = ShutdownToken()
        self._parse = parse
        self._execute = execute or functools.partial(execute_command, state=self.state)
        self._listener: Optional[ControlListener] = None

    @property
    def listener(self) -> Optional[ControlListener]:
        return self._listener

    async def run(self, host_serve: Optional[HostServeFn] = None) -> None:
        """Bind, serve until the shutdown token retires, then clean up.

        Args:
            host_serve: The host's own serve coroutine. It receives the
                shutdown token and must return once the token is retired.

        Raises:
            AlreadyRunningError: If another instance owns the socket.
        """
        self._listener = ControlListener(
            socket_path=str(self.config.socket_path),
            parse=self._parse,
            execute=self._execute,
            shutdown=self.shutdown,
            close_timeout=self.config.close_timeout,
            request_timeout=self.config.request_timeout,
        )
        await self._listener.start()

        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.shutdown.retire, f"received {sig.name}")
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Not on the main thread, or unsupported platform
                logger.debug(f"Could not install handler for {sig.name}")

        logger.info(f"{self.config.program_name} started (PID: {self.state.pid})")

        tasks = [asyncio.create_task(self._listener.serve())]
        if host_serve is not None:
            tasks.append(asyncio.create_task(host_serve(self.shutdown)))

        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            for sig in installed:
                loop.remove_signal_handler(sig)
            await drain_closes(timeout=self.config.close_timeout)
            self._listener.close()
            logger.info(f"{self.config.program_name} stopped")

    def stop(self) -> None:
        """Retire the shutdown token."""
        self.shutdown.retire("stop requested")
