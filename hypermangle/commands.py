"""Default command grammar for the control channel.

Commands run inside the live instance; their output is streamed back to the
invoking terminal through a RemoteClient.

    run [--daemon]   start the service (reports the running instance if any)
    status           show pid, uptime and handled command count
    ping             reply with "pong"
    echo TEXT...     send TEXT back
    kill             stop the running instance
"""

import argparse
import logging
import os
import time
from dataclasses import dataclass, field
from typing import List, NoReturn, Optional

from .errors import CommandParseError
from .ipc import RemoteClient
from .paths import get_program_name

logger = logging.getLogger(__name__)


@dataclass
class ServiceState:
    """Live facts about the running instance, reported by ``status``."""
    program_name: str
    pid: int = field(default_factory=os.getpid)
    started_at: float = field(default_factory=time.time)
    commands_handled: int = 0

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self.started_at


class CommandParser(argparse.ArgumentParser):
    """ArgumentParser that raises CommandParseError instead of exiting.

    Help and usage text is collected and carried by the exception so it can
    be sent to a remote caller rather than printed on the server's stdout.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._output: List[str] = []

    def _print_message(self, message: str, file=None) -> None:
        if message:
            self._output.append(message)

    def exit(self, status: int = 0, message: Optional[str] = None) -> NoReturn:
        text = "".join(self._output) + (message or "")
        self._output.clear()
        raise CommandParseError(text, status=status)

    def error(self, message: str) -> NoReturn:
        raise CommandParseError(
            f"{self.format_usage()}{self.prog}: error: {message}\n",
            status=2,
        )


def build_parser(prog: Optional[str] = None) -> CommandParser:
    """Build the command parser."""
    parser = CommandParser(
        prog=prog or get_program_name(),
        description="Control a running instance from the command line",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    run = subparsers.add_parser("run", help="Start the service")
    run.add_argument(
        "--daemon", "-d",
        action="store_true",
        help="Run as daemon (background process)",
    )

    subparsers.add_parser("status", help="Show the running instance's status")
    subparsers.add_parser("ping", help="Check that the instance responds")

    echo = subparsers.add_parser("echo", help="Send text back from the instance")
    echo.add_argument("text", nargs="+")

    subparsers.add_parser("kill", help="Stop the running instance")

    return parser


def parse_command(argv: List[str]) -> argparse.Namespace:
    """Parse a full argument vector (program name first) into a command.

    Raises:
        CommandParseError: If the arguments do not match the grammar, or
            help was requested.
    """
    prog = get_program_name(argv[0]) if argv else None
    return build_parser(prog).parse_args(list(argv[1:]))


def _format_uptime(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


async def execute_command(
    command: argparse.Namespace,
    client: RemoteClient,
    state: ServiceState,
) -> bool:
    """Run a parsed command inside the live instance.

    Returns:
        True if the service should terminate.
    """
    state.commands_handled += 1
    name = command.command

    if name == "status":
        await client.send(f"{state.program_name} is running (PID: {state.pid})\n")
        await client.send(f"  Uptime: {_format_uptime(state.uptime_seconds)}\n")
        await client.send(f"  Commands handled: {state.commands_handled}\n")
        return False

    if name == "ping":
        await client.send("pong\n")
        return False

    if name == "echo":
        await client.send(" ".join(command.text) + "\n")
        return False

    if name == "run":
        await client.send(f"{state.program_name} is already running (PID: {state.pid})\n")
        return False

    if name == "kill":
        await client.send("Killing...\n")
        return True

    # Grammar and dispatch table out of sync
    raise ValueError(f"Unknown command: {name}")
