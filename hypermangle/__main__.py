#!/usr/bin/env python3
"""hypermangle - singleton daemon controlled from the command line.

The same executable is both the service and its remote control. Every
invocation first probes the control socket:

- If an instance is running, the full argument vector is forwarded to it and
  its output is printed here.
- Otherwise ``run`` starts a new instance; any other command fails.

Usage:
    # Start the service in the foreground
    python -m hypermangle run

    # Start as daemon (background)
    python -m hypermangle run --daemon

    # Talk to the running instance
    python -m hypermangle status
    python -m hypermangle echo hello
    python -m hypermangle kill
"""

import asyncio
import logging
import os
import sys
import time
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.markup import escape

from .client import does_remote_exist, send_args_to_remote
from .commands import parse_command
from .config import ControlConfig, load_config
from .errors import AlreadyRunningError, CommandParseError, ControlError
from .service import ControlService


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure root logging once for the process."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers = [logging.FileHandler(log_file)]
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def _await_daemon(config: ControlConfig) -> int:
    """Wait in the launching process until the daemon answers on its socket."""
    console = Console(stderr=True)
    deadline = time.monotonic() + config.connect_timeout
    while time.monotonic() < deadline:
        try:
            pid = does_remote_exist(config.socket_path, timeout=config.connect_timeout)
        except ControlError:
            pid = None
        if pid is not None:
            print(f"{config.program_name} started (PID: {pid})")
            return 0
        time.sleep(0.1)
    console.print(
        f"[bold red]Error:[/bold red] {escape(config.program_name)} did not answer on "
        f"{escape(str(config.socket_path))} within {config.connect_timeout}s"
    )
    console.print(f"  See {escape(str(config.log_file))}")
    return 1


def detach(config: ControlConfig) -> None:
    """Move the service into the background.

    Double fork into a new session. Only the grandchild returns; the
    launching process exits once the daemon's control socket answers, so
    its exit status tells whether startup worked. Standard streams point at
    /dev/null, except stderr, which goes to the log file so that tracebacks
    escaping the logging set-up are still recorded.
    """
    if os.fork() > 0:
        sys.exit(_await_daemon(config))

    os.setsid()
    if os.fork() > 0:
        os._exit(0)

    sys.stdout.flush()
    sys.stderr.flush()
    with open(os.devnull, "r+") as devnull:
        os.dup2(devnull.fileno(), sys.stdin.fileno())
        os.dup2(devnull.fileno(), sys.stdout.fileno())

    config.log_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config.log_file, "a") as log:
        os.dup2(log.fileno(), sys.stderr.fileno())


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = list(sys.argv)
    console = Console(stderr=True)

    config = load_config()
    setup_logging(config.log_level)

    try:
        pid = does_remote_exist(config.socket_path, timeout=config.connect_timeout)
    except ControlError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        return 1

    if pid is not None:
        logger.debug(f"Forwarding to running instance (PID: {pid})")
        return send_args_to_remote(
            argv,
            socket_path=config.socket_path,
            timeout=config.connect_timeout,
        )

    try:
        command = parse_command(argv)
    except CommandParseError as e:
        stream = sys.stdout if e.status == 0 else sys.stderr
        stream.write(str(e))
        return e.status

    if command.command != "run":
        console.print(f"{config.program_name} is not running")
        console.print(f"  Use '{config.program_name} run' to start it")
        return 1

    if command.daemon:
        print(f"Starting {config.program_name} as daemon...")
        print(f"  Control socket: {config.socket_path}")
        print(f"  Log file: {config.log_file}")
        detach(config)
        setup_logging(config.log_level, config.log_file)

    service = ControlService(config)
    try:
        asyncio.run(service.run())
    except AlreadyRunningError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
