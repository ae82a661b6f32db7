"""Configuration loading for the control daemon.

Configuration precedence (highest wins):
1. Environment variables (HYPERMANGLE_*)
2. .env file in the working directory
3. Built-in defaults

Environment Variables:
    HYPERMANGLE_SOCKET: Control socket path (default: derived from program name)
    HYPERMANGLE_RUNTIME_DIR: Directory for the derived socket path
    HYPERMANGLE_LOG_LEVEL: Logging level name (default: INFO)
    HYPERMANGLE_LOG_FILE: Log file used in daemon mode
    HYPERMANGLE_CLOSE_TIMEOUT: Seconds allowed for a close notification (default: 2.0)
    HYPERMANGLE_CONNECT_TIMEOUT: Client connect/probe timeout seconds (default: 5.0)
    HYPERMANGLE_REQUEST_TIMEOUT: Seconds a client has to send its request (default: 5.0)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .paths import get_program_name, get_runtime_dir, get_socket_path

logger = logging.getLogger(__name__)

ENV_PREFIX = "HYPERMANGLE_"


@dataclass
class ControlConfig:
    """Settings shared by the daemon and the forwarding client."""

    program_name: str
    socket_path: Path
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    close_timeout: float = 2.0
    connect_timeout: float = 5.0
    request_timeout: float = 5.0


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {ENV_PREFIX}{name}={raw!r}")
        return default
    if value <= 0:
        logger.warning(f"Ignoring non-positive {ENV_PREFIX}{name}={raw!r}")
        return default
    return value


def load_config(
    env_file: Optional[str] = ".env",
    program_name: Optional[str] = None,
) -> ControlConfig:
    """Load configuration from the .env file and the environment.

    Args:
        env_file: Path to a .env file, or None to skip it. Variables that are
            already set in the environment are not overridden.
        program_name: Program identity override.

    Returns:
        The resolved ControlConfig.
    """
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    name = program_name or get_program_name()

    socket_override = os.environ.get(ENV_PREFIX + "SOCKET")
    socket_path = Path(socket_override) if socket_override else get_socket_path(name)

    log_file_env = os.environ.get(ENV_PREFIX + "LOG_FILE")
    log_file = Path(log_file_env) if log_file_env else get_runtime_dir() / f"{name}.log"

    config = ControlConfig(
        program_name=name,
        socket_path=socket_path,
        log_level=os.environ.get(ENV_PREFIX + "LOG_LEVEL", "INFO").upper(),
        log_file=log_file,
        close_timeout=_env_float("CLOSE_TIMEOUT", 2.0),
        connect_timeout=_env_float("CONNECT_TIMEOUT", 5.0),
        request_timeout=_env_float("REQUEST_TIMEOUT", 5.0),
    )
    logger.debug(f"Loaded config: {config}")
    return config
