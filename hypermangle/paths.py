"""Control socket naming.

The socket path is derived from the program's own name, so every invocation
of the same program resolves the same endpoint without configuration:

    $HYPERMANGLE_RUNTIME_DIR/<name>.sock   (explicit override)
    $XDG_RUNTIME_DIR/<name>.sock           (per-user runtime state)
    <tempdir>/<name>.sock                  (fallback)
"""

import hashlib
import os
import sys
import tempfile
from pathlib import Path
from typing import Optional


DEFAULT_PROGRAM_NAME = "hypermangle"
RUNTIME_DIR_ENV = "HYPERMANGLE_RUNTIME_DIR"

# AF_UNIX paths are limited to ~104 bytes on macOS and 108 on Linux.
MAX_SOCKET_PATH = 90


def get_program_name(argv0: Optional[str] = None) -> str:
    """Return the identity used to name the control socket."""
    if argv0 is None:
        argv0 = sys.argv[0] if sys.argv else ""
    name = Path(argv0).stem if argv0 else ""
    # "python -m hypermangle" reports __main__ as argv[0]
    if not name or name in ("__main__", "-c", "-m"):
        return DEFAULT_PROGRAM_NAME
    return name


def get_runtime_dir() -> Path:
    """Return the directory that holds runtime state such as sockets."""
    override = os.environ.get(RUNTIME_DIR_ENV)
    if override:
        return Path(override).expanduser()
    xdg = os.environ.get("XDG_RUNTIME_DIR")
    if xdg and Path(xdg).is_dir():
        return Path(xdg)
    return Path(tempfile.gettempdir())


def get_socket_path(program_name: Optional[str] = None) -> Path:
    """Return the control socket path for a program.

    Args:
        program_name: Program identity. Defaults to ``get_program_name()``.
    """
    name = program_name or get_program_name()
    socket_path = get_runtime_dir() / f"{name}.sock"
    if len(str(socket_path)) > MAX_SOCKET_PATH:
        h = hashlib.sha256(str(socket_path).encode("utf-8", errors="replace")).hexdigest()[:16]
        socket_path = Path(tempfile.gettempdir()) / f"{DEFAULT_PROGRAM_NAME}_{h}.sock"
    return socket_path
