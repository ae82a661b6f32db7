"""Shared fixtures for control channel tests."""

import shutil
import tempfile
from pathlib import Path

import pytest


@pytest.fixture
def socket_path():
    """A short socket path (AF_UNIX paths are length limited)."""
    directory = Path(tempfile.mkdtemp(prefix="hm-"))
    try:
        yield directory / "ctl.sock"
    finally:
        shutil.rmtree(directory, ignore_errors=True)
