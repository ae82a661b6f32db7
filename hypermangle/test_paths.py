"""Tests for hypermangle.paths and hypermangle.config."""

import tempfile
from pathlib import Path

import pytest

from hypermangle.config import load_config
from hypermangle.paths import (
    MAX_SOCKET_PATH,
    get_program_name,
    get_runtime_dir,
    get_socket_path,
)


ENV_VARS = [
    "XDG_RUNTIME_DIR",
    "HYPERMANGLE_RUNTIME_DIR",
    "HYPERMANGLE_SOCKET",
    "HYPERMANGLE_LOG_LEVEL",
    "HYPERMANGLE_LOG_FILE",
    "HYPERMANGLE_CLOSE_TIMEOUT",
    "HYPERMANGLE_CONNECT_TIMEOUT",
    "HYPERMANGLE_REQUEST_TIMEOUT",
]


@pytest.fixture
def clean_env(monkeypatch):
    # setenv first so monkeypatch restores the original (absent) state,
    # including variables written by load_dotenv during the test
    for name in ENV_VARS:
        monkeypatch.setenv(name, "placeholder")
        monkeypatch.delenv(name)
    return monkeypatch


class TestProgramName:

    def test_from_argv0(self):
        assert get_program_name("/usr/local/bin/myservice") == "myservice"

    def test_strips_extension(self):
        assert get_program_name("tools/serve.py") == "serve"

    @pytest.mark.parametrize("argv0", ["", "__main__.py", "-c"])
    def test_falls_back_to_default(self, argv0):
        assert get_program_name(argv0) == "hypermangle"


class TestSocketPath:

    def test_deterministic(self, clean_env):
        assert get_socket_path("svc") == get_socket_path("svc")

    def test_runtime_dir_override(self, clean_env, tmp_path):
        clean_env.setenv("HYPERMANGLE_RUNTIME_DIR", "/run/custom")
        assert get_socket_path("svc") == Path("/run/custom/svc.sock")

    def test_xdg_runtime_dir(self, clean_env, tmp_path):
        clean_env.setenv("XDG_RUNTIME_DIR", str(tmp_path))
        assert get_runtime_dir() == tmp_path

    def test_missing_xdg_dir_falls_back_to_tempdir(self, clean_env, tmp_path):
        clean_env.setenv("XDG_RUNTIME_DIR", str(tmp_path / "missing"))
        assert get_runtime_dir() == Path(tempfile.gettempdir())

    def test_not_working_directory(self, clean_env, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert get_socket_path("svc").parent != tmp_path

    def test_long_path_is_shortened(self, clean_env):
        clean_env.setenv("HYPERMANGLE_RUNTIME_DIR", "/run/" + "d" * 120)
        path = get_socket_path("svc")
        assert len(str(path)) <= MAX_SOCKET_PATH
        assert path.suffix == ".sock"
        assert path == get_socket_path("svc")


class TestLoadConfig:

    def test_defaults(self, clean_env):
        config = load_config(env_file=None, program_name="svc")
        assert config.program_name == "svc"
        assert config.socket_path == get_socket_path("svc")
        assert config.log_level == "INFO"
        assert config.close_timeout == 2.0
        assert config.connect_timeout == 5.0
        assert config.request_timeout == 5.0

    def test_environment_overrides(self, clean_env):
        clean_env.setenv("HYPERMANGLE_SOCKET", "/tmp/other.sock")
        clean_env.setenv("HYPERMANGLE_LOG_LEVEL", "debug")
        clean_env.setenv("HYPERMANGLE_CLOSE_TIMEOUT", "0.5")
        config = load_config(env_file=None, program_name="svc")
        assert config.socket_path == Path("/tmp/other.sock")
        assert config.log_level == "DEBUG"
        assert config.close_timeout == 0.5

    def test_invalid_number_ignored(self, clean_env):
        clean_env.setenv("HYPERMANGLE_CONNECT_TIMEOUT", "soon")
        clean_env.setenv("HYPERMANGLE_REQUEST_TIMEOUT", "-1")
        config = load_config(env_file=None, program_name="svc")
        assert config.connect_timeout == 5.0
        assert config.request_timeout == 5.0

    def test_env_file(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("HYPERMANGLE_LOG_LEVEL=WARNING\nHYPERMANGLE_REQUEST_TIMEOUT=1.5\n")
        config = load_config(env_file=str(env_file), program_name="svc")
        assert config.log_level == "WARNING"
        assert config.request_timeout == 1.5

    def test_environment_beats_env_file(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("HYPERMANGLE_LOG_LEVEL=WARNING\n")
        clean_env.setenv("HYPERMANGLE_LOG_LEVEL", "ERROR")
        assert load_config(env_file=str(env_file), program_name="svc").log_level == "ERROR"
