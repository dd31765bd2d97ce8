"""Shared pytest fixtures for integration and unit tests."""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Generator, TypedDict

import pytest

from tests.utils.http import reserve_port, wait_for_port

if TYPE_CHECKING:
    from _pytest.tmpdir import TempPathFactory

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SERVER_ENTRYPOINT = PROJECT_ROOT / "main.py"

CONFIG_ENV_VARS = (
    "HOST",
    "PORT",
    "HTTPS_CERT_FILE",
    "HTTPS_KEY_FILE",
    "MAX_BODY_SIZE",
    "MAX_DURATION",
    "USE_REAL_HOSTNAME",
    "LOG_LEVEL",
    "LOG_DESTINATION",
    "LOG_FORMAT",
)


class ServerProcessInfo(TypedDict):
    """Metadata describing a running server fixture instance."""

    base_url: str
    host: str
    port: int
    process: subprocess.Popen[str]
    log_file: Path


def server_env(**overrides: str) -> dict[str, str]:
    """Copy of the environment without server settings, plus overrides."""

    env = {k: v for k, v in os.environ.items() if k not in CONFIG_ENV_VARS}
    env.update(overrides)
    return env


def run_server_command(
    args: list[str], env: dict[str, str] | None = None, timeout: float = 10.0
) -> subprocess.CompletedProcess[str]:
    """Run main.py to completion, for startup failures that exit immediately."""

    return subprocess.run(
        [sys.executable, str(SERVER_ENTRYPOINT), *args],
        cwd=PROJECT_ROOT,
        env=env if env is not None else server_env(),
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


def launch_server(
    host: str,
    port: int,
    log_file: Path,
    extra_args: list[str] | None = None,
    env: dict[str, str] | None = None,
    scheme: str = "http",
) -> Generator[ServerProcessInfo, None, None]:
    """Start main.py, wait for the port, yield, then terminate if still running."""

    args = [
        sys.executable,
        str(SERVER_ENTRYPOINT),
        "-host",
        host,
        "-port",
        str(port),
        "-log-destination",
        str(log_file),
    ]
    if extra_args:
        args.extend(extra_args)

    with subprocess.Popen(
        args,
        cwd=PROJECT_ROOT,
        env=env if env is not None else server_env(),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    ) as process:
        try:
            wait_for_port(host, port)
        except Exception:
            # If startup failed, print stdout/stderr to help debug
            process.terminate()
            stdout, stderr = process.communicate(timeout=5)
            print(f"\nServer stdout:\n{stdout}")
            print(f"\nServer stderr:\n{stderr}")
            raise

        yield {
            "base_url": f"{scheme}://{host}:{port}",
            "host": host,
            "port": port,
            "process": process,
            "log_file": log_file,
        }

        if process.poll() is None:
            process.kill()
        process.wait(timeout=5)


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Expose the repository root path to tests."""

    return PROJECT_ROOT


@pytest.fixture(name="server_process")
def _server_process(
    tmp_path_factory: "TempPathFactory",
) -> Generator[ServerProcessInfo, None, None]:
    """Launch the server with a short max duration for integration tests."""

    host = "127.0.0.1"
    port = reserve_port(host)
    log_file = tmp_path_factory.mktemp("server-logs") / "server.log"
    yield from launch_server(
        host, port, log_file, ["-max-duration", "2s", "-max-body-size", "1024"]
    )


@pytest.fixture()
def base_url(server_process: ServerProcessInfo) -> str:
    """Expose the running server base URL to integration tests."""

    return server_process["base_url"]
