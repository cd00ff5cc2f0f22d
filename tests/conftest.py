"""Shared pytest fixtures for integration and unit tests."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Callable, Generator, TypedDict

import pytest

from tests.utils.http import reserve_port, wait_for_port

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SERVER_ENTRYPOINT = PROJECT_ROOT / "main.py"
SERVED_PAYLOAD = bytes(range(256)) * 512


class ServerProcessInfo(TypedDict):
    """Metadata describing a running server fixture instance."""

    base_url: str
    host: str
    port: int
    served_file: Path
    process: subprocess.Popen[str]
    log_file: Path


def _server_command(served_file: Path, port: int, log_file: Path, extra_args) -> list:
    return [
        sys.executable,
        str(SERVER_ENTRYPOINT),
        "--host",
        "127.0.0.1",
        "--port",
        str(port),
        "--log-destination",
        str(log_file),
        *extra_args,
        str(served_file),
    ]


def _launch_server(
    served_file: Path, log_file: Path, extra_args: list[str] | None = None
) -> ServerProcessInfo:
    host = "127.0.0.1"
    port = reserve_port(host)
    process = subprocess.Popen(  # pylint: disable=consider-using-with
        _server_command(served_file, port, log_file, extra_args or []),
        cwd=PROJECT_ROOT,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    try:
        wait_for_port(host, port)
    except Exception:
        # If startup failed, print stdout/stderr to help debug
        process.terminate()
        stdout, stderr = process.communicate(timeout=5)
        print(f"\nServer stdout:\n{stdout}")
        print(f"\nServer stderr:\n{stderr}")
        raise
    return {
        "base_url": f"http://{host}:{port}",
        "host": host,
        "port": port,
        "served_file": served_file,
        "process": process,
        "log_file": log_file,
    }


@pytest.fixture(name="served_file")
def _served_file(tmp_path: Path) -> Path:
    """Write the payload offered by the server under test."""

    path = tmp_path / "payload.bin"
    path.write_bytes(SERVED_PAYLOAD)
    return path


@pytest.fixture(name="start_server")
def _start_server(
    served_file: Path, tmp_path: Path
) -> Generator[Callable[..., ServerProcessInfo], None, None]:
    """Factory launching the server with extra CLI flags; stops it afterwards."""

    launched: list[ServerProcessInfo] = []

    def start(*extra_args: str, served: Path | None = None) -> ServerProcessInfo:
        log_file = tmp_path / f"server-{len(launched)}.log"
        info = _launch_server(served or served_file, log_file, list(extra_args))
        launched.append(info)
        return info

    yield start

    for info in launched:
        process = info["process"]
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=15)
            except subprocess.TimeoutExpired:
                process.kill()
        process.communicate()


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Expose the repository root path to tests."""

    return PROJECT_ROOT
