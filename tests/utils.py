import contextlib
import os
import signal
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Tuple

import anyio
import requests


TESTS_DIR = Path(__file__).resolve().parent
PROJECT_DIR = TESTS_DIR.parent
HELLO_SERVER = PROJECT_DIR / "hello_server.py"


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def allocate_port_range(size: int = 5) -> Tuple[int, int]:
    if size <= 0:
        raise ValueError("size must be positive")
    for start in range(40000, 60000):
        sockets = []
        try:
            for offset in range(size):
                candidate = start + offset
                sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                sockets.append(sock)
                sock.bind(("127.0.0.1", candidate))
            return start, start + size - 1
        except OSError:
            continue
        finally:
            for sock in sockets:
                sock.close()
    raise RuntimeError("Unable to allocate a free port range")


@contextlib.contextmanager
def listening_socket(port: int = 0, host: str = "127.0.0.1"):
    """A plain listening socket standing in for a foreign server."""
    sock = socket.create_server((host, port))
    try:
        yield sock
    finally:
        sock.close()


def wait_for_server(port: int, path: str = "/", timeout: float = 10.0):
    url = f"http://127.0.0.1:{port}{path}"
    deadline = time.monotonic() + timeout
    last_error = None
    while time.monotonic() < deadline:
        try:
            response = requests.get(url, timeout=1.0)
        except requests.RequestException as exc:  # pragma: no cover - network error detail only
            last_error = exc
            time.sleep(0.1)
            continue
        if response.status_code == 200:
            return response
        last_error = response.text
        time.sleep(0.1)
    raise RuntimeError(f"Server at {url} did not become ready: {last_error}")


async def http_request(method: str, port: int, path: str = "/", **kwargs):
    """requests call run off the event loop, which also serves the server."""
    url = f"http://127.0.0.1:{port}{path}"
    kwargs.setdefault("timeout", 5)
    return await anyio.to_thread.run_sync(
        lambda: requests.request(method, url, **kwargs)
    )


def write_script(directory: Path, name: str, source: str) -> Path:
    path = directory / name
    path.write_text(source)
    return path


@contextlib.contextmanager
def start_server(command, *, env=None, cwd=None, text: bool = True):
    full_env = os.environ.copy()
    if env:
        full_env.update(env)
    process = subprocess.Popen(  # noqa: S603,S607 - controlled command for tests
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        env=full_env,
        cwd=cwd,
        text=text,
    )
    try:
        yield process
    finally:
        if process.poll() is None:
            process.send_signal(signal.SIGINT)
        try:
            stdout, _ = process.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            stdout, _ = process.communicate()
        if stdout:
            print("Server logs:")
            print(stdout, end="" if stdout.endswith("\n") else "\n")


def hello_server_command(*args) -> list:
    return [sys.executable, str(HELLO_SERVER), *args]
