import asyncio
import errno

import pytest

from http_listener import HttpListener, conflict_app
from lifecycle_errors import ShutdownError

from .utils import http_request, listening_socket

pytestmark = pytest.mark.anyio


class StallingApp:
    """ASGI app that holds every request until released."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, scope, receive, send):
        self.entered.set()
        await self.release.wait()
        await send({"type": "http.response.start", "status": 200, "headers": []})
        await send({"type": "http.response.body", "body": b"late"})


async def open_stalled_request(port: int, app: StallingApp):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
    await writer.drain()
    await asyncio.wait_for(app.entered.wait(), 5)
    return reader, writer


async def test_start_returns_bound_port(available_port):
    listener = HttpListener(conflict_app, available_port, "127.0.0.1")
    assert await listener.start(timeout=5) == available_port
    assert listener.serving
    response = await http_request("GET", available_port)
    assert response.status_code == 503
    assert response.text == "Port conflict simulation active\n"
    await listener.stop(timeout=2)
    assert not listener.serving
    assert listener.socket is None


async def test_bind_error_is_raised_before_serving():
    with listening_socket() as sock:
        port = sock.getsockname()[1]
        listener = HttpListener(conflict_app, port, "127.0.0.1")
        with pytest.raises(OSError) as excinfo:
            await listener.start(timeout=5)
    assert excinfo.value.errno == errno.EADDRINUSE
    assert not listener.serving


async def test_stop_without_force_reports_timeout(available_port):
    app = StallingApp()
    listener = HttpListener(app, available_port, "127.0.0.1")
    await listener.start(timeout=5)
    _, writer = await open_stalled_request(available_port, app)
    try:
        with pytest.raises(ShutdownError):
            await listener.stop(timeout=0.3, force=False)
        assert listener.serving
        await listener.stop(timeout=0.3, force=True)
        assert not listener.serving
        assert not listener.connections
    finally:
        app.release.set()
        writer.close()


async def test_forced_stop_aborts_open_connections(available_port):
    app = StallingApp()
    listener = HttpListener(app, available_port, "127.0.0.1")
    await listener.start(timeout=5)
    reader, writer = await open_stalled_request(available_port, app)
    try:
        assert len(listener.connections) == 1
        await asyncio.wait_for(listener.stop(timeout=0.2, force=True), 5)
        assert not listener.serving
        # the client sees the connection dropped without a response
        try:
            data = await asyncio.wait_for(reader.read(), 5)
        except ConnectionResetError:
            data = b""
        assert data == b""
    finally:
        app.release.set()
        writer.close()


async def test_stop_before_start_is_noop():
    listener = HttpListener(conflict_app, 1, "127.0.0.1")
    await listener.stop(timeout=0.1)
    assert listener.connections == set()
