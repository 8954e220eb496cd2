"""In-process HTTP listeners backed by uvicorn.

The listening socket is bound here rather than by uvicorn, so that an
occupied address surfaces as an OSError from bind() instead of uvicorn
logging it and calling sys.exit().
"""

import asyncio
import contextlib
import errno
import logging
import socket
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import Response

from lifecycle_errors import ShutdownError, StartupError, StartupTimeoutError

LOGGER = logging.getLogger("server_lifecycle")

STARTED_POLL_INTERVAL = 0.01
FORCE_EXIT_TIMEOUT = 1.0

conflict_app = FastAPI()


@conflict_app.api_route(
    "/{path:path}", methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]
)
async def conflict_response(path: str) -> Response:
    return Response(
        content="Port conflict simulation active\n",
        status_code=503,
        headers={"Content-Type": "text/plain"},
    )


def is_address_in_use(exc: OSError) -> bool:
    return exc.errno == errno.EADDRINUSE


class ManagedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to its owner."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class HttpListener:
    """One uvicorn server bound to one (hostname, port)."""

    def __init__(self, app, port: int, hostname: str, log_level: str = "warning"):
        self.app = app
        self.port = port
        self.hostname = hostname
        self.log_level = log_level
        self.server: Optional[ManagedServer] = None
        self.socket: Optional[socket.socket] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def connections(self) -> set:
        """Open connections, as tracked by uvicorn's connection_made/connection_lost."""
        if self.server is None:
            return set()
        return self.server.server_state.connections

    @property
    def serving(self) -> bool:
        return self._task is not None and not self._task.done()

    def bind(self) -> socket.socket:
        """Bind the listening socket. Raises OSError (EADDRINUSE if occupied)."""
        self.socket = socket.create_server((self.hostname, self.port))
        return self.socket

    async def start(self, timeout: float) -> int:
        """Serve on a freshly bound socket and return the bound port.

        On timeout the server is asked to exit, but it may still finish its
        startup in the background before it notices.
        """
        sock = self.bind()
        config = uvicorn.Config(
            self.app,
            host=self.hostname,
            port=self.port,
            lifespan="off",
            log_level=self.log_level,
            access_log=False,
        )
        server = ManagedServer(config)
        self.server = server
        self._task = asyncio.ensure_future(server.serve(sockets=[sock]))
        started = asyncio.ensure_future(self._wait_started(server))
        done, _ = await asyncio.wait(
            {self._task, started},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if started in done:
            return sock.getsockname()[1]
        started.cancel()
        if self._task in done:
            task, self._task = self._task, None
            self.close_socket()
            exc = None if task.cancelled() else task.exception()
            raise StartupError(
                f"Server startup failed on {self.hostname}:{self.port}: {exc or 'server exited'}"
            )
        server.should_exit = True
        self._task.add_done_callback(self._reap)
        raise StartupTimeoutError(
            f"Server startup timeout: Failed to start within {timeout}s"
        )

    def _reap(self, task: asyncio.Future) -> None:
        if self._task is task:
            self._task = None
            self.close_socket()
        if not task.cancelled() and task.exception() is not None:
            LOGGER.warning(
                "Abandoned server on %s:%d exited with an error: %s",
                self.hostname,
                self.port,
                task.exception(),
            )

    def when_closed(self, callback: Callable[[], None]) -> None:
        """Call `callback()` once the serve task has finished, at once if it has."""
        task = self._task
        if task is None or task.done():
            callback()
            return
        task.add_done_callback(lambda _: callback())

    @staticmethod
    async def _wait_started(server: ManagedServer) -> None:
        while not server.started:
            await asyncio.sleep(STARTED_POLL_INTERVAL)

    def abort_connections(self) -> int:
        aborted = 0
        for connection in list(self.connections):
            transport = getattr(connection, "transport", None)
            if transport is None:
                continue
            transport.abort()
            aborted += 1
        return aborted

    async def stop(self, timeout: float, force: bool = True) -> None:
        """Close the listener, gracefully first.

        If open connections keep it alive past `timeout`, they are aborted
        when `force` is set; otherwise ShutdownError is raised and the
        listener keeps serving.
        """
        task = self._task
        if task is None:
            return
        server = self.server
        server.should_exit = True
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            if not force:
                raise ShutdownError(
                    f"Graceful shutdown of {self.hostname}:{self.port} did not complete within {timeout}s"
                )
            aborted = self.abort_connections()
            LOGGER.warning(
                "Forcing shutdown of %s:%d, aborted %d connection(s)",
                self.hostname,
                self.port,
                aborted,
            )
            server.force_exit = True
            done, _ = await asyncio.wait({task}, timeout=FORCE_EXIT_TIMEOUT)
            if not done:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._task = None
        self.close_socket()
        if not task.cancelled() and task.exception() is not None:
            LOGGER.warning(
                "Server on %s:%d exited with an error: %s",
                self.hostname,
                self.port,
                task.exception(),
            )

    def close_socket(self) -> None:
        if self.socket is not None:
            self.socket.close()
            self.socket = None

    def kill(self) -> None:
        """Synchronous last-resort close, usable when no event loop runs."""
        if self.server is not None:
            self.server.should_exit = True
            self.server.force_exit = True
        # aborting a transport needs its loop, which may already be closed
        with contextlib.suppress(RuntimeError):
            self.abort_connections()
        self.close_socket()
