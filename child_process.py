"""Child server processes: output capture, readiness detection, termination.

Readiness protocol: the child prints a line containing a fixed phrase
(hello_server prints "Server running at http://HOST:PORT/") once its socket
is bound. Matching stdout text is the only readiness signal available, so a
child that buffers its output or words the line differently is never seen
as ready. PYTHONUNBUFFERED is set for Python children for that reason.
"""

import asyncio
import codecs
import contextlib
import datetime
import logging
import os
import signal
import time
from typing import Callable, List, Optional

from lifecycle_config import DEFAULT_READY_PHRASE, TERMINATE_GRACE_PERIOD

LOGGER = logging.getLogger("server_lifecycle")

OUTPUT_CHUNK_SIZE = 4096
OUTPUT_DRAIN_TIMEOUT = 0.5


def signal_name(sig) -> str:
    try:
        return signal.Signals(sig).name
    except ValueError:
        return str(sig)


async def pump_output(stream: asyncio.StreamReader, append: Callable[[str], None]):
    """Feed decoded chunks of `stream` to `append` until EOF."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(OUTPUT_CHUNK_SIZE)
        if not chunk:
            break
        text = decoder.decode(chunk)
        if text:
            append(text)
    tail = decoder.decode(b"", final=True)
    if tail:
        append(tail)


class ProcessInfo:
    """Handle on a spawned server process and its lifecycle state."""

    def __init__(
        self,
        process_id: str,
        port: int,
        hostname: str,
        ready_phrase: str = DEFAULT_READY_PHRASE,
        test_context: str = "unknown",
    ):
        self.id = process_id
        self.port = port
        self.hostname = hostname
        self.ready_phrase = ready_phrase
        self.pid: Optional[int] = None
        self.process: Optional[asyncio.subprocess.Process] = None
        self.stdout = ""
        self.stderr = ""
        self.running = False
        self.start_time: Optional[float] = None
        self.stop_time: Optional[float] = None
        self.exit_code: Optional[int] = None
        self.exit_signal: Optional[str] = None
        self.metadata = {
            "test_context": test_context,
            "created_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }
        self.watcher: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        self._exited = asyncio.Event()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    @property
    def uptime(self) -> Optional[float]:
        if self.start_time is None:
            return None
        end = self.stop_time if self.stop_time is not None else time.time()
        return end - self.start_time

    def append_stdout(self, text: str) -> None:
        self.stdout += text
        if not self._ready.is_set() and self.ready_phrase in self.stdout:
            self._ready.set()

    def append_stderr(self, text: str) -> None:
        self.stderr += text

    async def launch(self, command: List[str], env: dict) -> None:
        """Start the child. Raises OSError if it cannot be executed."""
        self.process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        self.pid = self.process.pid
        self.running = True
        self.start_time = time.time()

    def mark_exited(self, returncode: int) -> None:
        self.running = False
        self.stop_time = time.time()
        if returncode < 0:
            self.exit_signal = signal_name(-returncode)
        else:
            self.exit_code = returncode
        self._exited.set()

    async def wait_ready(self, timeout: float) -> bool:
        """Wait until the ready phrase shows up, the child exits, or `timeout`
        elapses. Return whether the ready phrase was seen."""
        ready = asyncio.ensure_future(self._ready.wait())
        exited = asyncio.ensure_future(self._exited.wait())
        try:
            await asyncio.wait(
                {ready, exited}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            ready.cancel()
            exited.cancel()
        return self._ready.is_set()

    async def wait_exited(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._exited.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def terminate(
        self, sig=signal.SIGTERM, grace_period: float = TERMINATE_GRACE_PERIOD
    ) -> None:
        """Send `sig` and wait for the exit; SIGKILL after `grace_period`."""
        if not self.running or self.process is None:
            return
        with contextlib.suppress(ProcessLookupError):
            self.process.send_signal(sig)
        if await self.wait_exited(grace_period):
            return
        LOGGER.warning(
            "Process %s (pid %s) still running %ss after %s, killing it",
            self.id,
            self.pid,
            grace_period,
            signal_name(sig),
        )
        with contextlib.suppress(ProcessLookupError):
            self.process.kill()
        if not await self.wait_exited(grace_period):
            LOGGER.error("Process %s (pid %s) did not exit after SIGKILL", self.id, self.pid)

    def kill(self) -> None:
        """Synchronous SIGKILL by pid, usable when no event loop runs."""
        if self.running and self.pid is not None:
            with contextlib.suppress(ProcessLookupError):
                os.kill(self.pid, signal.SIGKILL)


async def watch_process(info: ProcessInfo, on_exit: Callable[[ProcessInfo], None]):
    """Drain the child's output and report its exit."""
    process = info.process
    pumps = [
        asyncio.ensure_future(pump_output(process.stdout, info.append_stdout)),
        asyncio.ensure_future(pump_output(process.stderr, info.append_stderr)),
    ]
    try:
        returncode = await process.wait()
        # output already buffered by the pipes is still worth keeping
        await asyncio.wait(pumps, timeout=OUTPUT_DRAIN_TIMEOUT)
        info.mark_exited(returncode)
        on_exit(info)
    finally:
        for pump in pumps:
            pump.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)
