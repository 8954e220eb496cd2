"""Ties a ServerLifecycleManager to process termination.

SIGINT/SIGTERM run the manager's bounded shutdown and then let the signal
take its default effect. Interpreter exit and uncaught exceptions get a
synchronous sweep that kills child processes and closes listening sockets.
"""

import asyncio
import atexit
import logging
import signal
import sys
from typing import Optional, Sequence

from child_process import signal_name

LOGGER = logging.getLogger("server_lifecycle")


class ProcessSignalAdapter:
    def __init__(
        self,
        manager,
        signals: Sequence[int] = (signal.SIGINT, signal.SIGTERM),
        redeliver: bool = True,
    ):
        self.manager = manager
        self.signals = tuple(signals)
        self.redeliver = redeliver
        self.installed = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_excepthook = None
        self._tasks = set()

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Must be called from the main thread."""
        if self.installed:
            return
        if loop is None:
            loop = asyncio.get_running_loop()
        self._loop = loop
        for sig in self.signals:
            loop.add_signal_handler(sig, self._on_signal, sig)
        atexit.register(self._on_exit)
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook
        self.installed = True

    def uninstall(self) -> None:
        if not self.installed:
            return
        if not self._loop.is_closed():
            for sig in self.signals:
                self._loop.remove_signal_handler(sig)
        atexit.unregister(self._on_exit)
        if sys.excepthook == self._excepthook:
            sys.excepthook = self._previous_excepthook
        self._previous_excepthook = None
        self.installed = False

    def _on_signal(self, sig: int) -> None:
        task = self._loop.create_task(self.handle_signal(sig))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_signal(self, sig: int) -> None:
        """Shut the manager down, then re-raise `sig` with default handling."""
        LOGGER.info("Received %s, shutting down server lifecycle manager", signal_name(sig))
        try:
            await self.manager.shutdown()
        except Exception:
            LOGGER.exception("Error during server lifecycle cleanup")
        else:
            LOGGER.info("Server lifecycle cleanup completed")
        if self.redeliver:
            self.uninstall()
            signal.raise_signal(sig)

    def _on_exit(self) -> None:
        self.manager.kill_all_processes()

    def _excepthook(self, exc_type, exc_value, exc_tb) -> None:
        try:
            self.manager.kill_all_processes()
        finally:
            self._previous_excepthook(exc_type, exc_value, exc_tb)
