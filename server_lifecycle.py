"""
Lifecycle manager for ephemeral HTTP servers used in tests.

Tracks in-process server instances, spawned server processes and simulated
port conflicts, together with an advisory registry of the ports they hold.
Nothing happens at import time: construct a ServerLifecycleManager, and
dispose of it with `await manager.shutdown()` (or `async with manager:`).
Use signal_adapter.ProcessSignalAdapter to tie shutdown to process signals.
"""

import asyncio
import datetime
import logging
import os
import pathlib
import resource
import signal
import sys
import time
from typing import Dict, Optional, Set

from child_process import ProcessInfo, watch_process
from hello_server import app as hello_app
from http_listener import HttpListener, conflict_app, is_address_in_use
from lifecycle_config import (
    QUICK_STOP_TIMEOUT,
    ConflictOptions,
    HooksConfig,
    ManagerConfig,
    ProcessConfig,
    ServerConfig,
    StartOptions,
    StopOptions,
    generate_id,
)
from lifecycle_errors import (
    ConfigurationError,
    InstanceStateError,
    LifecycleError,
    PortInUseError,
    StartupError,
    StartupTimeoutError,
)
from port_probe import find_available_port, is_port_available, wait_for_server_ready
from suite_hooks import RunnerHooks, SuiteHooks

LOGGER = logging.getLogger("server_lifecycle")

POST_CLOSE_PROBE_TIMEOUT = 0.2


def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


class ServerInstance:
    """An in-process HTTP listener managed for test use."""

    def __init__(
        self, instance_id: str, port: int, hostname: str, listener: HttpListener, test_context: str
    ):
        self.id = instance_id
        self.port = port
        self.hostname = hostname
        self.listener = listener
        self.running = False
        self.start_time: Optional[float] = None
        self.stop_time: Optional[float] = None
        self.metadata = {
            "test_context": test_context,
            "created_at": _now_iso(),
            "pid": os.getpid(),
        }
        # cleared on each start, set once the port has been given back
        self.port_released = False

    @property
    def connections(self) -> set:
        return self.listener.connections

    @property
    def uptime(self) -> Optional[float]:
        if self.start_time is None:
            return None
        end = self.stop_time if not self.running and self.stop_time else time.time()
        return end - self.start_time

    def __repr__(self):
        state = "running" if self.running else "stopped"
        return f"<ServerInstance {self.id} {self.hostname}:{self.port} {state}>"


class ConflictInfo:
    """A listener occupying a port so that other code fails to bind it."""

    def __init__(
        self,
        conflict_id: str,
        port: int,
        hostname: str,
        listener: HttpListener,
        auto_release: bool,
        manager: "ServerLifecycleManager",
    ):
        self.id = conflict_id
        self.port = port
        self.hostname = hostname
        self.listener = listener
        self.auto_release = auto_release
        self.active = False
        self.start_time = time.time()
        self.end_time: Optional[float] = None
        self._manager = manager
        self._timer: Optional[asyncio.TimerHandle] = None
        self._release_task: Optional[asyncio.Future] = None

    def schedule_release(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._auto_release)

    def _auto_release(self) -> None:
        self._timer = None
        task = asyncio.ensure_future(self.release())
        task.add_done_callback(self._log_release_failure)

    def _log_release_failure(self, task: asyncio.Future) -> None:
        if not task.cancelled() and task.exception() is not None:
            LOGGER.warning(
                "Automatic release of conflict %s failed: %s", self.id, task.exception()
            )

    def extend(self, additional_time: float) -> None:
        """Push the pending automatic release back by `additional_time` seconds."""
        if not (self.active and self.auto_release) or self._timer is None:
            return
        loop = asyncio.get_running_loop()
        when = self._timer.when() + additional_time
        self._timer.cancel()
        self._timer = loop.call_at(when, self._auto_release)

    async def release(self) -> None:
        """Close the occupying listener and free the port. Idempotent."""
        if self._release_task is None:
            if not self.active:
                return
            self._release_task = asyncio.ensure_future(self._release())
        await asyncio.shield(self._release_task)

    async def _release(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        try:
            await self.listener.stop(self._manager.config.shutdown_timeout, force=True)
        finally:
            self.active = False
            self.end_time = time.time()
            self._manager._release_conflict(self)
            self._release_task = None

    def __repr__(self):
        state = "active" if self.active else "released"
        return f"<ConflictInfo {self.id} {self.hostname}:{self.port} {state}>"


class ServerLifecycleManager:
    def __init__(self, config: Optional[ManagerConfig] = None):
        self.config = config if config is not None else ManagerConfig()
        self.server_instances: Dict[str, ServerInstance] = {}
        self.child_processes: Dict[str, ProcessInfo] = {}
        self.conflicts: Dict[str, ConflictInfo] = {}
        self.port_registry: Set[int] = {self.config.port}
        # pre-reserved suite pools, held until the owning suite tears down
        self.suite_ports: Set[int] = set()
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    def _ensure_open(self) -> None:
        if self.closed:
            raise LifecycleError("Server lifecycle manager has been shut down")

    # Ports

    async def is_port_available(
        self, port: int, hostname: Optional[str] = None, timeout: Optional[float] = None
    ) -> bool:
        return await is_port_available(
            port,
            hostname or self.config.hostname,
            timeout if timeout is not None else self.config.probe_timeout,
        )

    async def find_available_port(
        self,
        start_port: Optional[int] = None,
        max_attempts: Optional[int] = None,
        hostname: Optional[str] = None,
    ) -> int:
        return await find_available_port(
            start_port if start_port is not None else self.config.start_port,
            max_attempts if max_attempts is not None else self.config.max_attempts,
            hostname or self.config.hostname,
            reserved=self.port_registry,
            probe_timeout=self.config.probe_timeout,
        )

    async def claim_port(
        self, start_port: Optional[int] = None, hostname: Optional[str] = None
    ) -> int:
        """find_available_port, registering the result before returning.

        Concurrent callers may both see the same free port while probing;
        the first to resume claims it and the other scans again.
        """
        while True:
            port = await self.find_available_port(start_port, hostname=hostname)
            if port not in self.port_registry:
                self.port_registry.add(port)
                return port

    async def wait_for_server_ready(
        self, port: int, hostname: Optional[str] = None, timeout: float = 5.0, interval: float = 0.1
    ) -> bool:
        return await wait_for_server_ready(
            port, hostname or self.config.hostname, timeout, interval
        )

    def port_holder(self, port: int) -> Optional[str]:
        """Id of the live tracked entity holding `port`, if any."""
        for instance in self.server_instances.values():
            if instance.port == port and not instance.port_released:
                return instance.id
        for info in self.child_processes.values():
            if info.port == port and info.running:
                return info.id
        for conflict in self.conflicts.values():
            if conflict.port == port and conflict.active:
                return conflict.id
        return None

    def release_port(self, port: int) -> None:
        """Drop `port` from the registry unless something still holds or reserves it."""
        if self.port_holder(port) is None and port not in self.suite_ports:
            self.port_registry.discard(port)

    def _release_instance_port(self, instance: ServerInstance) -> None:
        if instance.port_released:
            return
        instance.port_released = True
        self.release_port(instance.port)

    def _release_after_listener_exit(self, instance: ServerInstance) -> None:
        # a restart in the meantime owns the port again
        if not instance.running:
            self._release_instance_port(instance)

    def _release_conflict(self, conflict: ConflictInfo) -> None:
        self.conflicts.pop(conflict.id, None)
        self.release_port(conflict.port)

    def _on_process_exit(self, info: ProcessInfo) -> None:
        if self.child_processes.get(info.id) is info:
            del self.child_processes[info.id]
        self.release_port(info.port)
        LOGGER.info(
            "Server process %s (pid %s) exited, code=%s signal=%s",
            info.id,
            info.pid,
            info.exit_code,
            info.exit_signal,
        )

    # Server instances

    async def create_server_instance(
        self, config: Optional[ServerConfig] = None
    ) -> ServerInstance:
        """Register a server instance without starting it.

        Raises PortInUseError if the port is held by another tracked entity
        or already accepts connections.
        """
        self._ensure_open()
        if config is None:
            config = ServerConfig()
        instance_id = config.instance_id or generate_id("server")
        hostname = config.hostname or self.config.hostname
        port = config.port or await self.claim_port(hostname=hostname)

        holder = self.port_holder(port)
        if holder is not None:
            raise PortInUseError(
                f"EADDRINUSE: Port {port} is already in use", port, owner_id=holder
            )

        # tracked before probing, so a concurrent create sees this holder
        listener = HttpListener(hello_app, port, hostname, log_level=self.config.log_level)
        instance = ServerInstance(instance_id, port, hostname, listener, config.test_context)
        self.server_instances[instance_id] = instance
        self.port_registry.add(port)

        available = False
        try:
            available = await self.is_port_available(port, hostname)
        finally:
            if not available:
                self.forget(instance)
                self._release_instance_port(instance)
        if not available:
            raise PortInUseError(f"EADDRINUSE: Port {port} is already in use", port)
        return instance

    async def start_server_instance(
        self, instance: ServerInstance, options: Optional[StartOptions] = None
    ) -> ServerInstance:
        if instance.running:
            raise InstanceStateError(f"Server instance {instance.id} is already running")
        if options is None:
            options = StartOptions()
        timeout = options.timeout or self.config.startup_timeout

        instance.port_released = False
        self.port_registry.add(instance.port)
        try:
            bound_port = await instance.listener.start(timeout)
        except OSError as exc:
            self._release_instance_port(instance)
            if is_address_in_use(exc):
                raise PortInUseError(
                    f"EADDRINUSE: Port {instance.port} is already in use. "
                    f"Server instance {instance.id} failed to start.",
                    instance.port,
                    owner_id=instance.id,
                ) from exc
            raise StartupError(f"Server startup failed: {exc}") from exc
        except StartupTimeoutError:
            LOGGER.warning(
                "Server instance %s timed out while starting; its listener was told to exit "
                "but may still bind %s:%d for a short while",
                instance.id,
                instance.hostname,
                instance.port,
            )
            instance.listener.when_closed(lambda: self._release_after_listener_exit(instance))
            raise
        except StartupError:
            self._release_instance_port(instance)
            raise

        instance.running = True
        instance.start_time = time.time()
        instance.stop_time = None
        if bound_port != instance.port:
            await self.stop_server_instance(instance, StopOptions(timeout=QUICK_STOP_TIMEOUT))
            raise StartupError(
                f"Server bound to unexpected port: {bound_port} instead of {instance.port}"
            )
        if options.wait_for_ready:
            await self.wait_for_server_ready(instance.port, instance.hostname, timeout)
        LOGGER.info("Server instance %s listening on %s:%d", instance.id, instance.hostname, instance.port)
        return instance

    async def stop_server_instance(
        self, instance: ServerInstance, options: Optional[StopOptions] = None
    ) -> ServerInstance:
        if options is None:
            options = StopOptions()
        timeout = options.timeout or self.config.shutdown_timeout
        if not instance.running:
            # a listener left behind by a timed-out start
            if instance.listener.serving:
                await instance.listener.stop(timeout, force=options.force)
                self._release_instance_port(instance)
            return instance

        await instance.listener.stop(timeout, force=options.force)
        instance.running = False
        instance.stop_time = time.time()
        self._release_instance_port(instance)

        if not await is_port_available(
            instance.port, instance.hostname, POST_CLOSE_PROBE_TIMEOUT
        ):
            LOGGER.warning(
                "Port %d still accepts connections after server instance %s stopped",
                instance.port,
                instance.id,
            )
        return instance

    async def start_server(self, config: Optional[ServerConfig] = None) -> ServerInstance:
        instance = await self.create_server_instance(config)
        return await self.start_server_instance(instance)

    async def stop_server(self, instance: ServerInstance) -> ServerInstance:
        return await self.stop_server_instance(instance)

    # Child processes

    async def spawn_server_process(
        self, config: Optional[ProcessConfig] = None
    ) -> ProcessInfo:
        """Launch the server script as a child process and wait for it to
        announce readiness on stdout."""
        self._ensure_open()
        if config is None:
            config = ProcessConfig()
        server_path = config.server_path or self.config.server_path
        if not pathlib.Path(server_path).is_file():
            raise ConfigurationError(f"Server file not found: {server_path}")

        process_id = config.process_id or generate_id("process")
        hostname = config.hostname or self.config.hostname
        port = config.port or await self.claim_port(hostname=hostname)

        env = dict(os.environ)
        env.update(
            HELLO_SERVER_PORT=str(port),
            HELLO_SERVER_HOSTNAME=hostname,
            HELLO_SERVER_ENV="test",
            PYTHONUNBUFFERED="1",
        )
        env.update(config.env)

        info = ProcessInfo(
            process_id,
            port,
            hostname,
            ready_phrase=config.ready_phrase,
            test_context=config.test_context,
        )
        self.port_registry.add(port)
        try:
            await info.launch([sys.executable, server_path], env)
        except OSError as exc:
            self.release_port(port)
            raise StartupError(f"Failed to spawn server process: {exc}") from exc
        self.child_processes[process_id] = info
        info.watcher = asyncio.ensure_future(watch_process(info, self._on_process_exit))

        if await info.wait_ready(config.ready_timeout):
            LOGGER.info(
                "Server process %s (pid %s) ready on %s:%d", process_id, info.pid, hostname, port
            )
            return info
        if not info.running:
            await info.wait_exited()
            raise StartupError(
                f"Server process {process_id} exited before becoming ready "
                f"(code={info.exit_code}, signal={info.exit_signal}): {info.stderr[-2000:]}"
            )
        await info.terminate(signal.SIGTERM)
        raise StartupTimeoutError(
            f"Server process startup timeout: No ready signal received within {config.ready_timeout}s"
        )

    # Port conflicts

    async def simulate_port_conflict(
        self, target_port: int, options: Optional[ConflictOptions] = None
    ) -> ConflictInfo:
        """Occupy `target_port` so that code under test fails to bind it."""
        self._ensure_open()
        if options is None:
            options = ConflictOptions()
        conflict_id = f"conflict_{target_port}_{int(time.time() * 1000)}"
        if not options.immediate:
            await asyncio.sleep(options.delay)

        listener = HttpListener(
            conflict_app, target_port, options.hostname, log_level=self.config.log_level
        )
        try:
            await listener.start(self.config.startup_timeout)
        except OSError as exc:
            if is_address_in_use(exc):
                raise PortInUseError(
                    f"Cannot simulate port conflict: Port {target_port} is already in use",
                    target_port,
                    owner_id=self.port_holder(target_port),
                ) from exc
            raise StartupError(f"Port conflict simulation failed: {exc}") from exc
        except StartupTimeoutError:
            await listener.stop(QUICK_STOP_TIMEOUT)
            raise

        conflict = ConflictInfo(
            conflict_id, target_port, options.hostname, listener, options.auto_release, self
        )
        conflict.active = True
        self.conflicts[conflict_id] = conflict
        self.port_registry.add(target_port)
        if options.auto_release and options.hold_duration > 0:
            conflict.schedule_release(options.hold_duration)
        LOGGER.info("Simulating a port conflict on %s:%d", options.hostname, target_port)
        return conflict

    # Suites

    def create_test_hooks(self, config: Optional[HooksConfig] = None) -> SuiteHooks:
        return SuiteHooks(self, config if config is not None else HooksConfig())

    def runner_hooks(self, test_suite: str = "default") -> RunnerHooks:
        return RunnerHooks(self, test_suite)

    async def cleanup_test_suite(self, test_suite: str) -> None:
        """Stop and forget every entity tagged with `test_suite`."""
        pending = []
        for instance in list(self.server_instances.values()):
            if instance.metadata["test_context"] != test_suite:
                continue
            if instance.running:
                pending.append(
                    self.stop_server_instance(instance, StopOptions(timeout=QUICK_STOP_TIMEOUT))
                )
            self.server_instances.pop(instance.id, None)
        for info in list(self.child_processes.values()):
            if info.metadata["test_context"] == test_suite and info.running:
                pending.append(info.terminate(signal.SIGKILL))
        results = await asyncio.gather(*pending, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                LOGGER.warning("Cleanup of suite %s: %s", test_suite, result)

    def forget(self, entity) -> None:
        if isinstance(entity, ServerInstance):
            if self.server_instances.get(entity.id) is entity:
                del self.server_instances[entity.id]
        elif self.child_processes.get(entity.id) is entity:
            del self.child_processes[entity.id]

    # Global cleanup

    async def cleanup(self, timeout: Optional[float] = None) -> None:
        """Stop everything, waiting at most `timeout` seconds, then clear all
        registries. Individual failures are logged, never raised."""
        if timeout is None:
            timeout = self.config.cleanup_timeout
        pending = []
        for instance in self.server_instances.values():
            if instance.running:
                pending.append(
                    self.stop_server_instance(instance, StopOptions(timeout=QUICK_STOP_TIMEOUT))
                )
        for info in self.child_processes.values():
            if info.running:
                pending.append(info.terminate(signal.SIGKILL))
        for conflict in self.conflicts.values():
            if conflict.active:
                pending.append(conflict.release())

        if pending:
            tasks = [asyncio.ensure_future(coro) for coro in pending]
            done, not_done = await asyncio.wait(tasks, timeout=timeout)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    LOGGER.warning("Cleanup failure: %s", task.exception())
            for task in not_done:
                task.cancel()
            if not_done:
                LOGGER.warning(
                    "Cleanup gave up on %d operation(s) after %ss", len(not_done), timeout
                )

        self.server_instances.clear()
        self.child_processes.clear()
        self.conflicts.clear()
        self.port_registry.clear()
        self.suite_ports.clear()

    async def shutdown(self) -> None:
        if self.closed:
            return
        self.closed = True
        LOGGER.info("Shutting down server lifecycle manager")
        await self.cleanup()

    def kill_all_processes(self) -> None:
        """Synchronous sweep for interpreter exit: SIGKILL every child and
        close every listening socket."""
        for info in list(self.child_processes.values()):
            info.kill()
        for instance in list(self.server_instances.values()):
            instance.listener.kill()
        for conflict in list(self.conflicts.values()):
            conflict.listener.kill()

    # Introspection

    def get_status(self) -> dict:
        instances = list(self.server_instances.values())
        processes = list(self.child_processes.values())
        running_instances = sum(1 for instance in instances if instance.running)
        running_processes = sum(1 for info in processes if info.running)
        usage = resource.getrusage(resource.RUSAGE_SELF)
        return {
            "timestamp": _now_iso(),
            "server_instances": {
                "total": len(instances),
                "running": running_instances,
                "stopped": len(instances) - running_instances,
                "details": [
                    {
                        "id": instance.id,
                        "port": instance.port,
                        "hostname": instance.hostname,
                        "running": instance.running,
                        "uptime": instance.uptime,
                        "connections": len(instance.connections),
                        "test_context": instance.metadata["test_context"],
                    }
                    for instance in instances
                ],
            },
            "child_processes": {
                "total": len(processes),
                "running": running_processes,
                "stopped": len(processes) - running_processes,
                "details": [
                    {
                        "id": info.id,
                        "pid": info.pid,
                        "port": info.port,
                        "hostname": info.hostname,
                        "running": info.running,
                        "uptime": info.uptime,
                        "exit_code": info.exit_code,
                        "exit_signal": info.exit_signal,
                    }
                    for info in processes
                ],
            },
            "conflicts": [
                {"id": conflict.id, "port": conflict.port, "active": conflict.active}
                for conflict in self.conflicts.values()
            ],
            "port_registry": sorted(self.port_registry),
            "memory_usage": {
                "max_rss": usage.ru_maxrss,
                "user_time": usage.ru_utime,
                "system_time": usage.ru_stime,
            },
        }
