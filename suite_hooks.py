"""Per-suite setup/teardown hooks on top of ServerLifecycleManager.

Each SuiteHooks owns its own maps of servers and processes and its own pool
of pre-reserved ports, so suites never see each other's entities.
"""

import asyncio
import logging
import signal
from typing import TYPE_CHECKING, Dict, List, Optional

from lifecycle_config import (
    QUICK_STOP_TIMEOUT,
    SUITE_STOP_TIMEOUT,
    HooksConfig,
    ProcessConfig,
    ServerConfig,
    StartOptions,
    StopOptions,
    generate_id,
)

if TYPE_CHECKING:
    from child_process import ProcessInfo
    from server_lifecycle import ServerInstance, ServerLifecycleManager

LOGGER = logging.getLogger("server_lifecycle")


class SuiteController:
    """Handed out by SuiteHooks.setup(); creates entities tagged with the suite."""

    def __init__(self, hooks: "SuiteHooks"):
        self._hooks = hooks

    @property
    def available_ports(self) -> List[int]:
        return self._hooks.available_ports

    async def create_server(self, **options) -> "ServerInstance":
        """Create (not start) a server on the next pre-reserved port.

        Accepts the fields of ServerConfig except test_context.
        """
        hooks = self._hooks
        options["port"] = options.get("port") or hooks.take_port()
        config = ServerConfig(test_context=hooks.test_suite, **options)
        instance = await hooks.manager.create_server_instance(config)
        hooks.instances[instance.id] = instance
        return instance

    async def start_server(self, start_options: Optional[StartOptions] = None, **options):
        instance = await self.create_server(**options)
        return await self._hooks.manager.start_server_instance(instance, start_options)

    async def spawn_process(self, **options) -> "ProcessInfo":
        """Spawn a server process on the next pre-reserved port.

        Accepts the fields of ProcessConfig except test_context; the process
        id is prefixed with the suite name.
        """
        hooks = self._hooks
        suite = hooks.test_suite
        process_id = options.pop("process_id", None) or generate_id("process")
        options["port"] = options.get("port") or hooks.take_port()
        config = ProcessConfig(
            process_id=f"{suite}_{process_id}", test_context=suite, **options
        )
        info = await hooks.manager.spawn_server_process(config)
        hooks.processes[info.id] = info
        return info


class SuiteHooks:
    def __init__(self, manager: "ServerLifecycleManager", config: HooksConfig):
        self.manager = manager
        self.config = config
        self.instances: Dict[str, "ServerInstance"] = {}
        self.processes: Dict[str, "ProcessInfo"] = {}
        self.reserved_ports: List[int] = []
        self.available_ports: List[int] = []

    @property
    def test_suite(self) -> str:
        return self.config.test_suite

    def take_port(self) -> Optional[int]:
        """Next unused pre-reserved port; None lets the manager allocate one."""
        if self.available_ports:
            return self.available_ports.pop(0)
        return None

    async def setup(self) -> SuiteController:
        return await asyncio.wait_for(self._setup(), self.config.setup_timeout)

    async def _setup(self) -> SuiteController:
        # leftovers of an earlier run of the same suite
        await self.manager.cleanup_test_suite(self.test_suite)
        self._release_reserved_ports()

        for i in range(self.config.reserved_port_count):
            port = await self.manager.claim_port(
                self.config.base_port + i * self.config.port_spacing
            )
            self.manager.suite_ports.add(port)
            self.reserved_ports.append(port)
        self.available_ports = list(self.reserved_ports)
        LOGGER.debug("Suite %s reserved ports %s", self.test_suite, self.reserved_ports)
        return SuiteController(self)

    async def teardown(self) -> None:
        """Stop everything the suite started. Never raises for a failed stop."""
        labels = []
        pending = []
        for instance in self.instances.values():
            if instance.running:
                labels.append(f"instance {instance.id}")
                pending.append(
                    self.manager.stop_server_instance(
                        instance, StopOptions(timeout=SUITE_STOP_TIMEOUT, force=True)
                    )
                )
        for info in self.processes.values():
            if info.running:
                labels.append(f"process {info.id}")
                pending.append(info.terminate(signal.SIGTERM))

        results = await asyncio.gather(*pending, return_exceptions=True)
        for label, result in zip(labels, results):
            if isinstance(result, Exception):
                LOGGER.warning("Failed to stop %s: %s", label, result)

        self._release_reserved_ports()
        for entity in [*self.instances.values(), *self.processes.values()]:
            self.manager.forget(entity)
        self.instances.clear()
        self.processes.clear()

    async def after_each(self) -> None:
        if not self.config.auto_cleanup:
            return
        pending = [
            self.manager.stop_server_instance(
                instance, StopOptions(timeout=QUICK_STOP_TIMEOUT, force=True)
            )
            for instance in self.instances.values()
            if instance.running and instance.metadata["test_context"] == self.test_suite
        ]
        pending.extend(
            info.terminate(signal.SIGKILL)
            for info in self.processes.values()
            if info.running
        )
        for result in await asyncio.gather(*pending, return_exceptions=True):
            if isinstance(result, Exception):
                LOGGER.debug("after_each cleanup in suite %s: %s", self.test_suite, result)

    def _release_reserved_ports(self) -> None:
        for port in self.reserved_ports:
            self.manager.suite_ports.discard(port)
            self.manager.release_port(port)
        self.reserved_ports.clear()
        self.available_ports.clear()


class RunnerHooks:
    """Suite hooks under the names test runners use.

    before_all/after_all wrap setup/teardown, before_each hands out a fresh
    port, after_each is the per-test safety net.
    """

    def __init__(self, manager: "ServerLifecycleManager", test_suite: str = "default"):
        self.manager = manager
        self.hooks = SuiteHooks(manager, HooksConfig(test_suite=test_suite))
        self.controller: Optional[SuiteController] = None

    async def before_all(self) -> SuiteController:
        self.controller = await self.hooks.setup()
        return self.controller

    async def after_all(self) -> None:
        await self.hooks.teardown()
        self.controller = None

    async def before_each(self) -> int:
        return await self.manager.find_available_port()

    async def after_each(self) -> None:
        await self.hooks.after_each()
