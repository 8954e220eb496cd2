import asyncio
import errno
import socket

import pytest

from lifecycle_config import ConflictOptions, ManagerConfig, ServerConfig
from lifecycle_errors import PortInUseError, StartupTimeoutError
from port_probe import is_port_available
from server_lifecycle import ServerLifecycleManager

from .utils import http_request, listening_socket

pytestmark = pytest.mark.anyio


async def test_conflict_blocks_binding_until_released(manager, available_port):
    conflict = await manager.simulate_port_conflict(
        available_port, ConflictOptions(auto_release=False)
    )
    assert conflict.active
    assert available_port in manager.port_registry
    assert not await is_port_available(available_port)

    with pytest.raises(OSError) as excinfo:
        socket.create_server(("127.0.0.1", available_port)).close()
    assert excinfo.value.errno == errno.EADDRINUSE

    with pytest.raises(PortInUseError) as excinfo:
        await manager.create_server_instance(ServerConfig(port=available_port))
    assert excinfo.value.owner_id == conflict.id

    await conflict.release()
    assert not conflict.active
    assert conflict.end_time is not None
    assert available_port not in manager.port_registry

    instance = await manager.start_server(ServerConfig(port=available_port))
    assert instance.running
    await manager.stop_server_instance(instance)


async def test_conflict_breaks_start_of_created_instance(manager, available_port):
    instance = await manager.create_server_instance(ServerConfig(port=available_port))
    conflict = await manager.simulate_port_conflict(available_port)
    with pytest.raises(PortInUseError, match=instance.id):
        await manager.start_server_instance(instance)
    await conflict.release()
    await manager.start_server_instance(instance)
    assert instance.running


async def test_conflict_answers_503(manager, available_port):
    conflict = await manager.simulate_port_conflict(available_port)
    response = await http_request("GET", available_port)
    assert response.status_code == 503
    assert response.text == "Port conflict simulation active\n"
    await conflict.release()


async def test_conflict_on_occupied_port_fails(manager):
    with listening_socket() as sock:
        port = sock.getsockname()[1]
        with pytest.raises(PortInUseError, match="Cannot simulate port conflict"):
            await manager.simulate_port_conflict(port)
    assert not manager.conflicts


async def test_auto_release_after_hold_duration(manager, available_port):
    conflict = await manager.simulate_port_conflict(
        available_port, ConflictOptions(hold_duration=0.3)
    )
    assert conflict.active
    await asyncio.sleep(1.5)
    assert not conflict.active
    assert available_port not in manager.port_registry
    assert await is_port_available(available_port)


async def test_extend_postpones_release(manager, available_port):
    conflict = await manager.simulate_port_conflict(
        available_port, ConflictOptions(hold_duration=0.4)
    )
    conflict.extend(1.5)
    await asyncio.sleep(0.8)
    assert conflict.active
    await asyncio.sleep(2.5)
    assert not conflict.active


async def test_extend_is_ignored_without_auto_release(manager, available_port):
    conflict = await manager.simulate_port_conflict(
        available_port, ConflictOptions(auto_release=False)
    )
    conflict.extend(0.1)
    await asyncio.sleep(0.5)
    assert conflict.active
    await conflict.release()
    conflict.extend(0.1)
    assert not conflict.active


async def test_release_is_idempotent(manager, available_port):
    conflict = await manager.simulate_port_conflict(available_port)
    await asyncio.gather(conflict.release(), conflict.release())
    end_time = conflict.end_time
    await conflict.release()
    assert conflict.end_time == end_time
    assert not manager.conflicts


async def test_delayed_conflict(manager, available_port):
    loop = asyncio.get_running_loop()
    start = loop.time()
    conflict = await manager.simulate_port_conflict(
        available_port, ConflictOptions(immediate=False, delay=0.3)
    )
    assert loop.time() - start >= 0.3
    assert conflict.active
    await conflict.release()


async def test_conflict_startup_timeout_closes_listener(available_port):
    async with ServerLifecycleManager(ManagerConfig(startup_timeout=1e-9)) as manager:
        with pytest.raises(StartupTimeoutError):
            await manager.simulate_port_conflict(available_port)
        assert not manager.conflicts
        assert available_port not in manager.port_registry
        assert await is_port_available(available_port)
        # nothing is left bound to the port
        socket.create_server(("127.0.0.1", available_port)).close()
