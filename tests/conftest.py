from pathlib import Path

import pytest

from lifecycle_config import ManagerConfig
from server_lifecycle import ServerLifecycleManager

from .utils import TESTS_DIR, find_free_port

pytest_plugins = ["pytest_lifecycle"]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def tests_dir() -> Path:
    return TESTS_DIR


@pytest.fixture
def available_port() -> int:
    return find_free_port()


@pytest.fixture
def manager_config() -> ManagerConfig:
    return ManagerConfig(startup_timeout=5.0, shutdown_timeout=2.0)


@pytest.fixture
async def manager(manager_config):
    async with ServerLifecycleManager(manager_config) as manager:
        yield manager
