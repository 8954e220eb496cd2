"""pytest fixtures for tests that need throwaway HTTP servers.

Enable with ``pytest_plugins = ["pytest_lifecycle"]`` in a conftest.py.
The fixtures are async and run under anyio's pytest plugin, so tests using
them must be marked ``pytest.mark.anyio`` (with ``anyio_backend`` set to
"asyncio").
"""

import pytest

from lifecycle_config import ManagerConfig
from server_lifecycle import ServerLifecycleManager


@pytest.fixture
async def lifecycle_manager():
    async with ServerLifecycleManager(ManagerConfig.from_env()) as manager:
        yield manager


@pytest.fixture
async def lifecycle_suite(request, lifecycle_manager):
    """SuiteController scoped to the requesting test module."""
    hooks = lifecycle_manager.runner_hooks(request.module.__name__)
    controller = await hooks.before_all()
    try:
        yield controller
    finally:
        await hooks.after_each()
        await hooks.after_all()
