import asyncio
import contextlib
import logging
import time
from typing import Container

from lifecycle_config import (
    DEFAULT_HOSTNAME,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PROBE_TIMEOUT,
    DEFAULT_START_PORT,
)
from lifecycle_errors import PortRangeExhaustedError, StartupTimeoutError

LOGGER = logging.getLogger("server_lifecycle")


async def is_port_available(
    port: int, hostname: str = DEFAULT_HOSTNAME, timeout: float = DEFAULT_PROBE_TIMEOUT
) -> bool:
    """Return False if something accepts a TCP connection on (hostname, port).

    A refused connection means nothing listens there. A probe that gets no
    answer within `timeout` is also reported as available, so that slow or
    firewalled hosts never block test setup. Single attempt, no retries.
    """
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(hostname, port), timeout
        )
    except asyncio.TimeoutError:
        return True
    except ConnectionRefusedError:
        return True
    except OSError as exc:
        LOGGER.debug("Probe of %s:%d failed: %s", hostname, port, exc)
        return True
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return False


async def find_available_port(
    start_port: int = DEFAULT_START_PORT,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    hostname: str = DEFAULT_HOSTNAME,
    reserved: Container[int] = (),
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> int:
    """Return the lowest port in [start_port, start_port + max_attempts) that
    is neither reserved nor answering probes."""
    end = start_port + max_attempts - 1
    for port in range(start_port, end + 1):
        if port in reserved:
            continue
        if await is_port_available(port, hostname, probe_timeout):
            return port
    raise PortRangeExhaustedError(start_port, end)


async def wait_for_server_ready(
    port: int,
    hostname: str = DEFAULT_HOSTNAME,
    timeout: float = 5.0,
    interval: float = 0.1,
) -> bool:
    deadline = time.monotonic() + timeout
    while True:
        if not await is_port_available(port, hostname, min(interval * 5, 0.5)):
            return True
        if time.monotonic() >= deadline:
            raise StartupTimeoutError(
                f"Server ready timeout: No response from {hostname}:{port} within {timeout}s"
            )
        await asyncio.sleep(interval)
