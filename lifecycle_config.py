"""Configuration structs and defaults for the server lifecycle helpers.

All durations are in seconds.
"""

import os
import pathlib
import random
import string
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from lifecycle_errors import ConfigurationError

DEFAULT_HOSTNAME = "127.0.0.1"
DEFAULT_PORT = 3000
DEFAULT_START_PORT = 3001
DEFAULT_MAX_ATTEMPTS = 100
DEFAULT_PROBE_TIMEOUT = 1.0
DEFAULT_STARTUP_TIMEOUT = 3.0
DEFAULT_SHUTDOWN_TIMEOUT = 5.0
DEFAULT_READY_TIMEOUT = 3.0
DEFAULT_READY_PHRASE = "running at"
TERMINATE_GRACE_PERIOD = 2.0
CLEANUP_TIMEOUT = 2.0
SUITE_STOP_TIMEOUT = 2.0
QUICK_STOP_TIMEOUT = 1.0

DEFAULT_SERVER_PATH = str(pathlib.Path(__file__).resolve().parent / "hello_server.py")

ENV_PREFIX = "SERVER_LIFECYCLE_"


def generate_id(prefix: str) -> str:
    """Default id for entities created without one."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def _env_float(env, name: str, default: float) -> float:
    value = env.get(ENV_PREFIX + name)
    if value is None or value == "":
        return default
    try:
        result = float(value)
    except ValueError:
        raise ConfigurationError(
            f"{ENV_PREFIX}{name} must be a number, not '{value}'"
        ) from None
    if result <= 0:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be positive")
    return result


def _env_port(env, name: str, default: int) -> int:
    value = env.get(ENV_PREFIX + name)
    if value is None or value == "":
        return default
    try:
        port = int(value)
    except ValueError:
        raise ConfigurationError(
            f"{ENV_PREFIX}{name} must be an integer, not '{value}'"
        ) from None
    if not 0 < port <= 65535:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be between 1 and 65535")
    return port


@dataclass
class ManagerConfig:
    """Manager-wide defaults.

    port: the application's own default port. It is pre-seeded into the
    port registry so the allocator never hands it out.
    server_path: script launched by spawn_server_process.
    """

    port: int = DEFAULT_PORT
    hostname: str = DEFAULT_HOSTNAME
    startup_timeout: float = DEFAULT_STARTUP_TIMEOUT
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    server_path: str = DEFAULT_SERVER_PATH
    start_port: int = DEFAULT_START_PORT
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    cleanup_timeout: float = CLEANUP_TIMEOUT
    log_level: str = "warning"

    @classmethod
    def from_env(cls, env=None) -> "ManagerConfig":
        if env is None:
            env = os.environ
        return cls(
            port=_env_port(env, "PORT", DEFAULT_PORT),
            hostname=env.get(ENV_PREFIX + "HOSTNAME") or DEFAULT_HOSTNAME,
            startup_timeout=_env_float(
                env, "STARTUP_TIMEOUT", DEFAULT_STARTUP_TIMEOUT
            ),
            shutdown_timeout=_env_float(
                env, "SHUTDOWN_TIMEOUT", DEFAULT_SHUTDOWN_TIMEOUT
            ),
            server_path=env.get(ENV_PREFIX + "SERVER_PATH") or DEFAULT_SERVER_PATH,
        )


@dataclass
class ServerConfig:
    """Arguments of create_server_instance.

    Unset id, port and hostname are generated, allocated and taken from the
    manager, respectively.
    """

    instance_id: Optional[str] = None
    port: Optional[int] = None
    hostname: Optional[str] = None
    test_context: str = "unknown"


@dataclass
class StartOptions:
    """timeout defaults to the manager's startup_timeout."""

    timeout: Optional[float] = None
    wait_for_ready: bool = True


@dataclass
class StopOptions:
    """timeout defaults to the manager's shutdown_timeout.

    With force, connections still open after the timeout are aborted.
    """

    timeout: Optional[float] = None
    force: bool = True


@dataclass
class ProcessConfig:
    process_id: Optional[str] = None
    port: Optional[int] = None
    hostname: Optional[str] = None
    server_path: Optional[str] = None
    ready_phrase: str = DEFAULT_READY_PHRASE
    ready_timeout: float = DEFAULT_READY_TIMEOUT
    env: Dict[str, str] = field(default_factory=dict)
    test_context: str = "unknown"


@dataclass
class ConflictOptions:
    """hold_duration: seconds before an auto-release; 0 holds until release().

    With immediate=False, binding waits for delay seconds first.
    """

    hold_duration: float = 5.0
    immediate: bool = True
    delay: float = 0.1
    auto_release: bool = True
    hostname: str = DEFAULT_HOSTNAME


@dataclass
class HooksConfig:
    test_suite: str = "default"
    auto_cleanup: bool = True
    setup_timeout: float = 5.0
    reserved_port_count: int = 5
    base_port: int = DEFAULT_START_PORT
    # spacing keeps each suite's reserved ports away from each other's neighbours
    port_spacing: int = 100
