"""
Exception types for the server lifecycle helpers.

Setup-path operations (create, start, spawn, simulate) raise these.
Teardown and cleanup paths log them and carry on.
"""

from typing import Optional


class LifecycleError(Exception):
    """Base class for all server lifecycle failures."""

    pass


class PortInUseError(LifecycleError):
    """Target address is already occupied.

    Raised before a listener is started when the port is held by another
    tracked entity or answers a probe, and when binding fails with
    EADDRINUSE.
    """

    def __init__(self, message: str, port: int, owner_id: Optional[str] = None):
        super().__init__(message)
        self.port = port
        self.owner_id = owner_id


class StartupError(LifecycleError):
    """A server or process failed to start."""

    pass


class StartupTimeoutError(StartupError):
    """No ready signal was received within the allotted window."""

    pass


class ConfigurationError(LifecycleError):
    """Invalid configuration, e.g. a missing server executable."""

    pass


class ShutdownError(LifecycleError):
    """Graceful shutdown did not complete and forcing was not allowed."""

    pass


class PortRangeExhaustedError(LifecycleError):
    """No free port was found in the scanned window."""

    def __init__(self, start: int, end: int):
        super().__init__(f"No available ports found in range {start}-{end}")
        self.start = start
        self.end = end


class InstanceStateError(LifecycleError):
    """Operation not allowed in the entity's current state."""

    pass
