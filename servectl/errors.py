"""
servectl: Error taxonomy.

Fatal errors abort the current action and map to a nonzero exit code.
Soft timeouts are raised by the polling waits and caught by the lifecycle
controller, which logs them as warnings and carries on.
"""

from __future__ import annotations


class SupervisorError(Exception):
    """Base class for every fatal supervisor failure."""


class InvalidAction(SupervisorError):
    def __init__(self, action: str) -> None:
        super().__init__(f"Unknown action {action!r} (expected start, stop or restart)")
        self.action = action


class ConfigError(SupervisorError):
    pass


class SpawnError(SupervisorError):
    pass


class SignalError(SupervisorError):
    pass


class ExhaustedRangeError(SupervisorError):
    def __init__(self, start: int, end: int) -> None:
        super().__init__(f"No free port in range {start}-{end}")
        self.start = start
        self.end = end


class SupervisorBusy(SupervisorError):
    """Another invocation holds the action lock."""


# ---------------------------------------------------------------------------
# Soft timeouts
# ---------------------------------------------------------------------------
class SoftTimeout(Exception):
    def __init__(self, message: str, timeout: float) -> None:
        super().__init__(message)
        self.timeout = timeout


class ExitTimeout(SoftTimeout):
    pass


class PortReleaseTimeout(SoftTimeout):
    pass


class StartupTimeout(SoftTimeout):
    pass
