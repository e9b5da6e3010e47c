"""
Exceptions raised by the build-watch supervisor.

Each startup-fatal error carries the exit code the supervisor process
returns when it is the reason for shutting down.
"""


class SupervisorError(Exception):
    """Base exception for buildwatch."""

    exit_code = 1


class BuildFailure(SupervisorError):
    """The external build command failed where a build was required."""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class SpawnFailure(SupervisorError):
    """The server artifact could not be launched."""


class AddressInUse(SupervisorError):
    """The bind address is owned by a live handle or still held by another process."""


class StartupFailure(SupervisorError):
    """No server could be started, even after the fallback rebuild."""
