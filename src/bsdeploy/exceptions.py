"""Exception hierarchy for bsdeploy.

Every error raised on purpose by bsdeploy derives from BsdeployError so the
CLI can report a host failure and move on to the next host.
"""


class BsdeployError(Exception):
    """Base exception for bsdeploy errors."""

    pass


class RemoteExecError(BsdeployError):
    """Remote command exited non-zero or could not be started."""

    def __init__(
        self,
        message: str,
        host: str | None = None,
        command: str | None = None,
        exit_code: int | None = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.host = host
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class RemoteTimeoutError(RemoteExecError):
    """Remote command exceeded its timeout and was killed."""

    pass


class ConfigError(BsdeployError):
    """Service description is missing, malformed or references undefined secrets."""

    pass


class NoAddressAvailable(BsdeployError):
    """No unused address left in the jail subnet."""

    pass


class CacheCorruptionError(BsdeployError):
    """A cache entry exists on disk without its completion marker."""

    pass


class JailStateError(BsdeployError):
    """Jail lifecycle transition is not allowed from the current phase."""

    pass


class HostLockedError(BsdeployError):
    """Another bsdeploy run holds the host lock."""

    pass


class DeploymentError(BsdeployError):
    """A host deployment failed at a pipeline step."""

    def __init__(self, message: str, host: str, step: str, rolled_back: bool = False):
        super().__init__(message)
        self.host = host
        self.step = step
        self.rolled_back = rolled_back


__all__ = [
    "BsdeployError",
    "CacheCorruptionError",
    "ConfigError",
    "DeploymentError",
    "HostLockedError",
    "JailStateError",
    "NoAddressAvailable",
    "RemoteExecError",
    "RemoteTimeoutError",
]
