"""Shell quoting helpers for remote command construction.

Every value that comes from configuration or the local environment goes
through quote() before it is placed in a remote command string.
"""

import re
import shlex

from bsdeploy.exceptions import ConfigError

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote(value: object) -> str:
    """Quote a value for a POSIX shell using single-quote escaping.

    Example:
        >>> quote("hello world")
        "'hello world'"
        >>> quote("/var/db/app")
        '/var/db/app'
    """
    return shlex.quote(str(value))


def escape_env_value(value: str) -> str:
    """Escape a value that the caller places inside single quotes."""
    return value.replace("'", "'\\''")


def env_export(name: str, value: str) -> str:
    """Build an ``export NAME='value'`` line.

    Raises:
        ConfigError: If name is not a valid environment variable name
    """
    if not _ENV_NAME.match(name):
        raise ConfigError(f"Invalid environment variable name: {name!r}")
    return f"export {name}='{escape_env_value(value)}'"


def join(args: list[str]) -> str:
    """Quote and join arguments into a single command string."""
    return " ".join(quote(a) for a in args)


__all__ = ["env_export", "escape_env_value", "join", "quote"]
