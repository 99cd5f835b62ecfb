"""Jail environment file rendering.

The environment file is sourced by every hook and start command. It is
rendered locally, before anything changes on the host, so an undefined
secret fails the deploy up front.
"""

import os
from collections.abc import Mapping

from bsdeploy.config import EnvConfig
from bsdeploy.exceptions import ConfigError
from bsdeploy.shell import env_export


def resolve_secrets(
    names: tuple[str, ...], environ: Mapping[str, str] | None = None
) -> dict[str, str]:
    """Read secret values from the local environment.

    Raises:
        ConfigError: Naming every undefined secret
    """
    environ = os.environ if environ is None else environ
    missing = [name for name in names if name not in environ]
    if missing:
        raise ConfigError(
            f"Secret environment variables not set locally: {', '.join(missing)}"
        )
    return {name: environ[name] for name in names}


def build_env_content(
    env: EnvConfig,
    activate_mise: bool = False,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Render the environment file.

    Args:
        env: Declared clear and secret variables
        activate_mise: Append mise shell activation
        environ: Source for secret values (default: os.environ)

    Returns:
        Shell script of export lines
    """
    lines = [env_export(name, value) for name, value in env.clear]
    secrets = resolve_secrets(env.secret, environ)
    lines.extend(env_export(name, value) for name, value in secrets.items())

    content = "\n".join(lines) + "\n" if lines else ""
    if activate_mise:
        content += '\neval "$(mise activate bash)"\n'
    return content


__all__ = ["build_env_content", "resolve_secrets"]
