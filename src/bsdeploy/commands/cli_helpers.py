"""Shared helper functions for CLI commands."""

import logging
import sys
from pathlib import Path

import click

from bsdeploy.config import DEFAULT_CONFIG_PATH, ConfigLoader, ServiceConfig
from bsdeploy.exceptions import BsdeployError
from bsdeploy.ui import print_error

logger = logging.getLogger(__name__)


def config_path(ctx: click.Context) -> Path:
    """Get the --config path given to the main group."""
    obj = ctx.find_root().obj or {}
    return Path(obj.get("config_path") or DEFAULT_CONFIG_PATH)


def load_service_config(ctx: click.Context) -> ServiceConfig:
    """Load the service description or exit with status 1."""
    try:
        return ConfigLoader.load(config_path(ctx))
    except BsdeployError as e:
        print_error(str(e))
        sys.exit(1)


def exit_on_failures(failed_hosts: list[str]) -> None:
    """Exit with status 1 when any host failed."""
    if failed_hosts:
        print_error(f"Failed on {len(failed_hosts)} host(s): {', '.join(failed_hosts)}")
        sys.exit(1)


__all__ = ["config_path", "exit_on_failures", "load_service_config"]
