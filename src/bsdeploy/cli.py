"""CLI entry point for bsdeploy.

Commands:
    bsdeploy init       # Write a template config/bsdeploy.yml
    bsdeploy setup      # Prepare hosts (packages, datasets, Caddy, boot script)
    bsdeploy deploy     # Build, start and cut over to a new jail on every host
    bsdeploy status     # Show jails, the active one and the proxy backend
    bsdeploy destroy    # Remove all jails and proxy config of the service
    bsdeploy unlock     # Remove a stale host lock
"""

import logging
from pathlib import Path

import click

from bsdeploy import __version__
from bsdeploy.commands import (
    register_deploy_command,
    register_destroy_command,
    register_init_command,
    register_setup_command,
    register_status_command,
    register_unlock_command,
)
from bsdeploy.config import DEFAULT_CONFIG_PATH

VERBOSE_FORMAT = "%(asctime)s %(name)s %(levelname)s: %(message)s"


def configure_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format=VERBOSE_FORMAT, force=True)
    else:
        logging.basicConfig(level=logging.INFO, format="%(message)s", force=True)


@click.group(context_settings={"help_option_names": ["--help", "-h"]})
@click.option(
    "--config",
    "-c",
    "config_path",
    default=str(DEFAULT_CONFIG_PATH),
    show_default=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Service description file",
)
@click.option("--verbose", "-v", is_flag=True, help="Show remote commands and debug output")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, config_path: Path, verbose: bool) -> None:
    """bsdeploy - deploy applications into FreeBSD jails.

    Each deploy builds a fresh jail from a cached image, starts the
    application in it and switches the Caddy reverse proxy over, keeping
    previous jails for rollback.

    \b
    Examples:
        bsdeploy init
        bsdeploy setup
        bsdeploy deploy
        bsdeploy -c config/staging.yml status
    """
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


register_init_command(main)
register_setup_command(main)
register_deploy_command(main)
register_status_command(main)
register_destroy_command(main)
register_unlock_command(main)


if __name__ == "__main__":
    main()


__all__ = ["configure_logging", "main"]
