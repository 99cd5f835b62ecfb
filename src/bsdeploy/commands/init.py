"""Init command for bsdeploy CLI."""

import sys

import click

from bsdeploy.commands.cli_helpers import config_path
from bsdeploy.config import ConfigLoader
from bsdeploy.exceptions import ConfigError
from bsdeploy.ui import print_error, print_step, print_success


def register_init_command(main: click.Group) -> None:
    """Register init command with main CLI group.

    Args:
        main: The main CLI group to register commands with
    """

    @main.command()
    @click.pass_context
    def init(ctx: click.Context):
        """Create a commented service description template.

        Writes config/bsdeploy.yml (or the --config path). An existing
        file is never overwritten.
        """
        path = config_path(ctx)
        print_step(f"Creating configuration at {path}")
        try:
            ConfigLoader.write_template(path)
        except ConfigError as e:
            print_error(str(e))
            sys.exit(1)
        print_success(f"Created {path}")
