"""Setup command for bsdeploy CLI.

This module provides the setup command that prepares hosts for deploys.
"""

import sys

import click

from bsdeploy.commands.cli_helpers import exit_on_failures, load_service_config
from bsdeploy.exceptions import BsdeployError
from bsdeploy.provisioning import HostProvisioner
from bsdeploy.ui import print_error, print_step, print_success, spinner


def register_setup_command(main: click.Group) -> None:
    """Register setup command with main CLI group.

    Args:
        main: The main CLI group to register commands with
    """

    @main.command()
    @click.pass_context
    def setup(ctx: click.Context):
        """Prepare hosts: packages, user, datasets, Caddy, boot script.

        Safe to run again after changing packages, the user, data
        directories, environment or proxy settings.
        """
        config = load_service_config(ctx)
        print_step(f"Setting up {len(config.hosts)} host(s) for {config.service}")

        try:
            with spinner("Setting up hosts...") as progress:
                results = HostProvisioner(config, progress_callback=progress).setup_all()
        except BsdeployError as e:
            print_error(str(e))
            sys.exit(1)
        except KeyboardInterrupt:
            click.echo("\nCancelled by user.")
            sys.exit(130)

        for result in results:
            if result.success:
                storage = "ZFS" if result.zfs else "plain directories"
                print_success(f"{result.host} is ready ({storage})")
            else:
                print_error(f"{result.host}: {result.error}")
        exit_on_failures([r.host for r in results if not r.success])
