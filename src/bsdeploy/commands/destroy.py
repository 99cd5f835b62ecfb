"""Destroy command for bsdeploy CLI.

This module provides the destroy command for removing a service from its
hosts.
"""

import sys

import click

from bsdeploy.commands.cli_helpers import exit_on_failures, load_service_config
from bsdeploy.exceptions import BsdeployError
from bsdeploy.teardown import ServiceTeardown
from bsdeploy.ui import print_error, print_step, print_success, print_warning, spinner


def register_destroy_command(main: click.Group) -> None:
    """Register destroy command with main CLI group.

    Args:
        main: The main CLI group to register commands with
    """

    @main.command()
    @click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
    @click.pass_context
    def destroy(ctx: click.Context, force: bool):
        """Remove every jail, the active link and the proxy site of the service.

        Cached base systems and images are kept.
        """
        config = load_service_config(ctx)
        hosts = ", ".join(config.hosts)
        if not force and not click.confirm(
            f"Destroy all resources of {config.service} on {hosts}?", default=False
        ):
            click.echo("Cancelled.")
            return

        print_step(f"Destroying {config.service} on {len(config.hosts)} host(s)")
        try:
            with spinner("Destroying resources...") as progress:
                results = ServiceTeardown(config, progress_callback=progress).destroy_all()
        except BsdeployError as e:
            print_error(str(e))
            sys.exit(1)
        except KeyboardInterrupt:
            click.echo("\nCancelled by user.")
            sys.exit(130)

        for result in results:
            if not result.success:
                print_error(f"{result.host}: {result.error}")
                continue
            print_success(f"{result.host}: removed {len(result.destroyed)} jail(s)")
            if result.incomplete:
                print_warning(
                    f"{result.host}: partially removed {', '.join(result.incomplete)}"
                )
        exit_on_failures([r.host for r in results if not r.success])
