"""Status command for bsdeploy CLI."""

import sys

import click

from bsdeploy.commands.cli_helpers import exit_on_failures, load_service_config
from bsdeploy.status import StatusReporter, render_host_status
from bsdeploy.ui import console, print_error, print_warning, spinner


def register_status_command(main: click.Group) -> None:
    """Register status command with main CLI group.

    Args:
        main: The main CLI group to register commands with
    """

    @main.command()
    @click.pass_context
    def status(ctx: click.Context):
        """Show the service's jails on every host.

        Lists jails newest first with their state, address and creation
        time, marks the active jail and shows the proxy backend.
        """
        config = load_service_config(ctx)
        try:
            with spinner("Collecting status..."):
                statuses = StatusReporter(config).collect_all()
        except KeyboardInterrupt:
            click.echo("\nCancelled by user.")
            sys.exit(130)

        for host_status in statuses:
            if host_status.error:
                print_error(f"{host_status.host}: {host_status.error}")
                continue
            if not host_status.jails:
                print_warning(f"{host_status.host}: no jails for {config.service}")
                continue
            console.print(render_host_status(host_status))

        exit_on_failures([s.host for s in statuses if s.error])
