"""Unlock command for bsdeploy CLI."""

import sys

import click

from bsdeploy.commands.cli_helpers import exit_on_failures, load_service_config
from bsdeploy.exceptions import BsdeployError
from bsdeploy.host_lock import HostLock
from bsdeploy.remote_exec import RemoteExecutor
from bsdeploy.ui import print_error, print_success


def register_unlock_command(main: click.Group) -> None:
    """Register unlock command with main CLI group.

    Args:
        main: The main CLI group to register commands with
    """

    @main.command()
    @click.option("--host", "hosts", multiple=True, help="Only unlock this host (repeatable)")
    @click.pass_context
    def unlock(ctx: click.Context, hosts: tuple[str, ...]):
        """Remove a stale host lock left by an interrupted run.

        Only use this when no other bsdeploy run is active on the host.
        """
        config = load_service_config(ctx)
        failed = []
        for host in hosts or config.hosts:
            lock = HostLock(RemoteExecutor(host, use_doas=config.doas))
            try:
                owner = lock.owner()
                lock.release()
            except BsdeployError as e:
                print_error(f"{host}: {e}")
                failed.append(host)
                continue
            except KeyboardInterrupt:
                click.echo("\nCancelled by user.")
                sys.exit(130)
            held = f" (held by {owner})" if owner else " (was not locked)"
            print_success(f"{host} unlocked{held}")
        exit_on_failures(failed)
