"""Deploy command for bsdeploy CLI.

This module provides the deploy command: build or reuse the image, create
a fresh jail, cut traffic over to it and prune old generations.
"""

import sys
from pathlib import Path

import click

from bsdeploy.commands.cli_helpers import exit_on_failures, load_service_config
from bsdeploy.deploy import DeploymentOrchestrator, HostDeployResult
from bsdeploy.exceptions import BsdeployError
from bsdeploy.ui import print_error, print_step, print_success, print_warning, spinner


def _report(result: HostDeployResult) -> None:
    if not result.success:
        step = f" during '{result.failed_step}'" if result.failed_step else ""
        print_error(f"{result.host}: failed{step}: {result.error}")
        if result.rolled_back:
            print_warning(f"{result.host}: new jail was removed, previous jail still serves")
        return

    print_success(
        f"{result.host}: {result.jail_name} serving on {result.ip} ({result.duration:.1f}s)"
    )
    if result.pruned:
        print_step(f"{result.host}: pruned {', '.join(result.pruned)}")
    if result.prune_incomplete:
        print_warning(
            f"{result.host}: old jail(s) only partially removed: "
            f"{', '.join(result.prune_incomplete)}"
        )


def register_deploy_command(main: click.Group) -> None:
    """Register deploy command with main CLI group.

    Args:
        main: The main CLI group to register commands with
    """

    @main.command()
    @click.option(
        "--source",
        "source_dir",
        default=".",
        type=click.Path(exists=True, file_okay=False, path_type=Path),
        help="Application directory to deploy (default: current directory)",
    )
    @click.pass_context
    def deploy(ctx: click.Context, source_dir: Path):
        """Deploy the application to every host.

        Each host gets a new jail. Traffic moves to it only after its
        start commands succeed; on failure the new jail is removed and
        the previous one keeps serving.

        \b
        Examples:
            bsdeploy deploy
            bsdeploy -c config/staging.yml deploy
            bsdeploy deploy --source ./app
        """
        config = load_service_config(ctx)
        print_step(f"Deploying {config.service} to {len(config.hosts)} host(s)")

        orchestrator = DeploymentOrchestrator(config, source_dir=source_dir)
        results = []
        try:
            orchestrator.prepare()
            for host in config.hosts:
                with spinner(f"Deploying to {host}...") as progress:
                    orchestrator.progress_callback = progress
                    try:
                        result = orchestrator.deploy_host(host)
                    except BsdeployError as e:
                        result = HostDeployResult(
                            host=host,
                            success=False,
                            error=str(e),
                            failed_step=getattr(e, "step", None),
                            rolled_back=getattr(e, "rolled_back", False),
                        )
                _report(result)
                results.append(result)
        except BsdeployError as e:
            print_error(str(e))
            sys.exit(1)
        except KeyboardInterrupt:
            click.echo("\nCancelled by user.")
            sys.exit(130)

        exit_on_failures([r.host for r in results if not r.success])
