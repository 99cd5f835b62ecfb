"""Deployment orchestration.

Rolls a service out to each host in turn:

     1. Resolve the base version (override, else host release)
     2. Ensure the base system
     3. Ensure the image
     4. Create the jail
     5. Start it on the host network, hand data dirs to the run-as user
     6. Sync the application source into /app
     7. Fix ownership, write the environment file
     8. Run before_start hooks
     9. Restart with the private address (run/log dirs recreated)
    10. Start the service processes
    11. Record boot metadata and mark the jail active
    12. Point the proxy at the new jail
    13. Stop the service in the service's other jails
    14. Prune jails beyond the retention count

A failure in steps 5-11 destroys the new jail before the error surfaces.
Steps 1-4 leave nothing behind. From step 12 on traffic may already be on
the new jail, so nothing is rolled back; stopping old services and
pruning are best-effort.

Everything taken from the local machine (secrets, certificates) is
resolved before the first remote command, so a missing variable never
leaves a half-deployed host.

Public API:
    DeploymentOrchestrator: Run the pipeline across hosts
    HostDeployResult: Outcome for one host
    select_jails_to_prune: Retention policy
"""

import logging
import os
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from bsdeploy.base_system import resolve_base_version
from bsdeploy.boot import JailMetadata, log_file, pid_file
from bsdeploy.config import ServiceConfig
from bsdeploy.constants import (
    JAIL_APP_DIR,
    JAIL_ENV_FILE,
    JAILS_TO_KEEP,
    RUN_DIR,
    STOP_MAX_POLLS,
    STOP_POLL_INTERVAL,
)
from bsdeploy.environment import build_env_content
from bsdeploy.exceptions import BsdeployError, ConfigError, DeploymentError
from bsdeploy.host_context import HostContext
from bsdeploy.host_lock import host_lock
from bsdeploy.jail import DataBinding, Jail, JailPhase
from bsdeploy.proxy import resolve_certificate
from bsdeploy.remote_exec import RemoteExecutor
from bsdeploy.shell import quote

logger = logging.getLogger(__name__)


@dataclass
class HostDeployResult:
    """Outcome of deploying to one host."""

    host: str
    success: bool
    jail_name: str | None = None
    ip: str | None = None
    image_path: str | None = None
    stopped: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)
    # Old jails whose removal left something behind
    prune_incomplete: list[str] = field(default_factory=list)
    error: str | None = None
    failed_step: str | None = None
    rolled_back: bool = False
    duration: float = 0.0


def select_jails_to_prune(
    jails: Iterable[str], current: str, keep: int = JAILS_TO_KEEP
) -> list[str]:
    """Pick the jails to destroy so at most keep remain, current included.

    Jail names sort in creation order, so the oldest go first. The
    current jail is never selected, wherever its name sorts.

    Example:
        >>> select_jails_to_prune(["a-1", "a-2", "a-3", "a-4"], "a-4", keep=3)
        ['a-1']
    """
    others = sorted(set(jails) - {current})
    excess = len(others) + 1 - keep
    if excess <= 0:
        return []
    return others[:excess]


def app_sync_excludes(bindings: Iterable[DataBinding]) -> list[str]:
    """rsync excludes for data directories mounted inside the app dir."""
    excludes = []
    prefix = f"{JAIL_APP_DIR}/"
    for binding in bindings:
        if binding.jail_path.startswith(prefix):
            relative = binding.jail_path[len(prefix) :].strip("/")
            if relative:
                excludes.append(f"/{relative}")
    return excludes


def in_app_env(command: str) -> str:
    """Wrap a command to run in /app with the environment file sourced."""
    return f"bash -c {quote(f'source {JAIL_ENV_FILE} && cd {JAIL_APP_DIR} && {command}')}"


def stop_service_script(service: str) -> str:
    """Shell snippet stopping every daemon of service by PID file.

    SIGTERM first, then polls; SIGKILL once the wait is exhausted.
    """
    return (
        f"for f in {RUN_DIR}/{service}/*.pid; do "
        '[ -f "$f" ] || continue; '
        'pkill -F "$f"; '
        "count=0; "
        'while pkill -0 -F "$f" >/dev/null 2>&1; do '
        f"sleep {STOP_POLL_INTERVAL}; "
        "count=$((count+1)); "
        f'if [ $count -ge {STOP_MAX_POLLS} ]; then pkill -9 -F "$f"; break; fi; '
        "done; "
        "done; true"
    )


@dataclass
class PreparedDeploy:
    """Inputs resolved locally before any host is touched."""

    env_content: str
    certificate: tuple[str, str] | None = None


class DeploymentOrchestrator:
    """Deploy a service to its hosts.

    Example:
        >>> orchestrator = DeploymentOrchestrator(config, source_dir=Path("."))
        >>> results = orchestrator.deploy_all()
    """

    def __init__(
        self,
        config: ServiceConfig,
        source_dir: str | Path = ".",
        progress_callback: Callable[[str], None] | None = None,
        executor_factory: Callable[[str], RemoteExecutor] | None = None,
        environ: Mapping[str, str] | None = None,
        keep: int = JAILS_TO_KEEP,
    ):
        self.config = config
        self.source_dir = Path(source_dir)
        self.progress_callback = progress_callback
        self.executor_factory = executor_factory or (
            lambda host: RemoteExecutor(host, use_doas=config.doas)
        )
        self.environ = os.environ if environ is None else environ
        self.keep = keep
        self._prepared: PreparedDeploy | None = None

    def _progress(self, host: str, message: str) -> None:
        if self.progress_callback:
            self.progress_callback(f"[{host}] {message}")

    def prepare(self) -> PreparedDeploy:
        """Resolve local inputs.

        Raises:
            ConfigError: If start commands are missing or a secret is undefined
        """
        if self._prepared is None:
            if not self.config.start:
                raise ConfigError("'start' must list at least one command to deploy")

            certificate = None
            if self.config.proxy and self.config.proxy.ssl:
                certificate = resolve_certificate(self.config.proxy.ssl, self.environ)

            self._prepared = PreparedDeploy(
                env_content=build_env_content(
                    self.config.env, activate_mise=bool(self.config.mise), environ=self.environ
                ),
                certificate=certificate,
            )
        return self._prepared

    def deploy_all(self) -> list[HostDeployResult]:
        """Deploy to every configured host, continuing past failed hosts.

        Raises:
            ConfigError: If local inputs cannot be resolved (no host is touched)
        """
        self.prepare()
        results = []
        for host in self.config.hosts:
            try:
                results.append(self.deploy_host(host))
            except BsdeployError as e:
                logger.error(f"Deploy to {host} failed: {e}")
                results.append(
                    HostDeployResult(
                        host=host,
                        success=False,
                        error=str(e),
                        failed_step=getattr(e, "step", None),
                        rolled_back=getattr(e, "rolled_back", False),
                    )
                )
        return results

    def deploy_host(self, host: str) -> HostDeployResult:
        """Run the full pipeline on one host under its host lock.

        Raises:
            ConfigError: If local inputs cannot be resolved
            HostLockedError: If another run holds the host
            DeploymentError: If a pipeline step fails
        """
        prepared = self.prepare()
        executor = self.executor_factory(host)
        ctx = HostContext.create(executor, self.config.service, self.progress_callback)

        start_time = time.time()
        with host_lock(executor):
            result = self._run_pipeline(ctx, prepared)
        result.duration = time.time() - start_time
        logger.info(f"Deployed {self.config.service} to {host} in {result.duration:.1f}s")
        return result

    def _run_pipeline(self, ctx: HostContext, prepared: PreparedDeploy) -> HostDeployResult:
        config = self.config
        host = ctx.host
        step = "resolve base version"

        try:
            base_version = resolve_base_version(ctx.executor, config.jail.base_version)

            step = "ensure base system"
            self._progress(host, f"Ensuring base system {base_version}...")
            ctx.bases.ensure_base(base_version)

            step = "ensure image"
            self._progress(host, "Checking image...")
            image_path = ctx.images.ensure_image(
                base_version, config.packages, config.mise, config.user
            )

            step = "create jail"
            self._progress(host, "Creating new jail from image...")
            jail = ctx.jails.create(
                config.service,
                base_version,
                config.jail.ip_range,
                image_path=image_path,
                data_bindings=config.data_directories,
            )
        except BsdeployError as e:
            raise DeploymentError(
                f"Deploy to {host} failed at '{step}': {e}", host=host, step=step
            ) from e

        self._progress(host, f"Jail created: {jail.name} ({jail.ip})")
        result = HostDeployResult(
            host=host, success=False, jail_name=jail.name, ip=jail.ip, image_path=image_path
        )

        try:
            step = "start build phase"
            self._progress(host, "Starting jail (build phase)...")
            ctx.jails.start_build_phase(jail, config.user, config.data_directories)

            step = "sync application"
            self._sync_application(ctx, jail)

            step = "configure environment"
            self._configure_environment(ctx, jail, prepared)

            step = "run before_start hooks"
            self._run_hooks(ctx, jail)

            step = "cutover to production"
            self._progress(host, "Restarting jail with isolated networking...")
            ctx.jails.cutover_to_production(jail, config.user)

            step = "start services"
            self._start_services(ctx, jail)

            step = "record active jail"
            self._record_active(ctx, jail, base_version, image_path)
        except BsdeployError as e:
            self._progress(host, f"Deployment failed, cleaning up jail {jail.name}...")
            logger.error(f"Step '{step}' failed on {host}, rolling back {jail.name}")
            ctx.jails.destroy(jail.name, jail.ip)
            jail.transition(JailPhase.DESTROYED)
            raise DeploymentError(
                f"Deploy to {host} failed at '{step}': {e}",
                host=host,
                step=step,
                rolled_back=True,
            ) from e

        if config.proxy:
            step = "update proxy"
            self._progress(host, f"Switching traffic to {jail.ip}...")
            try:
                ctx.proxy.install(config.proxy, jail.ip, prepared.certificate)
            except BsdeployError as e:
                raise DeploymentError(
                    f"Jail {jail.name} is running but the proxy update on {host} failed: {e}",
                    host=host,
                    step=step,
                ) from e

        result.stopped = self._stop_old_services(ctx, jail)
        self._prune(ctx, jail, result)
        result.success = True
        return result

    def _sync_application(self, ctx: HostContext, jail: Jail) -> None:
        self._progress(ctx.host, "Syncing app to jail...")
        app_root = f"{jail.path}{JAIL_APP_DIR}"
        ctx.executor.run(f"mkdir -p {quote(app_root)}", privileged=True)
        ctx.executor.sync_tree(
            self.source_dir,
            app_root,
            excludes=app_sync_excludes(self.config.data_directories),
            privileged=True,
        )

    def _configure_environment(
        self, ctx: HostContext, jail: Jail, prepared: PreparedDeploy
    ) -> None:
        if self.config.user:
            ctx.jails.exec_in_jail(
                jail.name, f"chown -R {quote(self.config.user)} {JAIL_APP_DIR}"
            )
        ctx.executor.write_file(
            prepared.env_content, f"{jail.path}{JAIL_ENV_FILE}", privileged=True
        )

    def _run_hooks(self, ctx: HostContext, jail: Jail) -> None:
        config = self.config
        if config.mise:
            try:
                ctx.jails.exec_in_jail(jail.name, f"mise trust {JAIL_APP_DIR}", user=config.user)
            except BsdeployError as e:
                logger.debug(f"mise trust in {jail.name} failed: {e}")

        for hook in config.before_start:
            self._progress(ctx.host, f"Jail: Running {hook}...")
            ctx.jails.exec_in_jail(jail.name, in_app_env(hook), user=config.user)

    def _start_services(self, ctx: HostContext, jail: Jail) -> None:
        config = self.config
        for index, command in enumerate(config.start):
            self._progress(ctx.host, f"Jail: Starting {command}...")
            daemon = (
                f"daemon -f -p {pid_file(config.service, index)} "
                f"-o {log_file(config.service, index)}"
            )
            if config.user:
                daemon += f" -u {quote(config.user)}"
            ctx.jails.exec_in_jail(jail.name, f"{daemon} {in_app_env(command)}")

    def _record_active(
        self, ctx: HostContext, jail: Jail, base_version: str, image_path: str
    ) -> None:
        metadata = JailMetadata.build(
            jail_name=jail.name,
            ip=jail.ip or "",
            service=self.config.service,
            base_version=base_version,
            user=self.config.user,
            image_path=image_path,
            zfs=jail.cloned,
            data_bindings=self.config.data_directories,
            start_commands=self.config.start,
        )
        ctx.boot.write_metadata(jail.path, metadata)
        ctx.boot.activate(self.config.service, jail.path)

    def _stop_old_services(self, ctx: HostContext, jail: Jail) -> list[str]:
        """Stop the service in every other running jail of the service."""
        self._progress(ctx.host, "Stopping processes in old jails...")
        running = ctx.jails.running_jails()
        stopped = []
        for name in ctx.jails.list_jails(self.config.service):
            if name == jail.name or name not in running:
                continue
            try:
                ctx.jails.exec_in_jail(name, stop_service_script(self.config.service))
                stopped.append(name)
            except BsdeployError as e:
                logger.warning(f"Failed to stop service in {name} on {ctx.host}: {e}")
        return stopped

    def _prune(self, ctx: HostContext, jail: Jail, result: HostDeployResult) -> None:
        self._progress(ctx.host, "Pruning old jails...")
        existing = ctx.jails.list_jails(self.config.service)
        for name in select_jails_to_prune(existing, jail.name, self.keep):
            if ctx.jails.destroy(name):
                result.pruned.append(name)
            else:
                result.prune_incomplete.append(name)


__all__ = [
    "DeploymentOrchestrator",
    "HostDeployResult",
    "PreparedDeploy",
    "app_sync_excludes",
    "in_app_env",
    "select_jails_to_prune",
    "stop_service_script",
]
