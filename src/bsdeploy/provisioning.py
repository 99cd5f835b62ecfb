"""Host provisioning for the setup command.

Prepares a FreeBSD host once so deploys can run against it: host
packages, the run-as user, ZFS datasets for the caches and jails,
service directories, the host-side environment file, Caddy and the boot
script. Every step is safe to repeat.
"""

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from bsdeploy.config import ServiceConfig
from bsdeploy.constants import (
    ACTIVE_DIR,
    APP_DATA_DIR,
    BASE_DIR,
    BSDEPLOY_BASE,
    CONFIG_DIR,
    DEFAULT_ZFS_POOL,
    IMAGES_DIR,
    JAILS_DIR,
    LOG_DIR,
    RUN_DIR,
)
from bsdeploy.environment import build_env_content
from bsdeploy.exceptions import BsdeployError
from bsdeploy.host_context import HostContext
from bsdeploy.proxy import resolve_certificate
from bsdeploy.remote_exec import RemoteExecutor
from bsdeploy.shell import quote

logger = logging.getLogger(__name__)

HOST_PACKAGES = ("caddy", "rsync", "git", "bash", "jq")


@dataclass
class HostSetupResult:
    host: str
    success: bool
    zfs: bool = False
    error: str | None = None


def zfs_layout(pool: str) -> list[tuple[str, str]]:
    """(dataset, mountpoint) pairs created on ZFS hosts, parents first."""
    root = f"{pool}/bsdeploy"
    return [
        (root, BSDEPLOY_BASE),
        (f"{root}/base", BASE_DIR),
        (f"{root}/images", IMAGES_DIR),
        (f"{root}/jails", JAILS_DIR),
    ]


class HostProvisioner:
    """Run setup across the configured hosts."""

    def __init__(
        self,
        config: ServiceConfig,
        progress_callback: Callable[[str], None] | None = None,
        executor_factory: Callable[[str], RemoteExecutor] | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self.config = config
        self.progress_callback = progress_callback
        self.executor_factory = executor_factory or (
            lambda host: RemoteExecutor(host, use_doas=config.doas)
        )
        self.environ = os.environ if environ is None else environ

    def _progress(self, host: str, message: str) -> None:
        if self.progress_callback:
            self.progress_callback(f"[{host}] {message}")

    def setup_all(self) -> list[HostSetupResult]:
        """Set up every host, continuing past failed hosts.

        Raises:
            ConfigError: If a secret or certificate is undefined locally
        """
        env_content = build_env_content(
            self.config.env, activate_mise=bool(self.config.mise), environ=self.environ
        )
        certificate = None
        if self.config.proxy and self.config.proxy.ssl:
            certificate = resolve_certificate(self.config.proxy.ssl, self.environ)

        results = []
        for host in self.config.hosts:
            try:
                results.append(self.setup_host(host, env_content, certificate))
            except BsdeployError as e:
                logger.error(f"Setup of {host} failed: {e}")
                results.append(HostSetupResult(host=host, success=False, error=str(e)))
        return results

    def setup_host(
        self, host: str, env_content: str, certificate: tuple[str, str] | None = None
    ) -> HostSetupResult:
        """Provision one host.

        Raises:
            RemoteExecError: If a required step fails
        """
        config = self.config
        ctx = HostContext.create(self.executor_factory(host), config.service)
        executor = ctx.executor

        self._progress(host, "Updating pkg repositories...")
        executor.run("pkg update", privileged=True)

        self._progress(host, "Installing default packages...")
        executor.run(f"pkg install -y {' '.join(HOST_PACKAGES)}", privileged=True)

        if config.user:
            self._progress(host, f"Ensuring user {config.user} exists...")
            if not executor.succeeds(f"id {quote(config.user)}"):
                executor.run(
                    f"pw useradd -n {quote(config.user)} -m -s /usr/local/bin/bash",
                    privileged=True,
                )

        if config.packages:
            self._progress(host, "Installing user packages...")
            pkgs = " ".join(quote(p) for p in config.packages)
            executor.run(f"pkg install -y {pkgs}", privileged=True)

        zfs = self._setup_zfs(ctx)
        self._setup_directories(ctx)

        self._progress(host, "Configuring environment...")
        executor.write_file(env_content, f"{CONFIG_DIR}/{config.service}/env", privileged=True)

        self._setup_caddy(ctx, certificate)

        self._progress(host, "Installing boot script...")
        ctx.boot.install()

        logger.info(f"Setup complete for {host}")
        return HostSetupResult(host=host, success=True, zfs=zfs)

    def _setup_zfs(self, ctx: HostContext) -> bool:
        """Create the bsdeploy datasets when the root filesystem is ZFS.

        Returns:
            True if the host uses ZFS
        """
        root_dataset = ctx.storage.containing_dataset("/")
        if not root_dataset:
            logger.debug(f"{ctx.host} has no ZFS root, using plain directories")
            return False

        pool = root_dataset.split("/")[0] or DEFAULT_ZFS_POOL
        self._progress(ctx.host, f"ZFS detected (pool: {pool}). Setting up datasets...")
        for dataset, mountpoint in zfs_layout(pool):
            if ctx.executor.succeeds(f"zfs list -H -o name {quote(dataset)}"):
                continue
            try:
                ctx.storage.create_dataset(dataset, mountpoint)
            except BsdeployError as e:
                # Falls back to a plain directory below
                logger.warning(f"Could not create dataset {dataset} on {ctx.host}: {e}")
        return True

    def _setup_directories(self, ctx: HostContext) -> None:
        config = self.config
        service = config.service
        self._progress(ctx.host, "Creating directories...")

        directories = [
            BASE_DIR,
            IMAGES_DIR,
            JAILS_DIR,
            ACTIVE_DIR,
            f"{APP_DATA_DIR}/{service}/app",
            f"{CONFIG_DIR}/{service}",
            f"{RUN_DIR}/{service}",
            f"{LOG_DIR}/{service}",
        ]
        directories.extend(b.host_path for b in config.data_directories)
        ctx.executor.run(f"mkdir -p {' '.join(quote(d) for d in directories)}", privileged=True)

        if config.user:
            owner = quote(f"{config.user}:{config.user}")
            owned = [f"{RUN_DIR}/{service}", f"{LOG_DIR}/{service}"]
            ctx.executor.run(
                f"chown {owner} {' '.join(quote(d) for d in owned)}", privileged=True
            )
            recursive = [f"{APP_DATA_DIR}/{service}"]
            recursive.extend(b.host_path for b in config.data_directories)
            ctx.executor.run(
                f"chown -R {owner} {' '.join(quote(d) for d in recursive)}", privileged=True
            )

    def _setup_caddy(self, ctx: HostContext, certificate: tuple[str, str] | None) -> None:
        proxy = self.config.proxy
        self._progress(ctx.host, "Configuring Caddy...")
        ctx.proxy.configure()

        if proxy:
            if not ctx.proxy.has_site():
                # Placeholder until the first deploy points it at a jail
                ctx.proxy.write_site(proxy, f":{proxy.port}", certificate)
            elif certificate:
                ctx.proxy.install_certificates(*certificate)

        ctx.proxy.restart()


__all__ = ["HOST_PACKAGES", "HostProvisioner", "HostSetupResult", "zfs_layout"]
