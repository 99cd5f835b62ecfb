"""Remove every trace of a service from its hosts.

Jails, their aliases and mounts, the active link and the proxy site are
removed under the host lock. Cached base systems and images are kept so a
later deploy of any service can reuse them.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from bsdeploy.config import ServiceConfig
from bsdeploy.exceptions import BsdeployError
from bsdeploy.host_context import HostContext
from bsdeploy.host_lock import host_lock
from bsdeploy.remote_exec import RemoteExecutor

logger = logging.getLogger(__name__)


@dataclass
class HostTeardownResult:
    host: str
    success: bool
    destroyed: list[str] = field(default_factory=list)
    incomplete: list[str] = field(default_factory=list)
    error: str | None = None


class ServiceTeardown:
    """Destroy a service's resources on its hosts."""

    def __init__(
        self,
        config: ServiceConfig,
        progress_callback: Callable[[str], None] | None = None,
        executor_factory: Callable[[str], RemoteExecutor] | None = None,
    ):
        self.config = config
        self.progress_callback = progress_callback
        self.executor_factory = executor_factory or (
            lambda host: RemoteExecutor(host, use_doas=config.doas)
        )

    def _progress(self, host: str, message: str) -> None:
        if self.progress_callback:
            self.progress_callback(f"[{host}] {message}")

    def destroy_all(self) -> list[HostTeardownResult]:
        results = []
        for host in self.config.hosts:
            try:
                results.append(self.destroy_host(host))
            except BsdeployError as e:
                logger.error(f"Destroy on {host} failed: {e}")
                results.append(HostTeardownResult(host=host, success=False, error=str(e)))
        return results

    def destroy_host(self, host: str) -> HostTeardownResult:
        """Tear the service down on one host.

        Every removal is best-effort; jails that could not be fully removed
        are reported in the result.

        Raises:
            HostLockedError: If another run holds the host
        """
        service = self.config.service
        executor = self.executor_factory(host)
        ctx = HostContext.create(executor, service, self.progress_callback)
        result = HostTeardownResult(host=host, success=True)

        with host_lock(executor):
            self._progress(host, "Removing jails and networking...")
            for name in ctx.jails.list_jails(service):
                if ctx.jails.destroy(name):
                    result.destroyed.append(name)
                else:
                    result.incomplete.append(name)

            self._progress(host, "Removing active symlink...")
            try:
                ctx.boot.deactivate(service)
            except BsdeployError as e:
                logger.warning(f"Failed to remove active link on {host}: {e}")

            self._progress(host, "Removing proxy configuration...")
            try:
                ctx.proxy.remove()
            except BsdeployError as e:
                logger.warning(f"Failed to remove proxy configuration on {host}: {e}")

        logger.info(f"Destroyed {len(result.destroyed)} jail(s) of {service} on {host}")
        return result


__all__ = ["HostTeardownResult", "ServiceTeardown"]
