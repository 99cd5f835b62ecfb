"""Service status across hosts.

Collects, per host, the service's jails (newest first), which of them
run, their addresses, the active jail and the backend the proxy points
at, and renders each host as a rich table.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from rich.table import Table

from bsdeploy.config import ServiceConfig
from bsdeploy.exceptions import BsdeployError
from bsdeploy.host_context import HostContext
from bsdeploy.jail import parse_jail_timestamp
from bsdeploy.remote_exec import RemoteExecutor

logger = logging.getLogger(__name__)


@dataclass
class JailStatus:
    name: str
    running: bool
    ip: str | None = None
    created: datetime | None = None
    active: bool = False
    serving: bool = False


@dataclass
class HostStatus:
    host: str
    jails: list[JailStatus] = field(default_factory=list)
    active_jail: str | None = None
    proxy_backend: str | None = None
    error: str | None = None


class StatusReporter:
    """Gather status for a service on its hosts."""

    def __init__(
        self,
        config: ServiceConfig,
        executor_factory: Callable[[str], RemoteExecutor] | None = None,
    ):
        self.config = config
        self.executor_factory = executor_factory or (
            lambda host: RemoteExecutor(host, use_doas=config.doas)
        )

    def collect_all(self) -> list[HostStatus]:
        """Collect status from every host; unreachable hosts carry an error."""
        statuses = []
        for host in self.config.hosts:
            try:
                statuses.append(self.collect(host))
            except BsdeployError as e:
                logger.debug(f"Status of {host} failed: {e}")
                statuses.append(HostStatus(host=host, error=str(e)))
        return statuses

    def collect(self, host: str) -> HostStatus:
        service = self.config.service
        ctx = HostContext.create(self.executor_factory(host), service)

        # Fails fast on an unreachable host
        ctx.executor.run_capture("true")

        running = ctx.jails.running_jails()
        active = ctx.boot.active_jail(service)
        backend = ctx.proxy.current_backend()
        backend_ip = backend.rsplit(":", 1)[0] if backend else None

        status = HostStatus(host=host, active_jail=active, proxy_backend=backend)
        for name in reversed(ctx.jails.list_jails(service)):
            is_running = name in running
            ip = ctx.jails.jail_address(name)
            status.jails.append(
                JailStatus(
                    name=name,
                    running=is_running,
                    ip=ip,
                    created=parse_jail_timestamp(service, name),
                    active=name == active,
                    serving=bool(ip) and ip == backend_ip and is_running,
                )
            )
        return status


def render_host_status(status: HostStatus) -> Table:
    """Build the status table for one host."""
    table = Table(title=f"{status.host}", show_header=True)
    table.add_column("Jail", style="cyan", no_wrap=True)
    table.add_column("State")
    table.add_column("IP", style="blue")
    table.add_column("Created", style="white")
    table.add_column("Active", style="magenta")

    for jail in status.jails:
        if jail.serving:
            state = "[green]serving[/green]"
        elif jail.running:
            state = "[yellow]running[/yellow]"
        else:
            state = "[red]stopped[/red]"
        created = jail.created.strftime("%Y-%m-%d %H:%M:%S") if jail.created else "N/A"
        table.add_row(jail.name, state, jail.ip or "N/A", created, "*" if jail.active else "")

    table.caption = f"Proxy backend: {status.proxy_backend or 'none'}"
    return table


__all__ = ["HostStatus", "JailStatus", "StatusReporter", "render_host_status"]
