"""Jail lifecycle management.

A jail goes through a fixed sequence of phases:

    CREATED -> BUILDING (ip4=inherit) -> SERVING (ip4.addr=<private>)
            -> STOPPED | DESTROYED

BUILDING shares the host network so install hooks can reach the internet.
SERVING restarts the same root with a single private address on lo1,
which is what the reverse proxy targets. Jail.transition() rejects any
other order, so the isolation restart cannot be skipped.

Root filesystem layering:
- Image dataset with a ready snapshot: ZFS clone of the whole image
- Image directory: copy of the image's writable dirs plus read-only
  nullfs of the image's /usr/local
- No image: copy of the base system's writable dirs
- Unless cloned, the base system's bin/lib/libexec/sbin and usr/* are
  nullfs-mounted read-only on top

Public API:
    DataBinding: Host directory bind-mounted into every jail of a service
    Jail: Jail identity and lifecycle phase
    JailManager: Create, start, cut over, list and destroy jails on one host
"""

import json
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from bsdeploy.base_system import base_path
from bsdeploy.constants import (
    BASE_RW_DIRS,
    JAIL_RW_DIRS,
    JAILS_DIR,
    LOG_DIR,
    METADATA_FILE,
    ROOT_RO_DIRS,
    RUN_DIR,
    USR_RO_DIRS,
)
from bsdeploy.exceptions import BsdeployError, JailStateError
from bsdeploy.network import AddressAllocator, parse_subnet
from bsdeploy.remote_exec import RemoteExecutor
from bsdeploy.shell import quote
from bsdeploy.storage import Storage

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


class JailPhase(Enum):
    CREATED = "created"
    BUILDING = "building"
    SERVING = "serving"
    STOPPED = "stopped"
    DESTROYED = "destroyed"


_TRANSITIONS = {
    JailPhase.CREATED: {JailPhase.BUILDING, JailPhase.DESTROYED},
    JailPhase.BUILDING: {JailPhase.SERVING, JailPhase.DESTROYED},
    JailPhase.SERVING: {JailPhase.STOPPED, JailPhase.DESTROYED},
    JailPhase.STOPPED: {JailPhase.DESTROYED},
    JailPhase.DESTROYED: set(),
}


@dataclass(frozen=True)
class DataBinding:
    """Host directory mounted read-write into each new jail."""

    host_path: str
    jail_path: str

    def to_dict(self) -> dict[str, str]:
        return {"host_path": self.host_path, "jail_path": self.jail_path}


@dataclass
class Jail:
    """A jail created by JailManager.create()."""

    name: str
    path: str
    service: str
    ip: str | None = None
    cloned: bool = False
    phase: JailPhase = JailPhase.CREATED

    def transition(self, phase: JailPhase) -> None:
        """Move to phase.

        Raises:
            JailStateError: If the lifecycle does not allow the move
        """
        if phase not in _TRANSITIONS[self.phase]:
            raise JailStateError(
                f"Jail {self.name} cannot go from {self.phase.value} to {phase.value}"
            )
        logger.debug(f"Jail {self.name}: {self.phase.value} -> {phase.value}")
        self.phase = phase


def jail_path(name: str) -> str:
    return f"{JAILS_DIR}/{name}"


def jail_name(service: str, when: datetime) -> str:
    """Build a jail name whose lexical order is its creation order.

    Example:
        >>> jail_name("web", datetime(2024, 1, 2, 3, 4, 5))
        'web-20240102-030405'
    """
    return f"{service}-{when.strftime(TIMESTAMP_FORMAT)}"


def parse_jail_timestamp(service: str, name: str) -> datetime | None:
    """Recover the creation time from a jail name, or None if it is not one."""
    prefix = f"{service}-"
    if not name.startswith(prefix):
        return None
    try:
        return datetime.strptime(name[len(prefix) :], TIMESTAMP_FORMAT)
    except ValueError:
        return None


def jail_exec(name: str, command: str, user: str | None = None) -> str:
    """Build a command that runs a shell command inside a jail.

    With user, the command runs through a login shell of that user so
    their mise shims and PATH apply.
    """
    if user:
        return f"jexec {quote(name)} su - {quote(user)} -c {quote(command)}"
    return f"jexec {quote(name)} sh -c {quote(command)}"


def start_command(name: str, path: str, address: str) -> str:
    """Build the jail -c command.

    Args:
        name: Jail name, also used as hostname
        path: Jail root
        address: "inherit" for the host network, else the private IPv4
    """
    network = "ip4=inherit" if address == "inherit" else f"ip4.addr={quote(address)}"
    return (
        f"jail -c name={quote(name)} path={quote(path)} host.hostname={quote(name)} "
        f"{network} allow.raw_sockets=1 persist"
    )


def parse_mount_points(output: str, root: str) -> list[str]:
    """Extract mount points at or under root from mount(8) output, deepest first.

    Example line:
        /usr/local/bsdeploy/base/14.1-RELEASE/bin on /usr/local/bsdeploy/jails/w/bin (nullfs, ...)
    """
    root = root.rstrip("/")
    targets = []
    for line in output.splitlines():
        _, sep, rest = line.partition(" on ")
        if not sep:
            continue
        target = rest.rsplit(" (", 1)[0].strip()
        if target == root or target.startswith(f"{root}/"):
            targets.append(target)
    return sorted(targets, key=lambda p: (p.count("/"), p), reverse=True)


def unmount_tree(executor: RemoteExecutor, root: str, keep_root: bool = False) -> bool:
    """Force-unmount everything mounted under root, deepest first.

    Best-effort: failures are logged and the remaining mounts are still
    attempted. With keep_root the mount at root itself is left for zfs
    destroy to handle.

    Returns:
        True if every unmount succeeded
    """
    try:
        output = executor.run_capture("mount")
    except BsdeployError as e:
        logger.warning(f"Cannot read mount table on {executor.host}: {e}")
        return False

    ok = True
    for target in parse_mount_points(output, root):
        if keep_root and target == root.rstrip("/"):
            continue
        try:
            executor.run(f"umount -f {quote(target)}", privileged=True)
        except BsdeployError as e:
            ok = False
            logger.warning(f"Failed to unmount {target}: {e}")
    return ok


class JailManager:
    """Create, start, cut over, list and destroy jails on one host."""

    def __init__(
        self,
        executor: RemoteExecutor,
        storage: Storage,
        allocator: AddressAllocator,
        progress_callback: Callable[[str], None] | None = None,
    ):
        self.executor = executor
        self.storage = storage
        self.allocator = allocator
        self.progress_callback = progress_callback

    def _progress(self, message: str) -> None:
        if self.progress_callback:
            self.progress_callback(f"[{self.executor.host}] {message}")

    def _run(self, command: str) -> None:
        self.executor.run(command, privileged=True)

    def new_jail_name(self, service: str, now: datetime | None = None) -> str:
        """Pick an unused timestamped name, moving forward a second on collision."""
        when = now or datetime.now()
        name = jail_name(service, when)
        while self.executor.succeeds(f"test -e {quote(jail_path(name))}"):
            when += timedelta(seconds=1)
            name = jail_name(service, when)
        return name

    def create(
        self,
        service: str,
        base_version: str,
        subnet: str,
        image_path: str | None = None,
        data_bindings: Iterable[DataBinding] = (),
        now: datetime | None = None,
    ) -> Jail:
        """Create a jail root with its mounts and a private address.

        The jail is not started. On failure everything created so far is
        torn down before the error propagates.

        Args:
            service: Service name, prefix of the jail name
            base_version: Base system providing the read-only layers
            subnet: /24 the private address is taken from
            image_path: Ready image to build the root from
            data_bindings: Host directories to mount read-write
            now: Creation time used for the name (default: now)

        Returns:
            Jail in the CREATED phase

        Raises:
            ConfigError: If subnet is not a /24
            NoAddressAvailable: If the subnet is exhausted
            RemoteExecError: If a remote step fails
        """
        parse_subnet(subnet)
        self.allocator.ensure_interface()

        name = self.new_jail_name(service, now)
        jail = Jail(name=name, path=jail_path(name), service=service)
        root = quote(jail.path)

        try:
            jail.cloned = self._build_root(jail, base_version, image_path)
            if not jail.cloned:
                self._mount_base(jail.path, base_version)

            self._run(f"mkdir -p {root}/dev")
            self._run(f"mount -t devfs devfs {root}/dev")

            for tmp in ("tmp", "var/tmp"):
                self._run(f"mkdir -p {root}/{tmp}")
                self._run(f"chmod 1777 {root}/{tmp}")

            for binding in data_bindings:
                target = quote(f"{jail.path}/{binding.jail_path.lstrip('/')}")
                self._run(f"mkdir -p {quote(binding.host_path)}")
                self._run(f"mkdir -p {target}")
                self._run(f"mount_nullfs {quote(binding.host_path)} {target}")

            address = self.allocator.find_free_address(subnet)
            self.allocator.add_alias(address)
            jail.ip = address
        except BsdeployError:
            logger.error(f"Creating jail {name} on {self.executor.host} failed, cleaning up")
            self.destroy(jail.name, jail.ip)
            raise

        logger.info(f"Created jail {name} ({jail.ip}) on {self.executor.host}")
        return jail

    def _build_root(self, jail: Jail, base_version: str, image_path: str | None) -> bool:
        """Populate the jail root.

        Returns:
            True if the root is a ZFS clone of the image
        """
        root = quote(jail.path)

        if image_path:
            image_dataset = self.storage.dataset_for(image_path)
            jails_dataset = self.storage.dataset_for(JAILS_DIR)
            if image_dataset and jails_dataset:
                snapshot = self.storage.ready_snapshot(image_dataset)
                if self.storage.snapshot_exists(snapshot):
                    self._progress(f"Cloning image into {jail.name}...")
                    self.storage.clone(snapshot, f"{jails_dataset}/{jail.name}", jail.path)
                    return True

        self._run(f"mkdir -p {root}")

        if image_path:
            self._progress(f"Copying image into {jail.name}...")
            hardlink = self._same_device(image_path, JAILS_DIR)
            for directory in JAIL_RW_DIRS:
                source = f"{image_path}/{directory}"
                if not self.executor.succeeds(f"test -d {quote(source)}"):
                    self._run(f"mkdir -p {root}/{directory}")
                elif hardlink:
                    self._run(
                        f"rsync -a --link-dest={quote(source)} "
                        f"{quote(source)}/ {root}/{directory}/"
                    )
                else:
                    self._run(f"cp -a {quote(source)} {root}/")

            self._run(f"mkdir -p {root}/usr/local")
            self._run(f"mount_nullfs -o ro {quote(image_path)}/usr/local {root}/usr/local")
        else:
            base = quote(base_path(base_version))
            for directory in BASE_RW_DIRS:
                self._run(f"cp -a {base}/{directory} {root}/")
            self._run(f"cp /etc/resolv.conf {root}/etc/")
            self._run(f"mkdir -p {root}/home {root}/usr/local")

        return False

    def _same_device(self, first: str, second: str) -> bool:
        try:
            a = self.executor.run_capture(f"stat -f %d {quote(first)}").strip()
            b = self.executor.run_capture(f"stat -f %d {quote(second)}").strip()
        except BsdeployError:
            return False
        return bool(a) and a == b

    def _mount_base(self, path: str, base_version: str) -> None:
        base = base_path(base_version)
        for directory in ROOT_RO_DIRS:
            target = quote(f"{path}/{directory}")
            self._run(f"mkdir -p {target}")
            self._run(f"mount_nullfs -o ro {quote(f'{base}/{directory}')} {target}")

        for directory in USR_RO_DIRS:
            source = f"{base}/usr/{directory}"
            if self.executor.succeeds(f"test -d {quote(source)}"):
                target = quote(f"{path}/usr/{directory}")
                self._run(f"mkdir -p {target}")
                self._run(f"mount_nullfs -o ro {quote(source)} {target}")

    def start_build_phase(
        self,
        jail: Jail,
        user: str | None = None,
        data_bindings: Iterable[DataBinding] = (),
    ) -> None:
        """Start the jail on the host network and hand data dirs to user."""
        jail.transition(JailPhase.BUILDING)
        self._progress(f"Starting {jail.name} (build phase)...")
        self._run(start_command(jail.name, jail.path, "inherit"))

        if user:
            for binding in data_bindings:
                self.exec_in_jail(jail.name, f"chown -R {quote(user)} {quote(binding.jail_path)}")

    def cutover_to_production(self, jail: Jail, user: str | None = None) -> None:
        """Restart the jail with only its private address."""
        if not jail.ip:
            raise JailStateError(f"Jail {jail.name} has no allocated address")
        jail.transition(JailPhase.SERVING)
        self._progress(f"Restarting {jail.name} with isolated networking...")
        self._run(f"jail -r {quote(jail.name)}")
        self._run(start_command(jail.name, jail.path, jail.ip))
        self.ensure_service_dirs(jail, user)

    def ensure_service_dirs(self, jail: Jail, user: str | None = None) -> None:
        """Create the service run and log dirs, which do not survive a restart."""
        for parent in (RUN_DIR, LOG_DIR):
            directory = quote(f"{jail.path}{parent}/{jail.service}")
            self._run(f"mkdir -p {directory}")
            if user:
                self._run(f"chown {quote(f'{user}:{user}')} {directory}")

    def exec_in_jail(self, name: str, command: str, user: str | None = None):
        return self.executor.run(jail_exec(name, command, user=user), privileged=True)

    def stop(self, jail: Jail) -> None:
        jail.transition(JailPhase.STOPPED)
        self._run(f"jail -r {quote(jail.name)}")

    def list_jails(self, service: str) -> list[str]:
        """List the service's jails on disk, oldest first."""
        try:
            output = self.executor.run_capture(f"ls {JAILS_DIR}")
        except BsdeployError:
            return []
        pattern = re.compile(rf"^{re.escape(service)}-\d{{8}}-\d{{6}}$")
        return sorted(n.strip() for n in output.split() if pattern.match(n.strip()))

    def running_jails(self) -> set[str]:
        try:
            output = self.executor.run_capture("jls name")
        except BsdeployError:
            return set()
        return {line.strip() for line in output.splitlines() if line.strip()}

    def jail_address(self, name: str) -> str | None:
        """Look up a jail's address from jls, falling back to its metadata file."""
        try:
            ip = self.executor.run_capture(f"jls -j {quote(name)} ip4.addr").strip()
            if ip and ip != "-":
                return ip
        except BsdeployError as e:
            logger.debug(f"jls -j {name}: {e}")

        try:
            raw = self.executor.run_capture(f"cat {quote(f'{jail_path(name)}/{METADATA_FILE}')}")
            return json.loads(raw).get("ip") or None
        except (BsdeployError, ValueError):
            return None

    def destroy(self, name: str, ip: str | None = None) -> bool:
        """Tear a jail down completely.

        Every step is best-effort: stop, remove the alias, unmount
        everything under the root, then destroy the dataset or directory.

        Returns:
            True if every step succeeded
        """
        self._progress(f"Removing jail {name}...")
        path = jail_path(name)
        ip = ip or self.jail_address(name)
        ok = True

        try:
            self._run(f"jail -r {quote(name)}")
        except BsdeployError as e:
            # Not running is the common case
            logger.debug(f"jail -r {name}: {e}")

        if ip:
            try:
                self.allocator.remove_alias(ip)
            except BsdeployError as e:
                ok = False
                logger.warning(f"Failed to remove alias {ip} for {name}: {e}")

        dataset = self.storage.dataset_for(path)
        ok = unmount_tree(self.executor, path, keep_root=dataset is not None) and ok
        ok = self.storage.destroy(path, dataset) and ok

        if ok:
            logger.info(f"Destroyed jail {name} on {self.executor.host}")
        else:
            logger.warning(f"Jail {name} on {self.executor.host} was only partially removed")
        return ok


__all__ = [
    "DataBinding",
    "Jail",
    "JailManager",
    "JailPhase",
    "jail_exec",
    "jail_name",
    "jail_path",
    "parse_jail_timestamp",
    "parse_mount_points",
    "start_command",
    "unmount_tree",
]
