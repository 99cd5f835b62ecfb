"""FreeBSD base system provisioning.

A base system is an extracted release tree under BASE_DIR/<version>. It is
fetched once per host and version, marked ready only after extraction
succeeds, and never modified afterwards.
"""

import logging
import re
from collections.abc import Callable

from bsdeploy.constants import BASE_DIR, BASE_RELEASE_URL, DEFAULT_TIMEOUT, READY_MARKER
from bsdeploy.exceptions import BsdeployError
from bsdeploy.remote_exec import RemoteExecutor
from bsdeploy.shell import quote
from bsdeploy.storage import Storage

logger = logging.getLogger(__name__)

_PATCH_LEVEL = re.compile(r"-p\d+$")


def strip_patch_level(release: str) -> str:
    """Strip the patch suffix from a release string.

    Example:
        >>> strip_patch_level("14.1-RELEASE-p6")
        '14.1-RELEASE'
    """
    return _PATCH_LEVEL.sub("", release.strip())


def resolve_base_version(executor: RemoteExecutor, override: str | None = None) -> str:
    """Pick the base system version for a host.

    Jails share the host kernel, so the default is the host's own release
    without its patch level. An explicit override always wins.
    """
    if override:
        return override
    return strip_patch_level(executor.run_capture("uname -r"))


def release_arch(executor: RemoteExecutor) -> str:
    """Get the release directory component for the host architecture.

    amd64 releases live under ``amd64/``, arm64 ones under ``arm64/aarch64/``.
    """
    parts = executor.run_capture("uname -m -p").split()
    if len(parts) == 2 and parts[0] != parts[1]:
        return f"{parts[0]}/{parts[1]}"
    return parts[0] if parts else "amd64"


def base_path(version: str) -> str:
    return f"{BASE_DIR}/{version}"


class BaseSystemProvisioner:
    """Ensure base system trees exist on a host."""

    def __init__(
        self,
        executor: RemoteExecutor,
        storage: Storage,
        progress_callback: Callable[[str], None] | None = None,
    ):
        self.executor = executor
        self.storage = storage
        self.progress_callback = progress_callback

    def _progress(self, message: str) -> None:
        if self.progress_callback:
            self.progress_callback(f"[{self.executor.host}] {message}")

    def is_ready(self, version: str) -> bool:
        """Check the completion marker, healing partial extractions.

        A dataset without its ready snapshot, or a directory without its
        sentinel file, is left over from an interrupted fetch and gets
        destroyed so the next fetch starts clean.
        """
        path = base_path(version)
        dataset = self.storage.dataset_for(path)

        if dataset:
            if self.storage.snapshot_exists(self.storage.ready_snapshot(dataset)):
                return True
            logger.warning(f"Base system {version} on {self.executor.host} is incomplete, removing")
            self.storage.destroy(path)
            return False

        if self.executor.succeeds(f"test -f {quote(path)}/{READY_MARKER}"):
            return True

        if self.executor.succeeds(f"test -d {quote(path)}"):
            logger.warning(f"Base system {version} on {self.executor.host} is incomplete, removing")
            self.storage.destroy(path)
        return False

    def ensure_base(self, version: str) -> bool:
        """Ensure the base system for version exists and is marked ready.

        Args:
            version: FreeBSD release, e.g. "14.1-RELEASE"

        Returns:
            True if the base system was fetched, False if it already existed

        Raises:
            RemoteExecError: If creating storage, fetching or extracting fails
        """
        if self.is_ready(version):
            logger.debug(f"Base system {version} already present on {self.executor.host}")
            return False

        path = base_path(version)
        self._progress(f"Fetching base system {version}...")

        parent = self.storage.dataset_for(BASE_DIR)
        dataset = f"{parent}/{version}" if parent else None
        if dataset:
            self.storage.create_dataset(dataset, path)
        else:
            self.executor.run(f"mkdir -p {quote(path)}", privileged=True)

        try:
            url = BASE_RELEASE_URL.format(arch=release_arch(self.executor), version=version)
            # Stream straight into tar so the archive never lands on disk
            extract = self.executor.elevate(f"tar -xf - -C {quote(path)}")
            self.executor.run(f"fetch -o - {quote(url)} | {extract}", timeout=DEFAULT_TIMEOUT)

            if dataset:
                self.storage.create_snapshot(self.storage.ready_snapshot(dataset))
            else:
                self.executor.run(f"touch {quote(path)}/{READY_MARKER}", privileged=True)
        except BsdeployError:
            logger.error(f"Failed to fetch base system {version}, removing partial tree")
            self.storage.destroy(path)
            raise

        logger.info(f"Base system {version} ready on {self.executor.host}")
        return True


__all__ = [
    "BaseSystemProvisioner",
    "base_path",
    "release_arch",
    "resolve_base_version",
    "strip_patch_level",
]
