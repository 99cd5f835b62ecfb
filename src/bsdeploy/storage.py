"""Storage introspection and cleanup for ZFS and plain directories.

Images, base systems and jails may live on ZFS datasets (snapshots and
copy-on-write clones) or on plain directories. Callers ask for the
dataset backing a path and get None when ZFS is not in play, so the
fallback is always a directory operation.

Public API:
    Storage: ZFS-aware storage operations bound to one host
"""

import logging

from bsdeploy.constants import READY_SNAPSHOT
from bsdeploy.exceptions import BsdeployError, RemoteExecError
from bsdeploy.remote_exec import RemoteExecutor
from bsdeploy.shell import quote

logger = logging.getLogger(__name__)


class Storage:
    """ZFS-aware storage operations for one host."""

    def __init__(self, executor: RemoteExecutor):
        self.executor = executor

    def _zfs_list(self, path: str) -> tuple[str, str] | None:
        """Return (dataset, mountpoint) of the dataset containing path."""
        try:
            output = self.executor.run_capture(f"zfs list -H -o name,mountpoint {quote(path)}")
        except RemoteExecError:
            # Not ZFS, no zfs binary, or path missing
            return None

        line = output.strip().splitlines()[0] if output.strip() else ""
        parts = line.split("\t")
        if len(parts) != 2:
            return None
        return parts[0], parts[1]

    def containing_dataset(self, path: str) -> str | None:
        """Get the dataset that contains path, whatever its mountpoint."""
        found = self._zfs_list(path)
        return found[0] if found else None

    def dataset_for(self, path: str) -> str | None:
        """Get the dataset mounted exactly at path.

        A plain directory inside a dataset returns None, so destroying
        "the dataset for" a path can never take its parent with it.
        """
        found = self._zfs_list(path)
        if not found:
            return None
        dataset, mountpoint = found
        if mountpoint.rstrip("/") != path.rstrip("/"):
            return None
        return dataset

    @staticmethod
    def ready_snapshot(dataset: str) -> str:
        return f"{dataset}@{READY_SNAPSHOT}"

    def snapshot_exists(self, snapshot: str) -> bool:
        return self.executor.succeeds(f"zfs list -H -t snapshot -o name {quote(snapshot)}")

    def create_dataset(self, dataset: str, mountpoint: str) -> None:
        self.executor.run(
            f"zfs create -o mountpoint={quote(mountpoint)} {quote(dataset)}", privileged=True
        )

    def create_snapshot(self, snapshot: str) -> None:
        self.executor.run(f"zfs snapshot {quote(snapshot)}", privileged=True)

    def clone(self, snapshot: str, dataset: str, mountpoint: str) -> None:
        """Create a copy-on-write clone of snapshot mounted at mountpoint."""
        self.executor.run(
            f"zfs clone -o mountpoint={quote(mountpoint)} {quote(snapshot)} {quote(dataset)}",
            privileged=True,
        )

    def destroy_dataset(self, dataset: str) -> None:
        self.executor.run(f"zfs destroy -r {quote(dataset)}", privileged=True)

    def destroy_directory(self, path: str) -> None:
        """Remove a directory tree, clearing system-immutable flags first."""
        try:
            self.executor.run(f"chflags -R noschg {quote(path)}", privileged=True)
        except RemoteExecError as e:
            logger.debug(f"chflags on {path} failed: {e}")
        self.executor.run(f"rm -rf {quote(path)}", privileged=True)

    def destroy(self, path: str, dataset: str | None = None) -> bool:
        """Destroy whatever backs path: dataset first, then the directory.

        Best-effort: individual failures are logged and the remaining
        steps still run.

        Args:
            path: Directory or dataset mountpoint to remove
            dataset: Dataset mounted at path, when the caller looked it up
                before unmounting anything below it

        Returns:
            True if every attempted step succeeded
        """
        ok = True
        dataset = dataset or self.dataset_for(path)
        if dataset:
            try:
                self.destroy_dataset(dataset)
            except BsdeployError as e:
                ok = False
                logger.warning(f"Failed to destroy dataset {dataset}: {e}")

        try:
            self.destroy_directory(path)
        except BsdeployError as e:
            ok = False
            logger.warning(f"Failed to remove {path}: {e}")
        return ok


__all__ = ["Storage"]
