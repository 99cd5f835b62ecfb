"""Content-addressed image cache.

An image is a prepared root filesystem: the base system plus declared
packages, the run-as user and mise-managed runtimes. Images are keyed by a
SHA-256 fingerprint of their inputs and live under IMAGES_DIR/<12 hex>.

Readiness is a completion marker (ZFS snapshot or sentinel file) written
as the last build step. A directory or dataset without that marker is a
failed build: it is destroyed and rebuilt, never used.

Concurrency: builds for the same fingerprint on the same host are not
deduplicated. Parallel deploys sharing an image must be serialized by the
caller; the host lock in bsdeploy.host_lock does this for the CLI.

Public API:
    compute_fingerprint: Deterministic image fingerprint
    ImageBuilder: Build or reuse images on one host
"""

import hashlib
import logging
from collections.abc import Callable, Iterable, Mapping

from bsdeploy.base_system import base_path
from bsdeploy.constants import IMAGES_DIR, READY_MARKER
from bsdeploy.exceptions import BsdeployError, CacheCorruptionError
from bsdeploy.jail import jail_exec, start_command, unmount_tree
from bsdeploy.remote_exec import RemoteExecutor
from bsdeploy.shell import quote
from bsdeploy.storage import Storage

logger = logging.getLogger(__name__)

SHORT_HASH_LENGTH = 12

# Always present in images: hooks and rc.d script rely on them
IMAGE_DEFAULT_PACKAGES = ("git", "bash")

# Toolchain mise needs to compile runtimes from source on FreeBSD
RUNTIME_BUILD_PACKAGES = ("mise", "gmake", "gcc", "python3", "pkgconf")


def compute_fingerprint(
    base_version: str,
    packages: Iterable[str],
    tools: Mapping[str, str],
    user: str | None = None,
) -> str:
    """Compute the image fingerprint.

    Each field is tagged and newline-terminated so that no two distinct
    inputs concatenate to the same byte stream. Package order and tool
    order do not matter.

    Returns:
        64-character hex SHA-256 digest
    """
    hasher = hashlib.sha256()
    hasher.update(b"base:" + base_version.encode() + b"\n")

    for package in sorted(set(packages)):
        hasher.update(b"pkg:" + package.encode() + b"\n")

    for tool, version in sorted(tools.items()):
        hasher.update(b"tool:" + tool.encode() + b"=" + str(version).encode() + b"\n")

    if user:
        hasher.update(b"user:" + user.encode() + b"\n")

    return hasher.hexdigest()


def image_path(fingerprint: str) -> str:
    return f"{IMAGES_DIR}/{fingerprint[:SHORT_HASH_LENGTH]}"


class ImageBuilder:
    """Build or reuse images on one host."""

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

    def check_ready(self, path: str) -> bool:
        """Check whether the image at path carries its completion marker.

        Returns:
            True if ready, False if absent

        Raises:
            CacheCorruptionError: If storage exists without the marker
        """
        dataset = self.storage.dataset_for(path)
        if dataset:
            if self.storage.snapshot_exists(self.storage.ready_snapshot(dataset)):
                return True
            raise CacheCorruptionError(f"Image dataset {dataset} has no ready snapshot")

        if self.executor.succeeds(f"test -f {quote(path)}/{READY_MARKER}"):
            return True
        if self.executor.succeeds(f"test -d {quote(path)}"):
            raise CacheCorruptionError(f"Image directory {path} has no ready marker")
        return False

    def is_ready(self, path: str) -> bool:
        """Like check_ready, but heals corrupt entries by destroying them."""
        try:
            return self.check_ready(path)
        except CacheCorruptionError as e:
            logger.warning(f"{e}; removing failed build on {self.executor.host}")
            self._progress("Removing incomplete image from an earlier run...")
            self.storage.destroy(path)
            return False

    def ensure_image(
        self,
        base_version: str,
        packages: Iterable[str] = (),
        tools: Mapping[str, str] | None = None,
        user: str | None = None,
    ) -> str:
        """Return the path of a ready image for these inputs, building it if needed.

        Args:
            base_version: Base system release the image starts from
            packages: pkg package names
            tools: mise tool name to pinned version
            user: Run-as user created inside the image

        Returns:
            Image root path on the host

        Raises:
            RemoteExecError: If any build step fails (partial storage is removed)
        """
        tools = dict(tools or {})
        packages = list(packages)
        fingerprint = compute_fingerprint(base_version, packages, tools, user)
        short_hash = fingerprint[:SHORT_HASH_LENGTH]
        path = image_path(fingerprint)

        if self.is_ready(path):
            self._progress(f"Using existing image {short_hash}")
            return path

        self._progress(f"Building image {short_hash} (this may take a while)...")
        build_name = f"build-{short_hash}"
        started = False

        try:
            dataset = self._create_root(base_version, path, short_hash)

            self.executor.run(f"mkdir -p {quote(path)}/dev", privileged=True)
            self.executor.run(f"mount -t devfs devfs {quote(path)}/dev", privileged=True)
            self.executor.run(start_command(build_name, path, "inherit"), privileged=True)
            started = True

            self._install(build_name, packages, tools, user)

            self.executor.run(f"jail -r {quote(build_name)}", privileged=True)
            started = False
            self.executor.run(f"umount {quote(path)}/dev", privileged=True)

            self._progress("Image: Saving artifact...")
            if dataset:
                self.storage.create_snapshot(self.storage.ready_snapshot(dataset))
            else:
                self.executor.run(f"touch {quote(path)}/{READY_MARKER}", privileged=True)
        except BsdeployError:
            logger.error(f"Image build {short_hash} failed on {self.executor.host}, cleaning up")
            self._discard(path, build_name, started)
            raise

        logger.info(f"Image {short_hash} ready on {self.executor.host}")
        return path

    def _create_root(self, base_version: str, path: str, short_hash: str) -> str | None:
        """Populate the image root from the base system.

        Returns:
            The image dataset, or None for a plain directory
        """
        base = base_path(base_version)
        images_dataset = self.storage.dataset_for(IMAGES_DIR)
        base_dataset = self.storage.dataset_for(base)
        dataset = f"{images_dataset}/{short_hash}" if images_dataset else None

        if (
            dataset
            and base_dataset
            and self.storage.snapshot_exists(self.storage.ready_snapshot(base_dataset))
        ):
            self._progress("Image: Cloning base system...")
            self.storage.clone(self.storage.ready_snapshot(base_dataset), dataset, path)
        else:
            self._progress("Image: Copying base system...")
            if dataset:
                self.storage.create_dataset(dataset, path)
            else:
                self.executor.run(f"mkdir -p {quote(path)}", privileged=True)

            # var/empty carries schg and cannot be copied; recreate it
            self.executor.run(
                f"rsync -a --exclude /var/empty {quote(base)}/ {quote(path)}/", privileged=True
            )
            self.executor.run(f"mkdir -p {quote(path)}/var/empty", privileged=True)
            self.executor.run(f"chmod 555 {quote(path)}/var/empty", privileged=True)

        self.executor.run(f"cp /etc/resolv.conf {quote(path)}/etc/", privileged=True)
        return dataset

    def _install(
        self, build_name: str, packages: list[str], tools: dict[str, str], user: str | None
    ) -> None:
        name = quote(build_name)

        self._progress("Image: Installing packages...")
        self.executor.run(
            f"pkg -j {name} install -y {' '.join(IMAGE_DEFAULT_PACKAGES)}", privileged=True
        )
        if packages:
            pkgs = " ".join(quote(p) for p in packages)
            self.executor.run(f"pkg -j {name} install -y {pkgs}", privileged=True)

        if user:
            user_check = jail_exec(build_name, f"id {quote(user)}")
            exists = self.executor.succeeds(user_check, privileged=True)
            if not exists:
                self.executor.run(
                    jail_exec(build_name, f"pw useradd -n {quote(user)} -m -s /usr/local/bin/bash"),
                    privileged=True,
                )

        if tools:
            self._progress("Image: Installing mise runtimes...")
            self.executor.run(
                f"pkg -j {name} install -y {' '.join(RUNTIME_BUILD_PACKAGES)}", privileged=True
            )
            for tool, version in sorted(tools.items()):
                self._progress(f"Image: Building {tool}@{version}...")
                cmd = (
                    "export CC=gcc CXX=g++ MAKE=gmake && "
                    f"mise use --global {quote(f'{tool}@{version}')}"
                )
                self.executor.run(jail_exec(build_name, cmd, user=user), privileged=True)

        self.executor.run(f"pkg -j {name} clean -y", privileged=True)

    def _discard(self, path: str, build_name: str, started: bool) -> None:
        """Tear down a failed build so no marker-less storage remains."""
        if started:
            try:
                self.executor.run(f"jail -r {quote(build_name)}", privileged=True)
            except BsdeployError as e:
                logger.debug(f"Stopping build jail {build_name} failed: {e}")
        dataset = self.storage.dataset_for(path)
        unmount_tree(self.executor, path, keep_root=dataset is not None)
        self.storage.destroy(path, dataset)


__all__ = [
    "IMAGE_DEFAULT_PACKAGES",
    "ImageBuilder",
    "RUNTIME_BUILD_PACKAGES",
    "compute_fingerprint",
    "image_path",
]
