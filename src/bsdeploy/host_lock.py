"""Host-level lock for deploy and destroy runs.

Jail creation mutates unsynchronized host state: the lo1 alias set the
address allocator scans, the image and base caches, and the mount table.
Two runs against one host must not interleave, so deploy and destroy hold
a lock directory on the host for their whole duration.

Philosophy:
- mkdir is atomic on the host filesystem, no lock daemon needed
- Lock records its owner so a refusal says who holds it
- No expiry: a stale lock from a killed run is removed with `bsdeploy unlock`

Public API:
    host_lock: Context manager holding the lock for one host
    HostLock: Lock operations for one host

Example:
    >>> with host_lock(executor):
    ...     orchestrator.deploy_host(host)
"""

import getpass
import logging
import os
import socket
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime

from bsdeploy.constants import BSDEPLOY_BASE, LOCK_DIR
from bsdeploy.exceptions import BsdeployError, HostLockedError, RemoteExecError
from bsdeploy.remote_exec import RemoteExecutor

logger = logging.getLogger(__name__)

OWNER_FILE = f"{LOCK_DIR}/owner"


def describe_owner() -> str:
    timestamp = datetime.now().isoformat(timespec="seconds")
    return f"{getpass.getuser()}@{socket.gethostname()} (pid {os.getpid()}) since {timestamp}"


class HostLock:
    """Lock directory on one host."""

    def __init__(self, executor: RemoteExecutor):
        self.executor = executor

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            HostLockedError: If another run holds it
            RemoteExecError: If the lock directory cannot be created for
                any other reason
        """
        self.executor.run(f"mkdir -p {BSDEPLOY_BASE}", privileged=True)
        try:
            self.executor.run(f"mkdir {LOCK_DIR}", privileged=True)
        except RemoteExecError as e:
            if not self.is_locked():
                raise
            owner = self.owner() or "an unknown run"
            raise HostLockedError(
                f"{self.executor.host} is locked by {owner}. "
                f"If no bsdeploy run is active there, run 'bsdeploy unlock'."
            ) from e
        self.executor.write_file(describe_owner() + "\n", OWNER_FILE, privileged=True)
        logger.debug(f"Acquired lock on {self.executor.host}")

    def owner(self) -> str | None:
        try:
            return self.executor.run_capture(f"cat {OWNER_FILE}").strip() or None
        except BsdeployError:
            return None

    def release(self) -> None:
        self.executor.run(f"rm -rf {LOCK_DIR}", privileged=True)
        logger.debug(f"Released lock on {self.executor.host}")

    def is_locked(self) -> bool:
        return self.executor.succeeds(f"test -d {LOCK_DIR}")


@contextmanager
def host_lock(executor: RemoteExecutor) -> Generator[HostLock, None, None]:
    """Hold the host lock for the duration of the block.

    Raises:
        HostLockedError: If another run holds the lock
    """
    lock = HostLock(executor)
    lock.acquire()
    try:
        yield lock
    finally:
        try:
            lock.release()
        except BsdeployError as e:
            logger.warning(
                f"Failed to release lock on {executor.host}: {e}. Run 'bsdeploy unlock'."
            )


__all__ = ["HostLock", "OWNER_FILE", "describe_owner", "host_lock"]
