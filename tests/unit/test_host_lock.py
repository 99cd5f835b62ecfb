"""Unit tests for the host lock."""

import pytest

from bsdeploy.constants import LOCK_DIR
from bsdeploy.exceptions import BsdeployError, HostLockedError, RemoteExecError
from bsdeploy.host_lock import OWNER_FILE, HostLock, host_lock


class TestHostLock:
    def test_acquire_and_release(self, fake_host):
        lock = HostLock(fake_host)
        lock.acquire()

        assert lock.is_locked()
        assert "pid" in lock.owner()

        lock.release()
        assert not lock.is_locked()
        assert lock.owner() is None

    def test_second_acquire_names_owner(self, fake_host):
        HostLock(fake_host).acquire()
        owner = fake_host.files[OWNER_FILE].strip()

        with pytest.raises(HostLockedError, match="bsdeploy unlock") as exc_info:
            HostLock(fake_host).acquire()
        assert owner in str(exc_info.value)

    def test_lock_without_owner_file(self, fake_host):
        fake_host.add_tree(LOCK_DIR, [])
        with pytest.raises(HostLockedError, match="an unknown run"):
            HostLock(fake_host).acquire()

    def test_mkdir_failure_is_not_a_held_lock(self, fake_host):
        fake_host.fail_on(f"mkdir {LOCK_DIR}", "mkdir: Permission denied")

        with pytest.raises(RemoteExecError, match="Permission denied"):
            HostLock(fake_host).acquire()
        assert not fake_host.exists(LOCK_DIR)


class TestHostLockContext:
    def test_released_after_block(self, fake_host):
        with host_lock(fake_host):
            assert fake_host.exists(LOCK_DIR)
        assert not fake_host.exists(LOCK_DIR)

    def test_released_on_error(self, fake_host):
        with pytest.raises(BsdeployError):
            with host_lock(fake_host):
                raise BsdeployError("step failed")
        assert not fake_host.exists(LOCK_DIR)

    def test_failed_release_only_warns(self, fake_host):
        with host_lock(fake_host):
            fake_host.fail_on(f"rm -rf {LOCK_DIR}")
        assert fake_host.exists(LOCK_DIR)
