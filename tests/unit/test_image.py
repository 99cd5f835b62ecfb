"""Unit tests for the content-addressed image cache."""

import pytest

from bsdeploy.base_system import BaseSystemProvisioner
from bsdeploy.constants import IMAGES_DIR, READY_MARKER
from bsdeploy.exceptions import CacheCorruptionError, RemoteExecError
from bsdeploy.image import (
    SHORT_HASH_LENGTH,
    ImageBuilder,
    compute_fingerprint,
    image_path,
)
from bsdeploy.storage import Storage

VERSION = "14.1-RELEASE"


def _builder(host) -> ImageBuilder:
    storage = Storage(host)
    BaseSystemProvisioner(host, storage).ensure_base(VERSION)
    return ImageBuilder(host, storage)


class TestComputeFingerprint:
    """Tests for compute_fingerprint()."""

    def test_package_order_independent(self):
        assert compute_fingerprint(VERSION, ["b", "a"], {}) == compute_fingerprint(
            VERSION, ["a", "b"], {}
        )

    def test_tool_order_independent(self):
        first = compute_fingerprint(VERSION, [], {"ruby": "3.4", "node": "22"})
        second = compute_fingerprint(VERSION, [], {"node": "22", "ruby": "3.4"})
        assert first == second

    def test_duplicate_packages_ignored(self):
        assert compute_fingerprint(VERSION, ["a", "a"], {}) == compute_fingerprint(
            VERSION, ["a"], {}
        )

    @pytest.mark.parametrize(
        "changed",
        [
            ("14.2-RELEASE", ["curl"], {"ruby": "3.4"}, "app"),
            (VERSION, ["wget"], {"ruby": "3.4"}, "app"),
            (VERSION, ["curl", "wget"], {"ruby": "3.4"}, "app"),
            (VERSION, ["curl"], {"ruby": "3.3"}, "app"),
            (VERSION, ["curl"], {"node": "3.4"}, "app"),
            (VERSION, ["curl"], {"ruby": "3.4"}, "web"),
            (VERSION, ["curl"], {"ruby": "3.4"}, None),
        ],
    )
    def test_every_field_matters(self, changed):
        reference = compute_fingerprint(VERSION, ["curl"], {"ruby": "3.4"}, "app")
        assert compute_fingerprint(*changed) != reference

    def test_fields_do_not_run_together(self):
        assert compute_fingerprint(VERSION, ["ab"], {}) != compute_fingerprint(
            VERSION, ["a", "b"], {}
        )

    def test_hex_digest_and_path(self):
        fingerprint = compute_fingerprint(VERSION, [], {})
        assert len(fingerprint) == 64
        assert image_path(fingerprint) == f"{IMAGES_DIR}/{fingerprint[:SHORT_HASH_LENGTH]}"


class TestEnsureImage:
    """Tests for ImageBuilder.ensure_image() on plain directories."""

    def test_builds_and_marks_ready(self, fake_host):
        path = _builder(fake_host).ensure_image(VERSION, ["curl"], {"ruby": "3.4.7"}, "app")

        assert path == image_path(compute_fingerprint(VERSION, ["curl"], {"ruby": "3.4.7"}, "app"))
        assert f"{path}/{READY_MARKER}" in fake_host.files
        assert fake_host.ran("pkg -j build-")
        assert fake_host.ran("install -y curl")
        assert fake_host.ran("mise use --global ruby@3.4.7")
        assert fake_host.ran("clean -y")
        # Build jail and its devfs are gone
        assert not any(name.startswith("build-") for name in fake_host.jails)
        assert fake_host.mounts_under(path) == []

    def test_cache_hit_performs_no_build(self, fake_host):
        builder = _builder(fake_host)
        first = builder.ensure_image(VERSION, ["curl"], {}, None)
        commands_before = len(fake_host.commands)

        second = builder.ensure_image(VERSION, ["curl"], {}, None)

        assert second == first
        new_commands = fake_host.commands[commands_before:]
        assert not any(c.startswith(("rsync", "jail -c", "pkg", "touch")) for c in new_commands)

    def test_user_created_when_missing(self, fake_host):
        fake_host.fail_on("id app")
        _builder(fake_host).ensure_image(VERSION, [], {}, "app")
        assert fake_host.ran("pw useradd -n app")

    def test_no_runtime_toolchain_without_tools(self, fake_host):
        _builder(fake_host).ensure_image(VERSION, [], {}, None)
        assert not fake_host.ran("gmake")

    def test_failed_build_leaves_no_storage(self, fake_host):
        builder = _builder(fake_host)
        fake_host.fail_on("install -y curl", "pkg: No packages available")

        with pytest.raises(RemoteExecError):
            builder.ensure_image(VERSION, ["curl"], {}, None)

        path = image_path(compute_fingerprint(VERSION, ["curl"], {}, None))
        assert not fake_host.exists(path)
        assert f"{path}/{READY_MARKER}" not in fake_host.files
        assert fake_host.mounts_under(path) == []
        assert not any(name.startswith("build-") for name in fake_host.jails)

    def test_retry_after_failure_rebuilds_from_scratch(self, fake_host):
        builder = _builder(fake_host)
        fake_host.fail_on("install -y curl")
        with pytest.raises(RemoteExecError):
            builder.ensure_image(VERSION, ["curl"], {}, None)

        fake_host.clear_failures()
        path = builder.ensure_image(VERSION, ["curl"], {}, None)

        assert f"{path}/{READY_MARKER}" in fake_host.files
        assert len(fake_host.matching("rsync -a --exclude /var/empty")) == 2

    def test_directory_without_marker_is_corrupt(self, fake_host):
        builder = _builder(fake_host)
        path = f"{IMAGES_DIR}/abcdef012345"
        fake_host.add_tree(path, ["etc"])

        with pytest.raises(CacheCorruptionError):
            builder.check_ready(path)
        assert builder.is_ready(path) is False
        assert not fake_host.exists(path)


class TestEnsureImageZfs:
    """Tests for ImageBuilder on ZFS."""

    def test_clones_base_snapshot(self, zfs_host):
        path = _builder(zfs_host).ensure_image(VERSION, [], {}, None)
        short_hash = path.rsplit("/", 1)[1]

        assert zfs_host.ran(
            f"zfs clone -o mountpoint={path} zroot/bsdeploy/base/{VERSION}@ready "
            f"zroot/bsdeploy/images/{short_hash}"
        )
        assert f"zroot/bsdeploy/images/{short_hash}@ready" in zfs_host.snapshots
        assert not zfs_host.ran("rsync -a --exclude")

    def test_dataset_without_snapshot_is_rebuilt(self, zfs_host):
        builder = _builder(zfs_host)
        path = image_path(compute_fingerprint(VERSION, [], {}, None))
        short_hash = path.rsplit("/", 1)[1]
        Storage(zfs_host).create_dataset(f"zroot/bsdeploy/images/{short_hash}", path)

        builder.ensure_image(VERSION, [], {}, None)

        assert zfs_host.ran(f"zfs destroy -r zroot/bsdeploy/images/{short_hash}")
        assert f"zroot/bsdeploy/images/{short_hash}@ready" in zfs_host.snapshots

    def test_failed_build_destroys_dataset(self, zfs_host):
        builder = _builder(zfs_host)
        zfs_host.fail_on("pkg -j")

        with pytest.raises(RemoteExecError):
            builder.ensure_image(VERSION, [], {}, None)

        assert not any(d.startswith("zroot/bsdeploy/images/") for d in zfs_host.datasets)
        assert not any(s.startswith("zroot/bsdeploy/images/") for s in zfs_host.snapshots)

    def test_retry_after_failed_build_starts_from_scratch(self, zfs_host):
        builder = _builder(zfs_host)
        zfs_host.fail_on("pkg -j")
        with pytest.raises(RemoteExecError):
            builder.ensure_image(VERSION, [], {}, None)
        zfs_host.clear_failures()

        path = builder.ensure_image(VERSION, [], {}, None)
        short_hash = path.rsplit("/", 1)[1]

        assert zfs_host.ran(f"zfs destroy -r zroot/bsdeploy/images/{short_hash}")
        assert f"umount -f {path}" not in zfs_host.commands
        assert zfs_host.datasets[f"zroot/bsdeploy/images/{short_hash}"] == path
        assert f"zroot/bsdeploy/images/{short_hash}@ready" in zfs_host.snapshots
