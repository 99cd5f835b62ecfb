"""Integration tests for the full service lifecycle.

Runs setup, repeated deploys, status and destroy against one simulated
host, on plain directories and on ZFS:
- Setup output is picked up by deploys (user, Caddyfile import, boot script)
- Each deploy moves the proxy, active link and boot metadata together
- Retention keeps the newest jails and their addresses only
- Destroy leaves the shared caches in place
"""

import json

import pytest

from bsdeploy.base_system import base_path
from bsdeploy.boot import RCD_SCRIPT
from bsdeploy.constants import (
    ACTIVE_DIR,
    CADDYFILE_PATH,
    JAILS_TO_KEEP,
    METADATA_FILE,
    RCD_SCRIPT_PATH,
)
from bsdeploy.deploy import DeploymentOrchestrator
from bsdeploy.jail import jail_path
from bsdeploy.provisioning import HostProvisioner
from bsdeploy.proxy import CADDY_IMPORT, parse_backend, proxy_conf_path
from bsdeploy.status import StatusReporter
from bsdeploy.teardown import ServiceTeardown
from mocks.fake_host import FakeHost

pytestmark = pytest.mark.integration


@pytest.fixture(params=[False, True], ids=["plain", "zfs"])
def host(request):
    return FakeHost("bsd1", zfs=request.param)


def _factory(host):
    return lambda _: host


class TestServiceLifecycle:
    def test_setup_deploy_status_destroy(self, host, service_config, app_dir, secrets_env):
        factory = _factory(host)

        setup = HostProvisioner(service_config, executor_factory=factory, environ=secrets_env)
        assert setup.setup_all()[0].success is True
        assert host.files[RCD_SCRIPT_PATH] == RCD_SCRIPT
        assert CADDY_IMPORT in host.files[CADDYFILE_PATH]

        orchestrator = DeploymentOrchestrator(
            service_config, source_dir=app_dir, executor_factory=factory, environ=secrets_env
        )
        results = [orchestrator.deploy_host("bsd1") for _ in range(JAILS_TO_KEEP + 1)]
        latest = results[-1]

        assert all(r.success for r in results)
        assert [r.ip for r in results] == ["10.0.0.2", "10.0.0.3", "10.0.0.4", "10.0.0.5"]
        assert latest.pruned == [results[0].jail_name]
        assert host.aliases == {"10.0.0.3", "10.0.0.4", "10.0.0.5"}
        assert not host.exists(jail_path(results[0].jail_name))
        # One image serves every generation
        assert len({r.image_path for r in results}) == 1

        # Proxy, active link and boot metadata agree on the new jail
        assert parse_backend(host.files[proxy_conf_path("web")]) == "10.0.0.5:3000"
        assert host.links[f"{ACTIVE_DIR}/web"] == jail_path(latest.jail_name)
        metadata = json.loads(host.files[f"{jail_path(latest.jail_name)}/{METADATA_FILE}"])
        assert metadata["jail_name"] == latest.jail_name
        assert metadata["ip"] == "10.0.0.5"
        assert metadata["zfs"] == ("zroot/bsdeploy/jails" in host.datasets)

        status = StatusReporter(service_config, executor_factory=factory).collect("bsd1")
        assert [j.name for j in status.jails] == [r.jail_name for r in reversed(results[1:])]
        assert [j.serving for j in status.jails] == [True, False, False]
        assert all(j.running for j in status.jails)
        assert status.active_jail == latest.jail_name

        teardown = ServiceTeardown(service_config, executor_factory=factory).destroy_host("bsd1")
        assert teardown.destroyed == [r.jail_name for r in results[1:]]
        assert teardown.incomplete == []
        assert host.jails == {}
        assert host.aliases == set()
        assert f"{ACTIVE_DIR}/web" not in host.links
        assert proxy_conf_path("web") not in host.files
        # Caches stay for the next deploy
        assert host.exists(latest.image_path)
        assert host.exists(base_path("14.1-RELEASE"))

    def test_failed_deploy_between_good_ones(self, host, service_config, app_dir, secrets_env):
        orchestrator = DeploymentOrchestrator(
            service_config,
            source_dir=app_dir,
            executor_factory=_factory(host),
            environ=secrets_env,
        )
        first = orchestrator.deploy_host("bsd1")

        host.fail_on("bundle install")
        results = orchestrator.deploy_all()
        assert results[0].success is False
        assert results[0].rolled_back is True

        host.clear_failures()
        third = orchestrator.deploy_host("bsd1")

        # The rolled back jail's address is free again
        assert third.ip == "10.0.0.3"
        assert third.stopped == [first.jail_name]
        assert parse_backend(host.files[proxy_conf_path("web")]) == "10.0.0.3:3000"
        assert set(host.jails) == {first.jail_name, third.jail_name}
