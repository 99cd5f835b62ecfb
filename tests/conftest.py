"""
Shared test fixtures and configuration for bsdeploy tests.

This module provides common fixtures used across all test types:
- Simulated FreeBSD hosts (plain directories and ZFS)
- Sample service descriptions
- Config files on disk
"""

from typing import Any

import pytest
import yaml

from bsdeploy.config import ServiceConfig
from mocks.fake_host import FakeHost

# ============================================================================
# HOST FIXTURES
# ============================================================================


@pytest.fixture
def fake_host():
    """Simulated host without ZFS."""
    return FakeHost("bsd1")


@pytest.fixture
def zfs_host():
    """Simulated host with a ZFS root and the bsdeploy datasets."""
    return FakeHost("bsd1", zfs=True)


@pytest.fixture
def host_factory():
    """Create (and remember) one FakeHost per hostname.

    Usable as an executor_factory for the orchestrators.
    """
    hosts: dict[str, FakeHost] = {}

    def factory(host: str) -> FakeHost:
        if host not in hosts:
            hosts[host] = FakeHost(host)
        return hosts[host]

    factory.hosts = hosts
    return factory


# ============================================================================
# CONFIG FIXTURES
# ============================================================================


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    return {
        "service": "web",
        "hosts": ["bsd1"],
        "user": "app",
        "packages": ["curl"],
        "mise": {"ruby": "3.4.7"},
        "env": {
            "clear": [{"PORT": "3000"}, {"RAILS_ENV": "production"}],
            "secret": ["SECRET_KEY_BASE"],
        },
        "before_start": ["bundle install"],
        "start": ["bin/rails server", "bin/jobs"],
        "data_directories": [{"/var/db/bsdeploy/web/storage": "/app/storage"}],
        "jail": {"base_version": "14.1-RELEASE", "ip_range": "10.0.0.0/24"},
        "proxy": {"hostname": "web.example.com", "port": 3000},
    }


@pytest.fixture
def service_config(sample_config_dict) -> ServiceConfig:
    return ServiceConfig.from_dict(sample_config_dict)


@pytest.fixture
def secrets_env() -> dict[str, str]:
    return {"SECRET_KEY_BASE": "s3cr3t'value"}


@pytest.fixture
def config_file(tmp_path, sample_config_dict):
    """Write the sample service description to tmp_path/config/bsdeploy.yml."""
    path = tmp_path / "config" / "bsdeploy.yml"
    path.parent.mkdir()
    path.write_text(yaml.safe_dump(sample_config_dict))
    return path


@pytest.fixture
def app_dir(tmp_path):
    """Minimal application source directory."""
    source = tmp_path / "app"
    source.mkdir()
    (source / "Gemfile").write_text("source 'https://rubygems.org'\n")
    return source
