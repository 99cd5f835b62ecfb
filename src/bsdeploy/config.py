"""Service description loading.

The service description is a YAML file (config/bsdeploy.yml by default)
describing what to deploy and where. It is parsed with yaml.safe_load and
validated into dataclasses; every problem is reported as a ConfigError
naming the offending field.

Security:
- yaml.safe_load only (no arbitrary object construction)
- Service and user names restricted to a safe character set
- Secret values are never stored here, only the variable names
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from bsdeploy.constants import DEFAULT_IP_RANGE
from bsdeploy.exceptions import ConfigError
from bsdeploy.jail import DataBinding
from bsdeploy.network import parse_subnet

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/bsdeploy.yml")

_NAME = re.compile(r"^[A-Za-z0-9_-]+$")
_USER = re.compile(r"^[a-z_][a-z0-9_-]*$")
_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

CONFIG_TEMPLATE = """\
# bsdeploy service description

# Service name (required)
service: myapp

# Remote FreeBSD hosts to deploy to (required)
hosts:
  - bsd.example.com

# Prefix privileged commands with doas (default: false)
doas: true

# User the application runs as inside the jail (optional)
user: myapp

jail:
  # FreeBSD base version (default: the host's release without patch level)
  # base_version: "14.1-RELEASE"

  # Private /24 for jail addresses (default: 10.0.0.0/24)
  ip_range: "10.0.0.0/24"

# Caddy reverse proxy in front of the active jail (optional)
proxy:
  hostname: myapp.example.com
  port: 3000
  # tls: true
  # ssl:
  #   certificate_pem: MYAPP_CERT_PEM
  #   private_key_pem: MYAPP_KEY_PEM

# pkg packages installed into the image
packages:
  - curl
  - libyaml

# Runtimes installed with mise into the image
mise:
  ruby: 3.4.7

env:
  # Written to the jail as-is
  clear:
    - PORT: "3000"
    - RAILS_ENV: production

  # Read from your local environment at deploy time
  secret:
    - SECRET_KEY_BASE

# Run inside the new jail before it serves traffic
before_start:
  - bundle install
  - bin/rails assets:precompile
  - bin/rails db:migrate

# Long-running processes (required for deploy)
start:
  - bin/rails server

# Host directories mounted into every jail: "host_path: jail_path" or "path"
data_directories:
  - /var/db/bsdeploy/myapp/storage: /app/storage
"""


def _string_list(data: dict[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"'{key}' must be a list")
    return [str(item) for item in value]


@dataclass(frozen=True)
class SslConfig:
    """Manually managed certificate, read from local environment variables."""

    certificate_pem: str
    private_key_pem: str


@dataclass(frozen=True)
class ProxyConfig:
    hostname: str
    port: int
    tls: bool = True
    ssl: SslConfig | None = None

    def __post_init__(self):
        if not self.hostname:
            raise ConfigError("'proxy.hostname' is required")
        if not 1 <= self.port <= 65535:
            raise ConfigError(f"'proxy.port' out of range: {self.port}")

    @classmethod
    def from_dict(cls, data: Any) -> "ProxyConfig":
        if not isinstance(data, dict):
            raise ConfigError("'proxy' must be a mapping")
        try:
            port = int(data.get("port", 0))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"'proxy.port' must be a number: {e}") from e

        ssl = None
        if data.get("ssl") is not None:
            raw = data["ssl"]
            if not isinstance(raw, dict) or not raw.get("certificate_pem") or not raw.get(
                "private_key_pem"
            ):
                raise ConfigError(
                    "'proxy.ssl' needs both 'certificate_pem' and 'private_key_pem'"
                )
            ssl = SslConfig(str(raw["certificate_pem"]), str(raw["private_key_pem"]))

        return cls(
            hostname=str(data.get("hostname") or ""),
            port=port,
            tls=bool(data.get("tls", True)),
            ssl=ssl,
        )


@dataclass(frozen=True)
class JailConfig:
    base_version: str | None = None
    ip_range: str = DEFAULT_IP_RANGE

    def __post_init__(self):
        parse_subnet(self.ip_range)


@dataclass(frozen=True)
class EnvConfig:
    """Environment written into each jail.

    clear holds (name, value) pairs in declaration order; secret holds the
    names of variables resolved from the local environment at deploy time.
    """

    clear: tuple[tuple[str, str], ...] = ()
    secret: tuple[str, ...] = ()

    def __post_init__(self):
        for name in [n for n, _ in self.clear] + list(self.secret):
            if not _ENV_NAME.match(name):
                raise ConfigError(f"Invalid environment variable name in 'env': {name!r}")

    @classmethod
    def from_dict(cls, data: Any) -> "EnvConfig":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError("'env' must be a mapping")

        raw_clear = data.get("clear") or []
        if isinstance(raw_clear, dict):
            raw_clear = [raw_clear]
        if not isinstance(raw_clear, list):
            raise ConfigError("'env.clear' must be a list or a mapping")

        clear = []
        for entry in raw_clear:
            if not isinstance(entry, dict):
                raise ConfigError(f"'env.clear' entries must be mappings, got {entry!r}")
            clear.extend((str(k), "" if v is None else str(v)) for k, v in entry.items())

        return cls(clear=tuple(clear), secret=tuple(_string_list(data, "secret")))


def parse_data_directories(entries: list[Any]) -> list[DataBinding]:
    """Parse data_directories entries.

    "path" binds the same path on host and in the jail;
    {host_path: jail_path} binds different paths.
    """
    bindings = []
    for entry in entries:
        if isinstance(entry, str):
            pairs = [(entry, entry)]
        elif isinstance(entry, dict):
            pairs = [(str(k), str(v)) for k, v in entry.items()]
        else:
            raise ConfigError(f"Invalid data_directories entry: {entry!r}")

        for host_path, jail_path in pairs:
            if not host_path.startswith("/") or not jail_path.startswith("/"):
                raise ConfigError(
                    f"data_directories paths must be absolute: {host_path} -> {jail_path}"
                )
            bindings.append(DataBinding(host_path.rstrip("/"), jail_path.rstrip("/")))
    return bindings


@dataclass(frozen=True)
class ServiceConfig:
    """Validated service description."""

    service: str
    hosts: tuple[str, ...]
    user: str | None = None
    doas: bool = False
    packages: tuple[str, ...] = ()
    mise: dict[str, str] = field(default_factory=dict)
    env: EnvConfig = field(default_factory=EnvConfig)
    before_start: tuple[str, ...] = ()
    start: tuple[str, ...] = ()
    data_directories: tuple[DataBinding, ...] = ()
    jail: JailConfig = field(default_factory=JailConfig)
    proxy: ProxyConfig | None = None

    def __post_init__(self):
        if not self.service or not _NAME.match(self.service):
            raise ConfigError(
                f"'service' must be letters, digits, '-' or '_', got {self.service!r}"
            )
        if not self.hosts:
            raise ConfigError("'hosts' must list at least one host")
        if self.user is not None and not _USER.match(self.user):
            raise ConfigError(f"Invalid 'user': {self.user!r}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServiceConfig":
        mise = data.get("mise") or {}
        if not isinstance(mise, dict):
            raise ConfigError("'mise' must be a mapping of tool to version")

        jail = data.get("jail") or {}
        if not isinstance(jail, dict):
            raise ConfigError("'jail' must be a mapping")

        user = data.get("user")
        return cls(
            service=str(data.get("service") or ""),
            hosts=tuple(_string_list(data, "hosts")),
            user=str(user) if user else None,
            doas=bool(data.get("doas", False)),
            packages=tuple(_string_list(data, "packages")),
            mise={str(k): str(v) for k, v in mise.items()},
            env=EnvConfig.from_dict(data.get("env")),
            before_start=tuple(_string_list(data, "before_start")),
            start=tuple(_string_list(data, "start")),
            data_directories=tuple(parse_data_directories(data.get("data_directories") or [])),
            jail=JailConfig(
                base_version=str(jail["base_version"]) if jail.get("base_version") else None,
                ip_range=str(jail.get("ip_range") or DEFAULT_IP_RANGE),
            ),
            proxy=ProxyConfig.from_dict(data["proxy"]) if data.get("proxy") else None,
        )


class ConfigLoader:
    """Load and create service description files."""

    @classmethod
    def load(cls, path: str | Path = DEFAULT_CONFIG_PATH) -> ServiceConfig:
        """Load and validate a service description.

        Raises:
            ConfigError: If the file is missing, not YAML, or invalid
        """
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(
                f"Config file not found: {config_path}. Run 'bsdeploy init' to create one."
            )

        try:
            with config_path.open() as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML in {config_path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a YAML mapping")

        config = ServiceConfig.from_dict(data)
        logger.debug(f"Loaded config for service {config.service} from {config_path}")
        return config

    @classmethod
    def write_template(cls, path: str | Path = DEFAULT_CONFIG_PATH) -> Path:
        """Write the commented template, refusing to overwrite.

        Raises:
            ConfigError: If the file exists or cannot be written
        """
        config_path = Path(path)
        if config_path.exists():
            raise ConfigError(f"Configuration file already exists at: {config_path}")

        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            config_path.write_text(CONFIG_TEMPLATE)
        except OSError as e:
            raise ConfigError(f"Failed to write config file {config_path}: {e}") from e
        return config_path


__all__ = [
    "CONFIG_TEMPLATE",
    "ConfigLoader",
    "DEFAULT_CONFIG_PATH",
    "EnvConfig",
    "JailConfig",
    "ProxyConfig",
    "ServiceConfig",
    "SslConfig",
    "parse_data_directories",
]
