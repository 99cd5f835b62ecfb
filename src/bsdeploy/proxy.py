"""Caddy reverse proxy management.

Each service owns one file, CADDY_CONF_DIR/<service>.caddy, imported by
the main Caddyfile. The file is regenerated from scratch on every cutover
and Caddy is reloaded; it is the only record of which jail gets traffic.

Security:
- Certificate and key contents come from local environment variables and
  are streamed to the host, never logged
- Installed certificates are mode 600, owned by www
"""

import logging
import os
import re
from collections.abc import Mapping

from bsdeploy.config import ProxyConfig, SslConfig
from bsdeploy.constants import CADDY_CERTS_DIR, CADDY_CONF_DIR, CADDYFILE_PATH
from bsdeploy.exceptions import BsdeployError, ConfigError
from bsdeploy.remote_exec import RemoteExecutor
from bsdeploy.shell import quote

logger = logging.getLogger(__name__)

# Relative to the main Caddyfile
CADDY_IMPORT = "import conf.d/*.caddy"

_REVERSE_PROXY = re.compile(r"^\s*reverse_proxy\s+(\S+)", re.MULTILINE)


def proxy_conf_path(service: str) -> str:
    return f"{CADDY_CONF_DIR}/{service}.caddy"


def certificate_paths(service: str) -> tuple[str, str]:
    return f"{CADDY_CERTS_DIR}/{service}.crt", f"{CADDY_CERTS_DIR}/{service}.key"


def render_config(
    hostname: str, backend: str, tls: bool = True, certificates: tuple[str, str] | None = None
) -> str:
    """Render a site block proxying hostname to backend.

    Args:
        hostname: Public hostname
        backend: Jail address and port, e.g. "10.0.0.2:3000"
        tls: Let Caddy manage HTTPS; False serves plain HTTP
        certificates: (certificate path, key path) of a manual certificate

    Example:
        >>> print(render_config("app.example.com", "10.0.0.2:3000", tls=False), end="")
        http://app.example.com {
            reverse_proxy 10.0.0.2:3000
        }
    """
    site = hostname if tls or certificates else f"http://{hostname}"
    lines = [f"{site} {{"]
    if certificates:
        lines.append(f"    tls {certificates[0]} {certificates[1]}")
    lines.append(f"    reverse_proxy {backend}")
    lines.append("}")
    return "\n".join(lines) + "\n"


def parse_backend(content: str) -> str | None:
    """Get the reverse_proxy target from a rendered site block."""
    match = _REVERSE_PROXY.search(content)
    return match.group(1) if match else None


def resolve_certificate(
    ssl: SslConfig, environ: Mapping[str, str] | None = None
) -> tuple[str, str]:
    """Read the certificate and key named by ssl from the local environment.

    Raises:
        ConfigError: If either variable is undefined
    """
    environ = os.environ if environ is None else environ
    for name in (ssl.certificate_pem, ssl.private_key_pem):
        if name not in environ:
            raise ConfigError(f"Missing TLS environment variable: {name}")
    return environ[ssl.certificate_pem], environ[ssl.private_key_pem]


class ProxyManager:
    """Install and remove one service's Caddy site on a host."""

    def __init__(self, executor: RemoteExecutor, service: str):
        self.executor = executor
        self.service = service

    def configure(self) -> None:
        """Enable Caddy and make the main Caddyfile import per-service sites.

        An existing Caddyfile is kept; the import line is appended if missing.
        """
        self.executor.run("sysrc caddy_enable=YES", privileged=True)
        self.executor.run(f"mkdir -p {CADDY_CONF_DIR} {CADDY_CERTS_DIR}", privileged=True)

        if not self.executor.succeeds(f"test -f {CADDYFILE_PATH}"):
            self.executor.write_file(f"{CADDY_IMPORT}\n", CADDYFILE_PATH, privileged=True)
        elif not self.executor.succeeds(f"grep -qF {quote(CADDY_IMPORT)} {CADDYFILE_PATH}"):
            logger.info(f"Appending import to {CADDYFILE_PATH} on {self.executor.host}")
            append = self.executor.elevate(f"tee -a {CADDYFILE_PATH}")
            self.executor.run(f"echo {quote(CADDY_IMPORT)} | {append} > /dev/null")

    def has_site(self) -> bool:
        return self.executor.succeeds(f"test -f {quote(proxy_conf_path(self.service))}")

    def install_certificates(self, certificate: str, private_key: str) -> tuple[str, str]:
        """Write a manual certificate and key, readable by Caddy only.

        Returns:
            (certificate path, key path)
        """
        cert_path, key_path = certificate_paths(self.service)
        self.executor.run(f"mkdir -p {CADDY_CERTS_DIR}", privileged=True)
        self.executor.write_file(certificate, cert_path, privileged=True)
        self.executor.write_file(private_key, key_path, privileged=True)
        paths = f"{quote(cert_path)} {quote(key_path)}"
        self.executor.run(f"chmod 600 {paths}", privileged=True)
        self.executor.run(f"chown www:www {paths}", privileged=True)
        return cert_path, key_path

    def write_site(
        self,
        proxy: ProxyConfig,
        backend: str,
        certificate: tuple[str, str] | None = None,
    ) -> str:
        """Write the service's site file without reloading Caddy.

        Args:
            proxy: Proxy settings
            backend: reverse_proxy target, e.g. "10.0.0.2:3000"
            certificate: Resolved (certificate, key) contents for manual TLS

        Returns:
            The rendered configuration
        """
        cert_paths = None
        if certificate:
            cert_paths = self.install_certificates(*certificate)

        content = render_config(proxy.hostname, backend, tls=proxy.tls, certificates=cert_paths)
        self.executor.run(f"mkdir -p {CADDY_CONF_DIR}", privileged=True)
        self.executor.write_file(content, proxy_conf_path(self.service), privileged=True)
        return content

    def install(
        self,
        proxy: ProxyConfig,
        backend_ip: str,
        certificate: tuple[str, str] | None = None,
    ) -> str:
        """Point the service's site at backend_ip and reload Caddy."""
        content = self.write_site(proxy, f"{backend_ip}:{proxy.port}", certificate)
        self.reload()
        logger.info(f"Proxy for {proxy.hostname} now targets {backend_ip}:{proxy.port}")
        return content

    def reload(self) -> None:
        self.executor.run("service caddy reload", privileged=True)

    def restart(self) -> None:
        self.executor.run("service caddy restart", privileged=True)

    def current_backend(self) -> str | None:
        try:
            content = self.executor.run_capture(f"cat {quote(proxy_conf_path(self.service))}")
        except BsdeployError:
            return None
        return parse_backend(content)

    def remove(self) -> None:
        """Delete the service's site and certificates, then reload Caddy."""
        cert_path, key_path = certificate_paths(self.service)
        self.executor.run(
            f"rm -f {quote(proxy_conf_path(self.service))} {quote(cert_path)} {quote(key_path)}",
            privileged=True,
        )
        self.reload()


__all__ = [
    "CADDY_IMPORT",
    "ProxyManager",
    "certificate_paths",
    "parse_backend",
    "proxy_conf_path",
    "render_config",
    "resolve_certificate",
]
