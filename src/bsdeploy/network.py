"""Jail address allocation on the loopback alias interface.

Each serving jail gets a private /32 aliased on lo1. The set of live
aliases is the only record of which addresses are taken: allocation scans
it, so callers must alias an address right after allocating it and remove
the alias on teardown.

Philosophy:
- The live interface is the source of truth (no lease file)
- Only /24 subnets; anything else is rejected up front
- Best-effort scan, not a reserved IPAM
"""

import ipaddress
import logging

from bsdeploy.constants import LOOPBACK_INTERFACE
from bsdeploy.exceptions import BsdeployError, ConfigError, NoAddressAvailable
from bsdeploy.remote_exec import RemoteExecutor
from bsdeploy.shell import quote

logger = logging.getLogger(__name__)

# Host suffixes handed out: .0, .1 and .255 are reserved
FIRST_SUFFIX = 2
LAST_SUFFIX = 254


def parse_subnet(subnet: str) -> ipaddress.IPv4Network:
    """Parse and validate a jail subnet.

    Raises:
        ConfigError: If subnet is not an IPv4 /24
    """
    try:
        network = ipaddress.IPv4Network(subnet, strict=False)
    except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError) as e:
        raise ConfigError(f"Invalid jail subnet {subnet!r}: {e}") from e

    if network.prefixlen != 24:
        raise ConfigError(f"Jail subnet must be a /24, got {subnet!r}")
    return network


def parse_ifconfig_addresses(output: str) -> set[str]:
    """Extract IPv4 addresses from ifconfig output.

    Example output line:
        inet 10.0.0.2 netmask 0xffffffff
    """
    addresses = set()
    for line in output.splitlines():
        fields = line.split()
        if len(fields) >= 2 and fields[0] == "inet":
            addresses.add(fields[1])
    return addresses


class AddressAllocator:
    """Allocate and alias jail addresses on one host."""

    def __init__(self, executor: RemoteExecutor, interface: str = LOOPBACK_INTERFACE):
        self.executor = executor
        self.interface = interface

    def ensure_interface(self) -> None:
        """Create the loopback alias interface if it does not exist."""
        if not self.executor.succeeds(f"ifconfig {self.interface}"):
            logger.info(f"Creating {self.interface} on {self.executor.host}")
            self.executor.run(f"ifconfig {self.interface} create", privileged=True)

    def aliased_addresses(self) -> set[str]:
        """List addresses currently aliased on the interface."""
        try:
            output = self.executor.run_capture(f"ifconfig {self.interface}")
        except BsdeployError:
            # Interface missing means nothing is aliased yet
            return set()
        return parse_ifconfig_addresses(output)

    def find_free_address(self, subnet: str) -> str:
        """Find the first unaliased address in subnet.

        Scans host suffixes .2 through .254 in order.

        Raises:
            ConfigError: If subnet is not a /24
            NoAddressAvailable: If every suffix is aliased
        """
        network = parse_subnet(subnet)
        used = self.aliased_addresses()

        for suffix in range(FIRST_SUFFIX, LAST_SUFFIX + 1):
            candidate = str(network.network_address + suffix)
            if candidate not in used:
                return candidate

        raise NoAddressAvailable(f"No free IPs found in subnet {subnet} on {self.executor.host}")

    def add_alias(self, address: str) -> None:
        self.executor.run(
            f"ifconfig {self.interface} inet {quote(address)}/32 alias", privileged=True
        )

    def remove_alias(self, address: str) -> None:
        self.executor.run(
            f"ifconfig {self.interface} inet {quote(address)} -alias", privileged=True
        )


__all__ = [
    "AddressAllocator",
    "parse_ifconfig_addresses",
    "parse_subnet",
]
