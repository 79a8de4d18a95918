"""The interface every network driver implements, and what it is given."""

from __future__ import annotations

import abc
import ipaddress
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

from podnet import constants
from podnet.types import Network, PerNetworkOptions, PortMapping, StatusBlock

IpAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass
class DriverInfo:
    """Everything a driver needs to set up or tear down one network."""

    network: Network
    per_network_opts: PerNetworkOptions
    container_id: str
    container_name: str
    netns_path: str = ""
    netns_host: Any = None
    netns_container: Any = None
    container_dns_servers: Optional[list[IpAddress]] = None
    port_mappings: Optional[list[PortMapping]] = None
    dns_port: int = 53
    config_dir: Path = Path(constants.DEFAULT_CONFIG_DIR)
    rootless: bool = False
    firewall: Any = None


class NetworkDriver(abc.ABC):
    """A network driver; subclasses keep their DriverInfo in ``self.info``."""

    info: DriverInfo

    @abc.abstractmethod
    def validate(self) -> None:
        """Check the driver options, raising NetavarkError when they are wrong."""

    @abc.abstractmethod
    def setup(self, netlink_sockets: tuple[Any, Any]) -> tuple[StatusBlock, Any]:
        """Set up interfaces and firewall rules.

        ``netlink_sockets`` holds the host socket first and the container
        socket second. Returns the status block and an optional DNS entry.
        """

    @abc.abstractmethod
    def teardown(self, netlink_sockets: tuple[Any, Any]) -> None:
        """Undo what ``setup`` did."""

    def network_name(self) -> str:
        """Return the name of the network this driver handles."""
        return self.info.network.name