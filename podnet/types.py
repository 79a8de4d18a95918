"""Configuration types exchanged with the container engine as JSON."""

from __future__ import annotations

import ipaddress
import json
import os
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Optional, TypeVar, Union

from podnet.errors import NetavarkError

IpAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IpNet = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]

T = TypeVar("T")


def _object(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError(f"invalid type for {what}: expected an object")
    return value


def _required(data: Mapping[str, Any], name: str) -> Any:
    try:
        return data[name]
    except KeyError:
        raise ValueError(f"missing field `{name}`") from None


def _optional(data: Mapping[str, Any], name: str, parse: Callable[[Any, str], T]) -> Optional[T]:
    value = data.get(name)
    return None if value is None else parse(value, name)


def _bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"invalid type for `{name}`: expected a boolean")
    return value


def _str(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"invalid type for `{name}`: expected a string")
    return value


def _uint(bits: int) -> Callable[[Any, str], int]:
    limit = 1 << bits

    def parse(value: Any, name: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"invalid type for `{name}`: expected an integer")
        if not 0 <= value < limit:
            raise ValueError(f"invalid value for `{name}`: {value} is out of range for u{bits}")
        return value

    return parse


_u16 = _uint(16)
_u32 = _uint(32)


def _ip(value: Any, name: str) -> IpAddress:
    text = _str(value, name)
    if "%" in text:
        raise ValueError(f"invalid IP address syntax for `{name}`: {text}")
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        raise ValueError(f"invalid IP address syntax for `{name}`: {text}") from None


def _ipnet(value: Any, name: str) -> IpNet:
    text = _str(value, name)
    addr, sep, prefix = text.partition("/")
    if not sep or not prefix.isdigit() or "%" in addr:
        raise ValueError(f"invalid IP network syntax for `{name}`: {text}")
    try:
        return ipaddress.ip_interface(f"{ipaddress.ip_address(addr)}/{int(prefix)}")
    except ValueError:
        raise ValueError(f"invalid IP network syntax for `{name}`: {text}") from None


def _list(parse: Callable[[Any, str], T]) -> Callable[[Any, str], list[T]]:
    def parse_list(value: Any, name: str) -> list[T]:
        if not isinstance(value, list):
            raise ValueError(f"invalid type for `{name}`: expected a list")
        return [parse(item, name) for item in value]

    return parse_list


def _map(parse: Callable[[Any, str], T]) -> Callable[[Any, str], dict[str, T]]:
    def parse_map(value: Any, name: str) -> dict[str, T]:
        mapping = _object(value, f"`{name}`")
        return {_str(key, name): parse(item, name) for key, item in mapping.items()}

    return parse_map


def _opt_str(value: Optional[IpAddress]) -> Optional[str]:
    return None if value is None else str(value)


def _opt_strs(values: Optional[list[Any]]) -> Optional[list[str]]:
    return None if values is None else [str(v) for v in values]


@dataclass
class LeaseRange:
    """Range of addresses available for leases in a subnet."""

    end_ip: Optional[str] = None
    start_ip: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "LeaseRange":
        data = _object(data, "LeaseRange")
        return cls(
            end_ip=_optional(data, "end_ip", _str),
            start_ip=_optional(data, "start_ip", _str),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"end_ip": self.end_ip, "start_ip": self.start_ip}


@dataclass
class Subnet:
    """A subnet of a network, in CIDR form, with an optional gateway."""

    subnet: IpNet
    gateway: Optional[IpAddress] = None
    lease_range: Optional[LeaseRange] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Subnet":
        data = _object(data, "Subnet")
        return cls(
            subnet=_ipnet(_required(data, "subnet"), "subnet"),
            gateway=_optional(data, "gateway", _ip),
            lease_range=_optional(data, "lease_range", lambda v, _n: LeaseRange.from_dict(v)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "gateway": _opt_str(self.gateway),
            "lease_range": None if self.lease_range is None else self.lease_range.to_dict(),
            "subnet": str(self.subnet),
        }


@dataclass
class Route:
    """A static route of a network."""

    gateway: IpAddress
    destination: IpNet
    metric: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Route":
        data = _object(data, "Route")
        return cls(
            gateway=_ip(_required(data, "gateway"), "gateway"),
            destination=_ipnet(_required(data, "destination"), "destination"),
            metric=_optional(data, "metric", _u32),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "gateway": str(self.gateway),
            "destination": str(self.destination),
            "metric": self.metric,
        }


@dataclass
class Network:
    """A network definition as handed over by the container engine."""

    dns_enabled: bool
    driver: str
    id: str
    internal: bool
    ipv6_enabled: bool
    name: str
    network_interface: Optional[str] = None
    options: Optional[dict[str, str]] = None
    ipam_options: Optional[dict[str, str]] = None
    subnets: Optional[list[Subnet]] = None
    routes: Optional[list[Route]] = None
    network_dns_servers: Optional[list[IpAddress]] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Network":
        data = _object(data, "Network")
        return cls(
            dns_enabled=_bool(_required(data, "dns_enabled"), "dns_enabled"),
            driver=_str(_required(data, "driver"), "driver"),
            id=_str(_required(data, "id"), "id"),
            internal=_bool(_required(data, "internal"), "internal"),
            ipv6_enabled=_bool(_required(data, "ipv6_enabled"), "ipv6_enabled"),
            name=_str(_required(data, "name"), "name"),
            network_interface=_optional(data, "network_interface", _str),
            options=_optional(data, "options", _map(_str)),
            ipam_options=_optional(data, "ipam_options", _map(_str)),
            subnets=_optional(data, "subnets", _list(lambda v, _n: Subnet.from_dict(v))),
            routes=_optional(data, "routes", _list(lambda v, _n: Route.from_dict(v))),
            network_dns_servers=_optional(data, "network_dns_servers", _list(_ip)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "dns_enabled": self.dns_enabled,
            "driver": self.driver,
            "id": self.id,
            "internal": self.internal,
            "ipv6_enabled": self.ipv6_enabled,
            "name": self.name,
            "network_interface": self.network_interface,
            "options": None if self.options is None else dict(self.options),
            "ipam_options": None if self.ipam_options is None else dict(self.ipam_options),
            "subnets": None if self.subnets is None else [s.to_dict() for s in self.subnets],
            "routes": None if self.routes is None else [r.to_dict() for r in self.routes],
            "network_dns_servers": _opt_strs(self.network_dns_servers),
        }


@dataclass
class PerNetworkOptions:
    """Options for one container on one network."""

    interface_name: str
    aliases: Optional[list[str]] = None
    static_ips: Optional[list[IpAddress]] = None
    static_mac: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "PerNetworkOptions":
        data = _object(data, "PerNetworkOptions")
        return cls(
            interface_name=_str(_required(data, "interface_name"), "interface_name"),
            aliases=_optional(data, "aliases", _list(_str)),
            static_ips=_optional(data, "static_ips", _list(_ip)),
            static_mac=_optional(data, "static_mac", _str),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "aliases": None if self.aliases is None else list(self.aliases),
            "interface_name": self.interface_name,
            "static_ips": _opt_strs(self.static_ips),
            "static_mac": self.static_mac,
        }


@dataclass
class PortMapping:
    """One or more host ports forwarded into the container."""

    container_port: int
    host_ip: str
    host_port: int
    protocol: str
    range: int

    @classmethod
    def from_dict(cls, data: Any) -> "PortMapping":
        data = _object(data, "PortMapping")
        return cls(
            container_port=_u16(_required(data, "container_port"), "container_port"),
            host_ip=_str(_required(data, "host_ip"), "host_ip"),
            host_port=_u16(_required(data, "host_port"), "host_port"),
            protocol=_str(_required(data, "protocol"), "protocol"),
            range=_u16(_required(data, "range"), "range"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "container_port": self.container_port,
            "host_ip": self.host_ip,
            "host_port": self.host_port,
            "protocol": self.protocol,
            "range": self.range,
        }


@dataclass
class NetAddress:
    """An address assigned to an interface, with its gateway."""

    ipnet: IpNet
    gateway: Optional[IpAddress] = None

    @classmethod
    def from_dict(cls, data: Any) -> "NetAddress":
        data = _object(data, "NetAddress")
        return cls(
            ipnet=_ipnet(_required(data, "ipnet"), "ipnet"),
            gateway=_optional(data, "gateway", _ip),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"gateway": _opt_str(self.gateway), "ipnet": str(self.ipnet)}


@dataclass
class NetInterface:
    """An interface created in the container."""

    mac_address: str
    subnets: Optional[list[NetAddress]] = None

    @classmethod
    def from_dict(cls, data: Any) -> "NetInterface":
        data = _object(data, "NetInterface")
        return cls(
            mac_address=_str(_required(data, "mac_address"), "mac_address"),
            subnets=_optional(data, "subnets", _list(lambda v, _n: NetAddress.from_dict(v))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "mac_address": self.mac_address,
            "subnets": None if self.subnets is None else [s.to_dict() for s in self.subnets],
        }


@dataclass
class StatusBlock:
    """Network information about a container attached to one network."""

    dns_search_domains: Optional[list[str]] = None
    dns_server_ips: Optional[list[IpAddress]] = None
    interfaces: Optional[dict[str, NetInterface]] = None

    @classmethod
    def from_dict(cls, data: Any) -> "StatusBlock":
        data = _object(data, "StatusBlock")
        return cls(
            dns_search_domains=_optional(data, "dns_search_domains", _list(_str)),
            dns_server_ips=_optional(data, "dns_server_ips", _list(_ip)),
            interfaces=_optional(
                data, "interfaces", _map(lambda v, _n: NetInterface.from_dict(v))
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "dns_search_domains": (
                None if self.dns_search_domains is None else list(self.dns_search_domains)
            ),
            "dns_server_ips": _opt_strs(self.dns_server_ips),
            "interfaces": (
                None
                if self.interfaces is None
                else {name: iface.to_dict() for name, iface in self.interfaces.items()}
            ),
        }


@dataclass
class NetworkOptions:
    """Everything needed to set up or tear down a container's networks."""

    container_id: str
    container_name: str
    networks: dict[str, PerNetworkOptions]
    network_info: dict[str, Network]
    port_mappings: Optional[list[PortMapping]] = None
    dns_servers: Optional[list[IpAddress]] = None

    @classmethod
    def from_dict(cls, data: Any) -> "NetworkOptions":
        data = _object(data, "NetworkOptions")
        return cls(
            container_id=_str(_required(data, "container_id"), "container_id"),
            container_name=_str(_required(data, "container_name"), "container_name"),
            networks=_map(lambda v, _n: PerNetworkOptions.from_dict(v))(
                _required(data, "networks"), "networks"
            ),
            network_info=_map(lambda v, _n: Network.from_dict(v))(
                _required(data, "network_info"), "network_info"
            ),
            port_mappings=_optional(
                data, "port_mappings", _list(lambda v, _n: PortMapping.from_dict(v))
            ),
            dns_servers=_optional(data, "dns_servers", _list(_ip)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "container_id": self.container_id,
            "container_name": self.container_name,
            "networks": {name: opts.to_dict() for name, opts in self.networks.items()},
            "network_info": {name: net.to_dict() for name, net in self.network_info.items()},
            "port_mappings": (
                None
                if self.port_mappings is None
                else [p.to_dict() for p in self.port_mappings]
            ),
            "dns_servers": _opt_strs(self.dns_servers),
        }

    @classmethod
    def load(cls, path: Union[str, os.PathLike, None] = None) -> "NetworkOptions":
        """Read options from the JSON file at ``path``, or from stdin when it is None."""
        try:
            if path is None:
                data = json.load(sys.stdin)
            else:
                with open(path, encoding="utf-8") as handle:
                    data = json.load(handle)
            return cls.from_dict(data)
        except (OSError, ValueError) as exc:
            raise NetavarkError(str(exc)).wrap("failed to load network options") from exc


@dataclass
class NetworkPluginExec:
    """Input handed to a network plugin for setup and teardown."""

    container_id: str
    container_name: str
    network: Network
    network_options: PerNetworkOptions
    port_mappings: Optional[list[PortMapping]] = None

    @classmethod
    def from_dict(cls, data: Any) -> "NetworkPluginExec":
        data = _object(data, "NetworkPluginExec")
        return cls(
            container_id=_str(_required(data, "container_id"), "container_id"),
            container_name=_str(_required(data, "container_name"), "container_name"),
            network=Network.from_dict(_required(data, "network")),
            network_options=PerNetworkOptions.from_dict(_required(data, "network_options")),
            port_mappings=_optional(
                data, "port_mappings", _list(lambda v, _n: PortMapping.from_dict(v))
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "container_id": self.container_id,
            "container_name": self.container_name,
            "port_mappings": (
                None
                if self.port_mappings is None
                else [p.to_dict() for p in self.port_mappings]
            ),
            "network": self.network.to_dict(),
            "network_options": self.network_options.to_dict(),
        }