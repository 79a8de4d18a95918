"""Internal data handed between the network drivers and the firewall code."""

from __future__ import annotations

import enum
import ipaddress
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from podnet.netlink import Route as NetlinkRoute
from podnet.types import NetAddress, PortMapping

IpAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IpNet = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]


class IsolateOption(enum.Enum):
    """How strictly a network is isolated from other networks."""

    STRICT = "Strict"
    NORMAL = "Normal"
    NEVER = "Never"


def _object(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError(f"invalid type for {what}: expected an object")
    return value


def _required(data: Mapping[str, Any], name: str) -> Any:
    try:
        return data[name]
    except KeyError:
        raise ValueError(f"missing field `{name}`") from None


def _str(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"invalid type for `{name}`: expected a string")
    return value


def _u16(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"invalid type for `{name}`: expected an integer")
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"invalid value for `{name}`: {value} is out of range for u16")
    return value


def _ip(value: Any, name: str) -> IpAddress:
    text = _str(value, name)
    try:
        if "%" in text:
            raise ValueError
        return ipaddress.ip_address(text)
    except ValueError:
        raise ValueError(f"invalid IP address syntax for `{name}`: {text}") from None


def _ipnet(value: Any, name: str) -> IpNet:
    text = _str(value, name)
    addr, sep, prefix = text.partition("/")
    try:
        if not sep or not prefix.isdigit() or "%" in addr:
            raise ValueError
        return ipaddress.ip_interface(f"{ipaddress.ip_address(addr)}/{int(prefix)}")
    except ValueError:
        raise ValueError(f"invalid IP network syntax for `{name}`: {text}") from None


def _optional_ip(data: Mapping[str, Any], name: str) -> Optional[IpAddress]:
    value = data.get(name)
    return None if value is None else _ip(value, name)


def _optional_ipnet(data: Mapping[str, Any], name: str) -> Optional[IpNet]:
    value = data.get(name)
    return None if value is None else _ipnet(value, name)


def _list(value: Any, name: str) -> list[Any]:
    if not isinstance(value, list):
        raise ValueError(f"invalid type for `{name}`: expected a list")
    return value


def _isolation(value: Any) -> IsolateOption:
    text = _str(value, "isolation")
    try:
        return IsolateOption(text)
    except ValueError:
        raise ValueError(f"unknown variant `{text}` for `isolation`") from None


def _opt_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


@dataclass
class SetupNetwork:
    """Firewall configuration of one network."""

    bridge_name: str
    network_hash_name: str
    isolation: IsolateOption
    dns_port: int
    subnets: Optional[list[IpNet]] = None
    network_id: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "SetupNetwork":
        data = _object(data, "SetupNetwork")
        subnets = data.get("subnets")
        return cls(
            bridge_name=_str(_required(data, "bridge_name"), "bridge_name"),
            network_hash_name=_str(_required(data, "network_hash_name"), "network_hash_name"),
            isolation=_isolation(_required(data, "isolation")),
            dns_port=_u16(_required(data, "dns_port"), "dns_port"),
            subnets=(
                None
                if subnets is None
                else [_ipnet(item, "subnets") for item in _list(subnets, "subnets")]
            ),
            network_id=_str(data.get("network_id", ""), "network_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "subnets": None if self.subnets is None else [str(s) for s in self.subnets],
            "bridge_name": self.bridge_name,
            "network_id": self.network_id,
            "network_hash_name": self.network_hash_name,
            "isolation": self.isolation.value,
            "dns_port": self.dns_port,
        }


@dataclass
class TearDownNetwork:
    """Firewall configuration of a network that is being torn down."""

    config: SetupNetwork
    complete_teardown: bool


@dataclass
class PortForwardConfig:
    """Port forwarding configuration of one container on one network."""

    container_id: str
    network_name: str
    network_hash_name: str
    dns_port: int
    network_id: str = ""
    port_mappings: Optional[list[PortMapping]] = None
    container_ip_v4: Optional[IpAddress] = None
    subnet_v4: Optional[IpNet] = None
    container_ip_v6: Optional[IpAddress] = None
    subnet_v6: Optional[IpNet] = None
    dns_server_ips: list[IpAddress] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "PortForwardConfig":
        data = _object(data, "PortForwardConfig")
        mappings = data.get("port_mappings")
        return cls(
            container_id=_str(_required(data, "container_id"), "container_id"),
            network_name=_str(_required(data, "network_name"), "network_name"),
            network_hash_name=_str(_required(data, "network_hash_name"), "network_hash_name"),
            dns_port=_u16(_required(data, "dns_port"), "dns_port"),
            network_id=_str(data.get("network_id", ""), "network_id"),
            port_mappings=(
                None
                if mappings is None
                else [PortMapping.from_dict(m) for m in _list(mappings, "port_mappings")]
            ),
            container_ip_v4=_optional_ip(data, "container_ip_v4"),
            subnet_v4=_optional_ipnet(data, "subnet_v4"),
            container_ip_v6=_optional_ip(data, "container_ip_v6"),
            subnet_v6=_optional_ipnet(data, "subnet_v6"),
            dns_server_ips=[
                _ip(item, "dns_server_ips")
                for item in _list(_required(data, "dns_server_ips"), "dns_server_ips")
            ],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "container_id": self.container_id,
            "network_id": self.network_id,
            "port_mappings": (
                None
                if self.port_mappings is None
                else [m.to_dict() for m in self.port_mappings]
            ),
            "network_name": self.network_name,
            "network_hash_name": self.network_hash_name,
            "container_ip_v4": _opt_str(self.container_ip_v4),
            "subnet_v4": _opt_str(self.subnet_v4),
            "container_ip_v6": _opt_str(self.container_ip_v6),
            "subnet_v6": _opt_str(self.subnet_v6),
            "dns_port": self.dns_port,
            "dns_server_ips": [str(ip) for ip in self.dns_server_ips],
        }


@dataclass
class TeardownPortForward:
    """Port forwarding configuration that is being removed."""

    config: PortForwardConfig
    complete_teardown: bool


@dataclass
class IPAMAddresses:
    """Addresses, gateways and routes handed out for one network."""

    container_addresses: list[IpNet] = field(default_factory=list)
    dhcp_enabled: bool = False
    gateway_addresses: list[IpNet] = field(default_factory=list)
    routes: list[NetlinkRoute] = field(default_factory=list)
    ipv6_enabled: bool = False
    net_addresses: list[NetAddress] = field(default_factory=list)
    nameservers: list[IpAddress] = field(default_factory=list)