"""Helpers shared by the network drivers: options, IPAM, sysctls and namespaces."""

from __future__ import annotations

import contextlib
import errno
import hashlib
import ipaddress
import logging
import os
import re
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, BinaryIO, Optional, TypeVar

from podnet import constants
from podnet.errors import NetavarkError
from podnet.internal_types import IPAMAddresses
from podnet.netlink import IpVlanMode, MacVlanMode, Socket
from podnet.netlink import Route as NetlinkRoute
from podnet.types import NetAddress, Network, PerNetworkOptions
from podnet.types import Route as ConfigRoute

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SYSCTL_ROOT = "/proc/sys"
_CLONE_NEWNET = 0x40000000
_HOST_NETNS_PATH = "/proc/self/ns/net"


class _SysctlNotFound(NetavarkError):
    """Raised when a sysctl does not exist."""


def _io_error(exc: OSError) -> NetavarkError:
    if exc.errno is None or exc.strerror is None:
        return NetavarkError(str(exc))
    return NetavarkError(f"{exc.strerror} (os error {exc.errno})")


def _parse_int(text: str, bits: int, signed: bool, radix: int = 10) -> int:
    """Parse an integer with the strictness of a fixed-width integer parser."""
    if not text:
        raise ValueError("cannot parse integer from empty string")
    negative = False
    digits = text
    if text[0] in "+-":
        if len(text) == 1:
            raise ValueError("invalid digit found in string")
        if text[0] == "+":
            digits = text[1:]
        elif signed:
            negative = True
            digits = text[1:]
    allowed = "0123456789abcdefghijklmnopqrstuvwxyz"[:radix]
    if any(ch.lower() not in allowed for ch in digits):
        raise ValueError("invalid digit found in string")
    value = int(digits, radix)
    if negative:
        value = -value
    low, high = (-(1 << (bits - 1)), (1 << (bits - 1)) - 1) if signed else (0, (1 << bits) - 1)
    if value > high:
        raise ValueError("number too large to fit in target type")
    if value < low:
        raise ValueError("number too small to fit in target type")
    return value


def _parse_bool(text: str) -> bool:
    if text == "true":
        return True
    if text == "false":
        return False
    raise ValueError("provided string was not `true` or `false`")


_PARSERS: dict[Any, Callable[[str], Any]] = {
    bool: _parse_bool,
    int: lambda text: _parse_int(text, 32, signed=False),
    str: lambda text: text,
}


def _fd(value: Any) -> int:
    return value if isinstance(value, int) else value.fileno()


@dataclass
class NamespaceOptions:
    """An open namespace file together with a netlink socket inside it."""

    file: BinaryIO
    netlink: Socket


def get_netavark_dns_port() -> int:
    """Return the DNS port from NETAVARK_DNS_PORT, or 53 when unset."""
    port_string = os.environ.get("NETAVARK_DNS_PORT")
    if port_string is None:
        return 53
    try:
        return _parse_int(port_string, 16, signed=False)
    except ValueError as exc:
        raise NetavarkError(f"Invalid NETAVARK_DNS_PORT {port_string}: {exc}") from exc


def parse_option(
    opts: Optional[Mapping[str, str]],
    name: str,
    kind: Any = str,
) -> Any:
    """Parse option ``name`` from ``opts``; None when it is not set.

    ``kind`` is ``str``, ``bool`` (``true``/``false``), ``int`` (an unsigned
    32-bit integer) or any callable that turns the text into a value and
    raises ValueError on bad input.
    """
    if not opts or name not in opts:
        return None
    parse = _PARSERS.get(kind, kind)
    try:
        return parse(opts[name])
    except ValueError as exc:
        raise NetavarkError(f'unable to parse "{name}": {exc}') from exc


def _host_local_addresses(
    per_network_opts: PerNetworkOptions, network: Network
) -> IPAMAddresses:
    static_ips = per_network_opts.static_ips
    if static_ips is None:
        raise NetavarkError("no static ips provided")

    ipam = IPAMAddresses()
    for idx, subnet in enumerate(network.subnets or []):
        prefix = subnet.subnet.network.prefixlen
        gateway = subnet.gateway
        if gateway is not None:
            if prefix > gateway.max_prefixlen:
                raise NetavarkError(
                    f"failed to parse address {gateway}/{prefix}: invalid IP prefix length"
                )
            ipam.gateway_addresses.append(ipaddress.ip_interface(f"{gateway}/{prefix}"))
            ipam.nameservers.append(gateway)

        # A dual-stack network may not be flagged as ipv6, so look at the subnet itself.
        if subnet.subnet.version == 6:
            ipam.ipv6_enabled = True

        if idx >= len(static_ips):
            raise NetavarkError(f"no static ip given for subnet {subnet.subnet}")
        static_ip = static_ips[idx]
        if prefix > static_ip.max_prefixlen:
            raise NetavarkError("invalid IP address syntax")
        container_address = ipaddress.ip_interface(f"{static_ip}/{prefix}")
        ipam.container_addresses.append(container_address)
        ipam.net_addresses.append(NetAddress(ipnet=container_address, gateway=gateway))

    ipam.routes = create_route_list(network.routes)
    return ipam


def get_ipam_addresses(
    per_network_opts: PerNetworkOptions, network: Network
) -> IPAMAddresses:
    """Work out the addresses a container gets on ``network``."""
    driver = (network.ipam_options or {}).get("driver")
    if driver is None or driver == constants.IPAM_HOSTLOCAL:
        return _host_local_addresses(per_network_opts, network)
    if driver == constants.IPAM_NONE:
        return IPAMAddresses()
    if driver == constants.IPAM_DHCP:
        return IPAMAddresses(dhcp_enabled=True)
    raise NetavarkError(f"unsupported ipam driver {driver}")


def encode_address_to_hex(data: bytes) -> str:
    """Format a hardware address as colon separated lower case hex."""
    return ":".join(f"{byte:02x}" for byte in data)


def decode_address_from_hex(text: str) -> bytes:
    """Parse a six byte MAC address separated by ``:`` or ``-``."""
    try:
        data = bytes(_parse_int(part, 8, signed=False, radix=16) for part in re.split("[:-]", text))
    except ValueError as exc:
        raise NetavarkError(f"unable to parse mac address {text}: {exc}") from exc
    if len(data) != 6:
        raise NetavarkError(f"invalid mac length for address: {text}")
    return data


_MACVLAN_MODES = {
    "": MacVlanMode.BRIDGE,
    "bridge": MacVlanMode.BRIDGE,
    "private": MacVlanMode.PRIVATE,
    "vepa": MacVlanMode.VEPA,
    "passthru": MacVlanMode.PASSTHROUGH,
    "source": MacVlanMode.SOURCE,
}

_IPVLAN_MODES = {
    "": IpVlanMode.L2,
    "l2": IpVlanMode.L2,
    "l3": IpVlanMode.L3,
    "l3s": IpVlanMode.L3S,
}


def get_macvlan_mode_from_string(mode: Optional[str]) -> MacVlanMode:
    """Return the macvlan mode named ``mode``; bridge when unset."""
    try:
        return _MACVLAN_MODES[mode or ""]
    except KeyError:
        raise NetavarkError(f'invalid macvlan mode "{mode}"') from None


def get_ipvlan_mode_from_string(mode: Optional[str]) -> IpVlanMode:
    """Return the ipvlan mode named ``mode``; l2 when unset."""
    try:
        return _IPVLAN_MODES[mode or ""]
    except KeyError:
        raise NetavarkError(f'invalid ipvlan mode "{mode}"') from None


def create_network_hash(network_name: str, length: int) -> str:
    """Return the first ``length`` upper case hex digits of the name's SHA-512."""
    digest = hashlib.sha512(network_name.encode()).hexdigest().upper()
    if length > len(digest):
        raise ValueError(f"hash length {length} exceeds {len(digest)}")
    return digest[:length]


def _sysctl_path(name: str) -> str:
    prefix = "/proc/sys/"
    relative = name[len(prefix):] if name.startswith(prefix) else name.replace(".", "/")
    return os.path.join(_SYSCTL_ROOT, relative)


def apply_sysctl_value(name: str, value: str) -> str:
    """Set sysctl ``name`` to ``value`` unless it already has it; return the new value.

    ``name`` is a dotted name, a slash separated name or a full /proc/sys path.
    """
    logger.debug("Setting sysctl value for %s to %s", name, value)
    path = _sysctl_path(name)
    if not os.path.exists(path):
        raise _SysctlNotFound(f"no such sysctl: {name}")
    try:
        with open(path, encoding="utf-8") as handle:
            current = handle.read().rstrip("\n")
        if current == value:
            return current
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(value)
        with open(path, encoding="utf-8") as handle:
            return handle.read().rstrip("\n")
    except OSError as exc:
        raise _io_error(exc) from exc


def join_netns(fd: Any) -> None:
    """Move the calling thread into the network namespace open on ``fd``."""
    setns = getattr(os, "setns", None)
    if setns is None:
        raise NetavarkError("not supported on this platform").wrap("setns")
    try:
        setns(_fd(fd), _CLONE_NEWNET)
    except OSError as exc:
        raise _io_error(exc).wrap("setns") from exc


@contextlib.contextmanager
def in_netns(host_fd: Any, netns_fd: Any) -> Iterator[None]:
    """Run the body inside ``netns_fd`` and return to ``host_fd`` afterwards."""
    join_netns(netns_fd)
    try:
        yield
    finally:
        join_netns(host_fd)


def _open_ns(path: str, context: str) -> BinaryIO:
    try:
        return open(path, "rb")
    except OSError as exc:
        raise _io_error(exc).wrap(f"open {path}").wrap(context) from exc


def _new_socket(context: str) -> Socket:
    try:
        return Socket()
    except NetavarkError as exc:
        raise exc.wrap(context) from exc


def open_netlink_sockets(netns_path: str) -> tuple[NamespaceOptions, NamespaceOptions]:
    """Open netlink sockets in the host and in the namespace at ``netns_path``.

    Returns the host options first and the container options second.
    """
    with contextlib.ExitStack() as stack:
        netns = stack.enter_context(_open_ns(netns_path, "open container netns"))
        hostns = stack.enter_context(_open_ns(_HOST_NETNS_PATH, "open host netns"))
        host_socket = stack.enter_context(_new_socket("host netlink socket"))
        with in_netns(hostns, netns):
            netns_socket = stack.enter_context(_new_socket("netns netlink socket"))
        stack.pop_all()
    return (
        NamespaceOptions(file=hostns, netlink=host_socket),
        NamespaceOptions(file=netns, netlink=netns_socket),
    )


def add_default_routes(sock: Any, gateways: Sequence[Any], metric: Optional[int]) -> None:
    """Add one default route per address family through the first gateway of each."""
    seen: set[int] = set()
    for gateway in gateways:
        gateway = ipaddress.ip_interface(gateway)
        if gateway.version in seen:
            continue
        seen.add(gateway.version)
        dest = ipaddress.ip_interface("0.0.0.0/0" if gateway.version == 4 else "::/0")
        route = NetlinkRoute(dest=dest, gw=gateway.ip, metric=metric)
        try:
            sock.add_route(route)
        except NetavarkError as exc:
            raise exc.wrap(f"add default route {route}") from exc


def create_route_list(routes: Optional[Sequence[ConfigRoute]]) -> list[NetlinkRoute]:
    """Turn configured static routes into netlink routes."""
    result = []
    for route in routes or []:
        gw, dst = route.gateway, route.destination
        if gw.version == 4 and dst.version == 6:
            raise NetavarkError(
                f"Route with ipv6 destination and ipv4 gateway ({dst} via {gw})"
            )
        if gw.version == 6 and dst.version == 4:
            raise NetavarkError(
                f"Route with ipv4 destination and ipv6 gateway ({dst} via {gw})"
            )
        result.append(NetlinkRoute(dest=dst, gw=gw, metric=route.metric))
    return result


def disable_ipv6_autoconf(if_name: str) -> None:
    """Turn off ipv6 autoconfiguration on ``if_name``.

    A missing sysctl (no ipv6) or a read-only /proc is ignored.
    """
    try:
        apply_sysctl_value(f"/proc/sys/net/ipv6/conf/{if_name}/autoconf", "0")
    except _SysctlNotFound:
        pass
    except NetavarkError as exc:
        cause = exc.__cause__
        if isinstance(cause, OSError) and cause.errno == errno.EROFS:
            return
        raise exc.wrap("failed to set autoconf sysctl") from exc