"""A small rtnetlink client for managing links, addresses and routes."""

from __future__ import annotations

import enum
import errno
import ipaddress
import logging
import socket
import struct
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from podnet import constants
from podnet.errors import NetavarkError, NetlinkError

logger = logging.getLogger(__name__)

IpAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IpNet = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]

NETLINK_ROUTE = 0
_AF_NETLINK = getattr(socket, "AF_NETLINK", 16)
# Linux address family numbers, as the kernel expects them on the wire.
AF_UNSPEC = 0
AF_INET = 2
AF_INET6 = 10

NLMSG_NOOP = 1
NLMSG_ERROR = 2
NLMSG_DONE = 3
NLMSG_OVERRUN = 4

RTM_NEWLINK = 16
RTM_DELLINK = 17
RTM_GETLINK = 18
RTM_SETLINK = 19
RTM_NEWADDR = 20
RTM_DELADDR = 21
RTM_GETADDR = 22
RTM_NEWROUTE = 24
RTM_DELROUTE = 25
RTM_GETROUTE = 26

NLM_F_REQUEST = 0x1
NLM_F_MULTI = 0x2
NLM_F_ACK = 0x4
NLM_F_EXCL = 0x200
NLM_F_CREATE = 0x400
NLM_F_DUMP = 0x300

IFF_UP = 0x1

IFLA_ADDRESS = 1
IFLA_IFNAME = 3
IFLA_MTU = 4
IFLA_LINK = 5
IFLA_MASTER = 10
IFLA_LINKINFO = 18
IFLA_NET_NS_FD = 28

IFLA_INFO_KIND = 1
IFLA_INFO_DATA = 2
VETH_INFO_PEER = 1
IFLA_MACVLAN_MODE = 1
IFLA_MACVLAN_BC_CUTOFF = 9
IFLA_IPVLAN_MODE = 1

IFA_ADDRESS = 1
IFA_LOCAL = 2
IFA_LABEL = 3
IFA_BROADCAST = 4

RTA_DST = 1
RTA_OIF = 4
RTA_GATEWAY = 5
RTA_PRIORITY = 6
RTA_TABLE = 15

RT_TABLE_MAIN = 254
RTPROT_UNSPEC = 0
RTPROT_STATIC = 4
RT_SCOPE_UNIVERSE = 0
RTN_UNICAST = 1

_NLA_TYPE_MASK = 0x3FFF
# Large enough that the kernel never truncates a dump chunk.
_RECV_BUFFER_SIZE = 65536

_NLMSGHDR = struct.Struct("=IHHII")
_IFINFOMSG = struct.Struct("=BxHiII")
_IFADDRMSG = struct.Struct("=BBBBI")
_RTMSG = struct.Struct("=BBBBBBBBI")
_RTATTR = struct.Struct("=HH")
_U16 = struct.Struct("=H")
_U32 = struct.Struct("=I")
_I32 = struct.Struct("=i")


class InfoKind(str, enum.Enum):
    """Kinds of links that can be created."""

    BRIDGE = "bridge"
    VETH = "veth"
    DUMMY = "dummy"
    MACVLAN = "macvlan"
    IPVLAN = "ipvlan"
    VRF = "vrf"


class MacVlanMode(enum.IntEnum):
    """Modes of a macvlan link."""

    PRIVATE = 1
    VEPA = 2
    BRIDGE = 4
    PASSTHROUGH = 8
    SOURCE = 16


class IpVlanMode(enum.IntEnum):
    """Modes of an ipvlan link."""

    L2 = 0
    L3 = 1
    L3S = 2


def _deserialize_error(reason: str) -> NetavarkError:
    return NetavarkError(f"failed to deserialize netlink message: {reason}")


def _align(length: int) -> int:
    return (length + 3) & ~3


def _attr(kind: int, payload: bytes) -> bytes:
    length = _RTATTR.size + len(payload)
    return _RTATTR.pack(length, kind) + payload + b"\0" * (_align(length) - length)


def _iter_attrs(data: bytes) -> Iterator[tuple[int, bytes]]:
    offset = 0
    while offset + _RTATTR.size <= len(data):
        length, kind = _RTATTR.unpack_from(data, offset)
        if length < _RTATTR.size or offset + length > len(data):
            raise _deserialize_error(f"invalid attribute length {length}")
        yield kind & _NLA_TYPE_MASK, bytes(data[offset + _RTATTR.size : offset + length])
        offset += _align(length)


def _cstr(text: str) -> bytes:
    return text.encode() + b"\0"


def _read_cstr(payload: bytes) -> str:
    return payload.split(b"\0", 1)[0].decode(errors="replace")


def _read(fmt: struct.Struct, payload: bytes) -> int:
    if len(payload) < fmt.size:
        raise _deserialize_error("attribute payload too short")
    return fmt.unpack_from(payload)[0]


def _enum_or_int(enum_type: type[enum.IntEnum], value: int) -> int:
    try:
        return enum_type(value)
    except ValueError:
        return value


def _fd(value: Any) -> int:
    return value if isinstance(value, int) else value.fileno()


def _kind_name(kind: Union[InfoKind, str]) -> str:
    return kind.value if isinstance(kind, InfoKind) else kind


def _encode_info_data(kind: str, data: Any) -> bytes:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if kind == InfoKind.VETH.value and isinstance(data, LinkMessage):
        return _attr(VETH_INFO_PEER, data.encode())
    if kind == InfoKind.MACVLAN.value and isinstance(data, Mapping):
        out = b""
        if data.get("mode") is not None:
            out += _attr(IFLA_MACVLAN_MODE, _U32.pack(int(data["mode"])))
        if data.get("bc_cutoff") is not None:
            out += _attr(IFLA_MACVLAN_BC_CUTOFF, _I32.pack(int(data["bc_cutoff"])))
        return out
    if kind == InfoKind.IPVLAN.value and isinstance(data, Mapping):
        if data.get("mode") is None:
            return b""
        return _attr(IFLA_IPVLAN_MODE, _U16.pack(int(data["mode"])))
    raise NetavarkError(f"unsupported info data for link kind {kind}")


def _decode_info_data(kind: str, payload: bytes) -> Any:
    if kind == InfoKind.VETH.value:
        for attr_type, value in _iter_attrs(payload):
            if attr_type == VETH_INFO_PEER:
                return LinkMessage.decode(value)
        return None
    if kind == InfoKind.MACVLAN.value:
        data: dict[str, Any] = {}
        for attr_type, value in _iter_attrs(payload):
            if attr_type == IFLA_MACVLAN_MODE:
                data["mode"] = _enum_or_int(MacVlanMode, _read(_U32, value))
            elif attr_type == IFLA_MACVLAN_BC_CUTOFF:
                data["bc_cutoff"] = _read(_I32, value)
        return data
    if kind == InfoKind.IPVLAN.value:
        data = {}
        for attr_type, value in _iter_attrs(payload):
            if attr_type == IFLA_IPVLAN_MODE:
                data["mode"] = _enum_or_int(IpVlanMode, _read(_U16, value))
        return data
    return payload


@dataclass
class LinkMessage:
    """A link (interface) message: the ifinfomsg header and its attributes."""

    index: int = 0
    family: int = AF_UNSPEC
    link_type: int = 0
    flags: int = 0
    change_mask: int = 0
    name: Optional[str] = None
    mtu: Optional[int] = None
    address: Optional[bytes] = None
    controller: Optional[int] = None
    link: Optional[int] = None
    netns_fd: Optional[int] = None
    kind: Optional[Union[InfoKind, str]] = None
    info_data: Any = None
    extra: dict[int, bytes] = field(default_factory=dict)

    def encode(self) -> bytes:
        """Serialise the message payload (without the netlink header)."""
        parts = [
            _IFINFOMSG.pack(
                self.family, self.link_type, self.index, self.flags, self.change_mask
            )
        ]
        if self.kind is not None:
            kind = _kind_name(self.kind)
            nested = _attr(IFLA_INFO_KIND, _cstr(kind))
            if self.info_data is not None:
                nested += _attr(IFLA_INFO_DATA, _encode_info_data(kind, self.info_data))
            parts.append(_attr(IFLA_LINKINFO, nested))
        if self.name is not None:
            parts.append(_attr(IFLA_IFNAME, _cstr(self.name)))
        if self.mtu is not None:
            parts.append(_attr(IFLA_MTU, _U32.pack(self.mtu)))
        if self.address is not None:
            parts.append(_attr(IFLA_ADDRESS, bytes(self.address)))
        if self.controller is not None:
            parts.append(_attr(IFLA_MASTER, _U32.pack(self.controller)))
        if self.link is not None:
            parts.append(_attr(IFLA_LINK, _U32.pack(self.link)))
        if self.netns_fd is not None:
            parts.append(_attr(IFLA_NET_NS_FD, _I32.pack(self.netns_fd)))
        parts.extend(_attr(kind, payload) for kind, payload in self.extra.items())
        return b"".join(parts)

    @classmethod
    def decode(cls, data: bytes) -> "LinkMessage":
        """Parse a message payload produced by the kernel or by ``encode``."""
        if len(data) < _IFINFOMSG.size:
            raise _deserialize_error("link message too short")
        family, link_type, index, flags, change = _IFINFOMSG.unpack_from(data)
        msg = cls(
            index=index, family=family, link_type=link_type, flags=flags, change_mask=change
        )
        for attr_type, value in _iter_attrs(data[_IFINFOMSG.size :]):
            if attr_type == IFLA_IFNAME:
                msg.name = _read_cstr(value)
            elif attr_type == IFLA_MTU:
                msg.mtu = _read(_U32, value)
            elif attr_type == IFLA_ADDRESS:
                msg.address = value
            elif attr_type == IFLA_MASTER:
                msg.controller = _read(_U32, value)
            elif attr_type == IFLA_LINK:
                msg.link = _read(_U32, value)
            elif attr_type == IFLA_NET_NS_FD:
                msg.netns_fd = _read(_I32, value)
            elif attr_type == IFLA_LINKINFO:
                info = dict(_iter_attrs(value))
                if IFLA_INFO_KIND in info:
                    kind = _read_cstr(info[IFLA_INFO_KIND])
                    try:
                        msg.kind = InfoKind(kind)
                    except ValueError:
                        msg.kind = kind
                    if IFLA_INFO_DATA in info:
                        msg.info_data = _decode_info_data(kind, info[IFLA_INFO_DATA])
            else:
                msg.extra[attr_type] = value
        return msg


@dataclass
class CreateLinkOptions:
    """What a new link should look like; zero or empty values are left out."""

    name: str
    kind: Union[InfoKind, str]
    info_data: Any = None
    mtu: int = 0
    primary_index: int = 0
    link: int = 0
    mac: bytes = b""
    netns: Any = None


def build_link_message(options: CreateLinkOptions) -> LinkMessage:
    """Build the link message that creates a link described by ``options``."""
    return LinkMessage(
        kind=options.kind,
        info_data=options.info_data,
        name=options.name or None,
        mtu=options.mtu or None,
        address=bytes(options.mac) if options.mac else None,
        controller=options.primary_index or None,
        link=options.link or None,
        netns_fd=None if options.netns is None else _fd(options.netns),
    )


@dataclass
class Route:
    """A route to ``dest`` via the gateway ``gw``."""

    dest: IpNet
    gw: IpAddress
    metric: Optional[int] = None

    def __post_init__(self) -> None:
        self.dest = ipaddress.ip_interface(self.dest)
        self.gw = ipaddress.ip_address(self.gw)
        if self.dest.version != self.gw.version:
            raise ValueError(
                f"route destination {self.dest} and gateway {self.gw} "
                "are of different address families"
            )

    @property
    def final_metric(self) -> int:
        return constants.DEFAULT_METRIC if self.metric is None else self.metric

    def __str__(self) -> str:
        return f"(dest: {self.dest} ,gw: {self.gw}, metric {self.final_metric})"


def encode_route_message(route: Route) -> bytes:
    """Serialise the rtmsg payload that adds or deletes ``route``."""
    family = AF_INET if route.dest.version == 4 else AF_INET6
    header = _RTMSG.pack(
        family,
        route.dest.network.prefixlen,
        0,
        0,
        RT_TABLE_MAIN,
        RTPROT_STATIC,
        RT_SCOPE_UNIVERSE,
        RTN_UNICAST,
        0,
    )
    return (
        header
        + _attr(RTA_DST, route.dest.ip.packed)
        + _attr(RTA_GATEWAY, route.gw.packed)
        + _attr(RTA_PRIORITY, _U32.pack(route.final_metric))
    )


def encode_address_message(link_id: int, addr: Any) -> bytes:
    """Serialise the ifaddrmsg payload assigning ``addr`` to link ``link_id``."""
    addr = ipaddress.ip_interface(addr)
    if addr.version == 4:
        family = AF_INET
        attrs = _attr(IFA_BROADCAST, addr.network.broadcast_address.packed)
    else:
        family = AF_INET6
        attrs = b""
    attrs += _attr(IFA_LOCAL, addr.ip.packed)
    return _IFADDRMSG.pack(family, addr.network.prefixlen, 0, 0, link_id) + attrs


def _decode_address(payload: bytes) -> dict[str, Any]:
    if len(payload) < _IFADDRMSG.size:
        raise _deserialize_error("address message too short")
    family, prefix_len, flags, scope, index = _IFADDRMSG.unpack_from(payload)
    result: dict[str, Any] = {
        "family": family,
        "prefix_len": prefix_len,
        "flags": flags,
        "scope": scope,
        "index": index,
        "address": None,
        "local": None,
        "broadcast": None,
        "label": None,
    }
    names = {IFA_ADDRESS: "address", IFA_LOCAL: "local", IFA_BROADCAST: "broadcast"}
    for attr_type, value in _iter_attrs(payload[_IFADDRMSG.size :]):
        if attr_type in names:
            result[names[attr_type]] = ipaddress.ip_address(value)
        elif attr_type == IFA_LABEL:
            result["label"] = _read_cstr(value)
    return result


def _decode_route(payload: bytes) -> dict[str, Any]:
    if len(payload) < _RTMSG.size:
        raise _deserialize_error("route message too short")
    family, dst_len, _src, _tos, table, protocol, scope, kind, _flags = _RTMSG.unpack_from(
        payload
    )
    result: dict[str, Any] = {
        "family": family,
        "dst_len": dst_len,
        "table": table,
        "protocol": protocol,
        "scope": scope,
        "type": kind,
        "destination": None,
        "gateway": None,
        "oif": None,
        "priority": None,
    }
    for attr_type, value in _iter_attrs(payload[_RTMSG.size :]):
        if attr_type == RTA_DST:
            result["destination"] = ipaddress.ip_address(value)
        elif attr_type == RTA_GATEWAY:
            result["gateway"] = ipaddress.ip_address(value)
        elif attr_type == RTA_OIF:
            result["oif"] = _read(_U32, value)
        elif attr_type == RTA_PRIORITY:
            result["priority"] = _read(_U32, value)
        elif attr_type == RTA_TABLE:
            result["table"] = _read(_U32, value)
    return result


def _decode_inner(msg_type: int, payload: bytes) -> tuple[int, Any]:
    if msg_type == RTM_NEWLINK:
        return msg_type, LinkMessage.decode(payload)
    if msg_type == RTM_NEWADDR:
        return msg_type, _decode_address(payload)
    if msg_type == RTM_NEWROUTE:
        return msg_type, _decode_route(payload)
    return msg_type, payload


def _expect(result: list, count: int, function: str) -> None:
    if len(result) != count:
        raise NetavarkError(
            f"{function}: unexpected netlink result "
            f"(got {len(result)} result(s), want {count})"
        )


def _only(result: list[tuple[int, Any]], msg_type: int) -> list[Any]:
    items = []
    for got_type, item in result:
        if got_type != msg_type:
            raise NetavarkError(f"unexpected netlink message type: {got_type}")
        items.append(item)
    return items


def _link_id_message(link_id: Union[int, str]) -> LinkMessage:
    if isinstance(link_id, str):
        return LinkMessage(name=link_id)
    return LinkMessage(index=int(link_id))


class Socket:
    """A connected rtnetlink socket issuing one request at a time."""

    def __init__(self) -> None:
        try:
            self._sock = socket.socket(_AF_NETLINK, socket.SOCK_RAW, NETLINK_ROUTE)
        except OSError as exc:
            raise NetavarkError(str(exc)).wrap("open") from exc
        try:
            try:
                self._sock.bind((0, 0))
            except OSError as exc:
                raise NetavarkError(str(exc)).wrap("bind") from exc
            try:
                self._sock.connect((0, 0))
            except OSError as exc:
                raise NetavarkError(str(exc)).wrap("connect") from exc
        except NetavarkError:
            self._sock.close()
            raise
        self._seq = 0

    def close(self) -> None:
        self._sock.close()

    def __enter__(self) -> "Socket":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def get_link(self, link_id: Union[int, str]) -> LinkMessage:
        """Return the link with the given index or name."""
        result = self._request(RTM_GETLINK, _link_id_message(link_id).encode(), 0)
        _expect(result, 1, "get_link")
        return _only(result, RTM_NEWLINK)[0]

    def create_link(self, options: CreateLinkOptions) -> None:
        msg = build_link_message(options)
        result = self._request(
            RTM_NEWLINK, msg.encode(), NLM_F_ACK | NLM_F_EXCL | NLM_F_CREATE
        )
        _expect(result, 0, "create_link")

    def set_link_name(self, index: int, name: str) -> None:
        msg = LinkMessage(index=index, name=name)
        result = self._request(RTM_SETLINK, msg.encode(), NLM_F_ACK)
        _expect(result, 0, "set_link_name")

    def del_link(self, link_id: Union[int, str]) -> None:
        result = self._request(RTM_DELLINK, _link_id_message(link_id).encode(), NLM_F_ACK)
        _expect(result, 0, "del_link")

    def set_link_ns(self, index: int, netns_fd: Any) -> None:
        msg = LinkMessage(index=index, netns_fd=_fd(netns_fd))
        result = self._request(RTM_SETLINK, msg.encode(), NLM_F_ACK)
        _expect(result, 0, "set_link_ns")

    def add_addr(self, index: int, addr: Any) -> None:
        addr = ipaddress.ip_interface(addr)
        try:
            result = self._request(
                RTM_NEWADDR,
                encode_address_message(index, addr),
                NLM_F_ACK | NLM_F_EXCL | NLM_F_CREATE,
            )
        except NetlinkError as exc:
            # The kernel answers EACCES when ipv6 is disabled.
            if exc.errno_code == errno.EACCES and addr.version == 6:
                raise exc.wrap(
                    "failed to add ipv6 address, is ipv6 enabled in the kernel?"
                ) from exc
            raise
        _expect(result, 0, "add_addr")

    def del_addr(self, index: int, addr: Any) -> None:
        result = self._request(RTM_DELADDR, encode_address_message(index, addr), NLM_F_ACK)
        _expect(result, 0, "del_addr")

    def add_route(self, route: Route) -> None:
        logger.info("Adding route %s", route)
        result = self._request(
            RTM_NEWROUTE, encode_route_message(route), NLM_F_ACK | NLM_F_CREATE
        )
        _expect(result, 0, "add_route")

    def del_route(self, route: Route) -> None:
        logger.info("Deleting route %s", route)
        result = self._request(RTM_DELROUTE, encode_route_message(route), NLM_F_ACK)
        _expect(result, 0, "del_route")

    def dump_routes(self) -> list[dict[str, Any]]:
        """Return every route of the main table."""
        header = _RTMSG.pack(
            AF_UNSPEC, 0, 0, 0, RT_TABLE_MAIN, RTPROT_UNSPEC, RT_SCOPE_UNIVERSE, RTN_UNICAST, 0
        )
        result = self._request(RTM_GETROUTE, header, NLM_F_DUMP | NLM_F_ACK)
        return _only(result, RTM_NEWROUTE)

    def dump_links(self, attributes: Optional[Mapping[str, Any]] = None) -> list[LinkMessage]:
        """Return every link matching the LinkMessage fields given in ``attributes``."""
        msg = LinkMessage(**dict(attributes or {}))
        result = self._request(RTM_GETLINK, msg.encode(), NLM_F_DUMP | NLM_F_ACK)
        return _only(result, RTM_NEWLINK)

    def dump_addresses(self) -> list[dict[str, Any]]:
        """Return every address of every link."""
        header = _IFADDRMSG.pack(AF_UNSPEC, 0, 0, 0, 0)
        result = self._request(RTM_GETADDR, header, NLM_F_DUMP | NLM_F_ACK)
        return _only(result, RTM_NEWADDR)

    def set_up(self, link_id: Union[int, str]) -> None:
        msg = _link_id_message(link_id)
        msg.flags = IFF_UP
        msg.change_mask = IFF_UP
        result = self._request(
            RTM_SETLINK, msg.encode(), NLM_F_ACK | NLM_F_EXCL | NLM_F_CREATE
        )
        _expect(result, 0, "set_up")

    def set_mac_address(self, link_id: Union[int, str], mac: bytes) -> None:
        msg = _link_id_message(link_id)
        msg.address = bytes(mac)
        result = self._request(RTM_SETLINK, msg.encode(), NLM_F_ACK)
        _expect(result, 0, "set_mac_address")

    def _request(self, msg_type: int, payload: bytes, flags: int) -> list[tuple[int, Any]]:
        self._send(msg_type, payload, flags)
        return self._receive(flags & NLM_F_DUMP == NLM_F_DUMP)

    def _send(self, msg_type: int, payload: bytes, flags: int) -> None:
        self._seq = (self._seq + 1) & 0xFFFFFFFF
        header = _NLMSGHDR.pack(
            _NLMSGHDR.size + len(payload), msg_type, NLM_F_REQUEST | flags, self._seq, 0
        )
        logger.debug("send netlink packet: type=%d seq=%d", msg_type, self._seq)
        try:
            self._sock.send(header + payload)
        except OSError as exc:
            raise NetavarkError(str(exc)).wrap("send to netlink") from exc

    def _receive(self, multi: bool) -> list[tuple[int, Any]]:
        result: list[tuple[int, Any]] = []
        while True:
            try:
                data = self._sock.recv(_RECV_BUFFER_SIZE)
            except OSError as exc:
                raise NetavarkError(str(exc)).wrap("recv from netlink") from exc
            if not data:
                raise NetavarkError("recv from netlink: connection closed")
            offset = 0
            while offset < len(data):
                if len(data) - offset < _NLMSGHDR.size:
                    raise _deserialize_error("truncated netlink header")
                length, msg_type, _flags, seq, _pid = _NLMSGHDR.unpack_from(data, offset)
                if length < _NLMSGHDR.size or offset + length > len(data):
                    raise _deserialize_error(f"invalid message length {length}")
                payload = data[offset + _NLMSGHDR.size : offset + length]
                logger.debug("read netlink packet: type=%d seq=%d", msg_type, seq)
                if seq != self._seq:
                    raise NetavarkError(
                        f"netlink: sequence_number out of sync (got {seq}, want {self._seq})"
                    )
                if msg_type == NLMSG_DONE:
                    return result
                if msg_type == NLMSG_ERROR:
                    code = _read(_I32, payload)
                    if code:
                        raise NetlinkError(-code)
                    return result
                if msg_type == NLMSG_NOOP:
                    raise NetavarkError("unimplemented netlink message type NOOP")
                if msg_type == NLMSG_OVERRUN:
                    raise NetavarkError("unimplemented netlink message type OVERRUN")
                result.append(_decode_inner(msg_type, payload))
                if not multi:
                    return result
                offset += _align(length)