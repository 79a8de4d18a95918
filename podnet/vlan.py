"""The macvlan and ipvlan network driver."""

from __future__ import annotations

import contextlib
import errno
import logging
import re
import secrets
import string
from collections.abc import Iterator
from dataclasses import dataclass, replace
from typing import Any, Optional, Union

from podnet import constants
from podnet.core_utils import (
    add_default_routes,
    create_route_list,
    decode_address_from_hex,
    disable_ipv6_autoconf,
    encode_address_to_hex,
    get_ipam_addresses,
    get_ipvlan_mode_from_string,
    get_macvlan_mode_from_string,
    in_netns,
    parse_option,
)
from podnet.driver import DriverInfo, NetworkDriver
from podnet.errors import NetavarkError, NetlinkError
from podnet.internal_types import IPAMAddresses
from podnet.netlink import (
    CreateLinkOptions,
    InfoKind,
    IpVlanMode,
    LinkMessage,
    MacVlanMode,
)
from podnet.types import NetInterface, StatusBlock

logger = logging.getLogger(__name__)

_TMP_NAME_PREFIX = "mv-"
_TMP_NAME_LENGTH = 10
_CREATE_ATTEMPTS = 3
_ALPHANUMERIC = string.ascii_letters + string.digits


def _parse_i32(text: str) -> int:
    if not re.fullmatch(r"[+-]?[0-9]+", text):
        raise ValueError("invalid digit found in string")
    value = int(text)
    if value > 2**31 - 1:
        raise ValueError("number too large to fit in target type")
    if value < -(2**31):
        raise ValueError("number too small to fit in target type")
    return value


@dataclass
class _MacVlanData:
    mode: MacVlanMode
    mac_address: Optional[bytes]
    bclim: Optional[int]

    def __str__(self) -> str:
        return "macvlan"


@dataclass
class _IpVlanData:
    mode: IpVlanMode

    def __str__(self) -> str:
        return "ipvlan"


_KindData = Union[_MacVlanData, _IpVlanData]


@dataclass
class _InternalData:
    container_interface_name: str
    host_interface_name: str
    ipam: IPAMAddresses
    mtu: int
    metric: Optional[int]
    kind: _KindData
    no_default_route: bool


@contextlib.contextmanager
def _context(message: str) -> Iterator[None]:
    try:
        yield
    except NetavarkError as exc:
        raise exc.wrap(message) from exc


def _dhcp_unavailable(action: str) -> NetavarkError:
    return NetavarkError(f"unable to {action} lease: the dhcp proxy is not available")


class Vlan(NetworkDriver):
    """Driver for macvlan and ipvlan networks."""

    def __init__(self, info: DriverInfo) -> None:
        self.info = info
        self._data: Optional[_InternalData] = None

    def network_name(self) -> str:
        return self.info.network.name

    def validate(self) -> None:
        network = self.info.network
        per_net = self.info.per_network_opts
        if not per_net.interface_name:
            raise NetavarkError(constants.NO_CONTAINER_INTERFACE_ERROR)

        mode = parse_option(network.options, constants.OPTION_MODE, str)
        ipam = get_ipam_addresses(per_net, network)
        mtu = parse_option(network.options, constants.OPTION_MTU, int) or 0
        metric = parse_option(network.options, constants.OPTION_METRIC, int)
        if metric is None:
            metric = constants.DEFAULT_METRIC
        no_default_route = bool(
            parse_option(network.options, constants.OPTION_NO_DEFAULT_ROUTE, bool)
        )

        # An internal network gets no gateways.
        if network.internal:
            ipam.gateway_addresses = []

        kind: _KindData
        if network.driver == constants.DRIVER_IPVLAN:
            kind = _IpVlanData(mode=get_ipvlan_mode_from_string(mode))
        elif network.driver == constants.DRIVER_MACVLAN:
            bclim = parse_option(network.options, constants.OPTION_BCLIM, _parse_i32)
            mac_mode = get_macvlan_mode_from_string(mode)
            mac = (
                None
                if per_net.static_mac is None
                else decode_address_from_hex(per_net.static_mac)
            )
            kind = _MacVlanData(mode=mac_mode, mac_address=mac, bclim=bclim)
        else:
            raise NetavarkError(f"unsupported VLAN type {network.driver}")

        self._data = _InternalData(
            container_interface_name=per_net.interface_name,
            host_interface_name=network.network_interface or "",
            ipam=ipam,
            mtu=mtu,
            metric=metric,
            kind=kind,
            no_default_route=no_default_route,
        )

    def setup(self, netlink_sockets: tuple[Any, Any]) -> tuple[StatusBlock, None]:
        data = self._data
        if data is None:
            raise NetavarkError("must call validate() before setup()")

        if_name = self.info.per_network_opts.interface_name
        logger.debug("Setup network %s", self.info.network.name)
        logger.debug(
            "Container interface name: %s with IP addresses %s",
            if_name,
            data.ipam.container_addresses,
        )

        host, netns = netlink_sockets
        mac = self._setup_link(host, netns, if_name, data)

        response = StatusBlock(dns_search_domains=[], dns_server_ips=[], interfaces={})
        if data.ipam.dhcp_enabled:
            raise _dhcp_unavailable("obtain")
        subnets = list(data.ipam.net_addresses)
        response.interfaces = {if_name: NetInterface(mac_address=mac, subnets=subnets)}
        return response, None

    def teardown(self, netlink_sockets: tuple[Any, Any]) -> None:
        netns = netlink_sockets[1]
        if_name = self.info.per_network_opts.interface_name
        ipam = get_ipam_addresses(self.info.per_network_opts, self.info.network)

        if ipam.dhcp_enabled:
            with _context(f"get macvlan interface {if_name}"):
                dev = netns.get_link(if_name)
            get_mac_address(dev)
            raise _dhcp_unavailable("release")

        for route in create_route_list(self.info.network.routes):
            netns.del_route(route)
        netns.del_link(if_name)

    def _setup_link(self, host: Any, netns: Any, if_name: str, data: _InternalData) -> str:
        kind = data.kind
        primary = data.host_interface_name or get_default_route_interface(host)
        link = host.get_link(primary)

        if isinstance(kind, _IpVlanData):
            opts = CreateLinkOptions(
                name=if_name,
                kind=InfoKind.IPVLAN,
                mtu=data.mtu,
                netns=self.info.netns_container,
                link=link.index,
                info_data={"mode": kind.mode},
            )
        else:
            info_data: dict[str, Any] = {"mode": kind.mode}
            if kind.bclim is not None:
                logger.debug("setting macvlan bclim to %d", kind.bclim)
                info_data["bc_cutoff"] = kind.bclim
            opts = CreateLinkOptions(
                name=if_name,
                kind=InfoKind.MACVLAN,
                mac=kind.mac_address or b"",
                mtu=data.mtu,
                netns=self.info.netns_container,
                link=link.index,
                info_data=info_data,
            )

        self._create_link(host, netns, if_name, opts, kind)

        with in_netns(self.info.netns_host, self.info.netns_container):
            disable_ipv6_autoconf(if_name)

        with _context(f"get {kind} interface"):
            dev = netns.get_link(if_name)

        for addr in data.ipam.container_addresses:
            with _context(f"add ip addr to {kind}"):
                netns.add_addr(dev.index, addr)

        with _context(f"set {kind} up"):
            netns.set_up(dev.index)

        if not data.no_default_route:
            add_default_routes(netns, data.ipam.gateway_addresses, data.metric)

        for route in data.ipam.routes:
            netns.add_route(route)

        return get_mac_address(dev)

    @staticmethod
    def _create_link(
        host: Any, netns: Any, if_name: str, opts: CreateLinkOptions, kind: _KindData
    ) -> None:
        try:
            host.create_link(opts)
            return
        except NetavarkError as exc:
            error: NetavarkError = exc

        # The kernel creates the link in the host namespace before moving it,
        # so a name clash on the host fails with EEXIST: create it under a
        # temporary name and rename it inside the namespace.
        for attempt in range(_CREATE_ATTEMPTS):
            if not (isinstance(error, NetlinkError) and error.errno_code == errno.EEXIST):
                raise error.wrap(f"create {kind} interface") from error

            tmp_name = _TMP_NAME_PREFIX + "".join(
                secrets.choice(_ALPHANUMERIC) for _ in range(_TMP_NAME_LENGTH)
            )
            try:
                host.create_link(replace(opts, name=tmp_name))
            except NetavarkError as exc:
                if attempt == _CREATE_ATTEMPTS - 1:
                    raise NetavarkError(f"create {kind} interface: {exc}") from exc
                error = exc
                continue

            with _context(f"get tmp {kind} interface"):
                tmp_link = netns.get_link(tmp_name)
            try:
                with _context(f"rename tmp {kind} interface"):
                    netns.set_link_name(tmp_link.index, if_name)
            except NetavarkError:
                try:
                    netns.del_link(tmp_link.index)
                except NetavarkError as del_exc:
                    logger.error("failed to delete tmp %s link %s: %s", kind, tmp_name, del_exc)
                raise
            return


def get_mac_address(attributes: LinkMessage) -> str:
    """Return the hardware address of a link as colon separated hex."""
    if attributes.address is None:
        raise NetavarkError("failed to get the the container mac address")
    return encode_address_to_hex(attributes.address)


def get_default_route_interface(sock: Any) -> str:
    """Return the name of the interface that carries the default route."""
    with _context("dump routes"):
        routes = sock.dump_routes()

    for route in routes:
        has_dest = route.get("destination") is not None
        out_if = route.get("oif") or 0
        if not has_dest and out_if > 0:
            link = sock.get_link(out_if)
            if link.name is not None:
                return link.name
    raise NetavarkError("failed to get default route interface")