import errno
import ipaddress
import os

import pytest

from podnet import constants
from podnet.driver import DriverInfo
from podnet.errors import NetavarkError, NetlinkError
from podnet.netlink import InfoKind, IpVlanMode, LinkMessage, MacVlanMode
from podnet.types import Network, PerNetworkOptions
from podnet.vlan import Vlan, get_default_route_interface, get_mac_address

IF_NAME = "pnt-test0"
MAC = b"\x02\x42\xac\x11\x00\x02"


@pytest.fixture(autouse=True)
def fake_setns(monkeypatch):
    calls = []
    monkeypatch.setattr(os, "setns", lambda fd, flags: calls.append(fd), raising=False)
    return calls


class FakeSocket:
    def __init__(self, links=None, routes=None, create_errors=None, target=None):
        self.links = list(links or [])
        self.routes = list(routes or [])
        self.create_errors = list(create_errors or [])
        self.target = target if target is not None else self
        self.created = []
        self.added_addrs = []
        self.added_routes = []
        self.deleted_routes = []
        self.deleted_links = []
        self.up = []
        self._next_index = 100

    def _find(self, link_id):
        for link in self.links:
            if (isinstance(link_id, str) and link.name == link_id) or link.index == link_id:
                return link
        return None

    def get_link(self, link_id):
        link = self._find(link_id)
        if link is None:
            raise NetlinkError(errno.ENODEV)
        return link

    def create_link(self, options):
        self.created.append(options)
        if self.create_errors:
            raise self.create_errors.pop(0)
        self.target._next_index += 1
        self.target.links.append(
            LinkMessage(
                index=self.target._next_index,
                name=options.name,
                address=options.mac or MAC,
            )
        )

    def set_link_name(self, index, name):
        self.get_link(index).name = name

    def del_link(self, link_id):
        self.deleted_links.append(link_id)
        self.links.remove(self.get_link(link_id))

    def add_addr(self, index, addr):
        self.added_addrs.append((index, addr))

    def set_up(self, link_id):
        self.up.append(link_id)

    def add_route(self, route):
        self.added_routes.append(route)

    def del_route(self, route):
        self.deleted_routes.append(route)

    def dump_routes(self):
        return self.routes


def make_info(
    driver="macvlan",
    options=None,
    internal=False,
    interface="eth9",
    routes=None,
    ipam=None,
    if_name=IF_NAME,
    static_mac=None,
):
    network = Network.from_dict(
        {
            "dns_enabled": False,
            "driver": driver,
            "id": "abc123",
            "internal": internal,
            "ipv6_enabled": False,
            "name": "testnet",
            "network_interface": interface,
            "options": options,
            "ipam_options": ipam,
            "subnets": [{"subnet": "10.88.0.0/16", "gateway": "10.88.0.1", "lease_range": None}],
            "routes": routes,
            "network_dns_servers": None,
        }
    )
    per_net = PerNetworkOptions.from_dict(
        {
            "aliases": None,
            "interface_name": if_name,
            "static_ips": ["10.88.0.5"],
            "static_mac": static_mac,
        }
    )
    return DriverInfo(
        network=network,
        per_network_opts=per_net,
        container_id="abc",
        container_name="ctr",
        netns_path="/run/netns/test",
        netns_host=3,
        netns_container=4,
    )


def make_sockets(**host_kwargs):
    netns = FakeSocket()
    host = FakeSocket(links=[LinkMessage(index=2, name="eth9")], target=netns, **host_kwargs)
    return host, netns


def test_network_name():
    assert Vlan(make_info()).network_name() == "testnet"


def test_validate_requires_interface_name():
    driver = Vlan(make_info(if_name=""))
    with pytest.raises(NetavarkError) as info:
        driver.validate()
    assert str(info.value) == constants.NO_CONTAINER_INTERFACE_ERROR


def test_setup_requires_validate():
    with pytest.raises(NetavarkError, match=r"must call validate\(\) before setup\(\)"):
        Vlan(make_info()).setup(make_sockets())


def test_validate_rejects_bad_macvlan_mode():
    driver = Vlan(make_info(options={"mode": "bogus"}))
    with pytest.raises(NetavarkError, match='invalid macvlan mode "bogus"'):
        driver.validate()


def test_validate_rejects_bad_bclim():
    driver = Vlan(make_info(options={"bclim": "abc"}))
    with pytest.raises(NetavarkError, match='unable to parse "bclim"'):
        driver.validate()


def test_validate_rejects_unknown_vlan_type():
    driver = Vlan(make_info(driver="vxlan"))
    with pytest.raises(NetavarkError, match="unsupported VLAN type vxlan"):
        driver.validate()


def test_ipvlan_setup(fake_setns):
    driver = Vlan(make_info(driver="ipvlan", options={"mode": "l3"}))
    driver.validate()
    host, netns = make_sockets()
    status, entry = driver.setup((host, netns))

    assert entry is None
    created = host.created[0]
    assert created.kind == InfoKind.IPVLAN
    assert created.link == 2
    assert created.info_data == {"mode": IpVlanMode.L3}
    assert fake_setns == [4, 3]

    iface = status.interfaces[IF_NAME]
    assert iface.mac_address == "02:42:ac:11:00:02"
    assert iface.subnets[0].ipnet == ipaddress.ip_interface("10.88.0.5/16")
    assert netns.added_addrs[0][1] == ipaddress.ip_interface("10.88.0.5/16")

    route = netns.added_routes[0]
    assert route.gw == ipaddress.ip_address("10.88.0.1")
    assert route.dest == ipaddress.ip_interface("0.0.0.0/0")
    assert route.metric == constants.DEFAULT_METRIC


def test_macvlan_options_reach_link():
    driver = Vlan(
        make_info(options={"bclim": "5", "mode": "vepa", "mtu": "1400"}, static_mac="02:00:00:00:00:aa")
    )
    driver.validate()
    host, netns = make_sockets()
    status, _ = driver.setup((host, netns))

    created = host.created[0]
    assert created.mac == bytes.fromhex("0200000000aa")
    assert created.mtu == 1400
    assert created.info_data == {"mode": MacVlanMode.VEPA, "bc_cutoff": 5}
    assert status.interfaces[IF_NAME].mac_address == "02:00:00:00:00:aa"


def test_internal_network_has_no_default_route():
    driver = Vlan(make_info(internal=True))
    driver.validate()
    host, netns = make_sockets()
    driver.setup((host, netns))
    assert netns.added_routes == []


def test_no_default_route_option():
    driver = Vlan(make_info(options={"no_default_route": "true"}))
    driver.validate()
    host, netns = make_sockets()
    driver.setup((host, netns))
    assert netns.added_routes == []


def test_static_routes_are_added():
    routes = [{"gateway": "10.88.0.2", "destination": "10.99.0.0/24", "metric": 7}]
    driver = Vlan(make_info(routes=routes, options={"no_default_route": "true"}))
    driver.validate()
    host, netns = make_sockets()
    driver.setup((host, netns))
    assert [r.metric for r in netns.added_routes] == [7]
    assert netns.added_routes[0].dest == ipaddress.ip_interface("10.99.0.0/24")


def test_name_clash_retries_with_temporary_name():
    driver = Vlan(make_info())
    driver.validate()
    host, netns = make_sockets(create_errors=[NetlinkError(errno.EEXIST)])
    status, _ = driver.setup((host, netns))

    tmp_name = host.created[1].name
    assert tmp_name.startswith("mv-")
    assert len(tmp_name) == len("mv-") + 10
    assert [link.name for link in netns.links] == [IF_NAME]
    assert IF_NAME in status.interfaces


def test_name_clash_gives_up_after_three_attempts():
    driver = Vlan(make_info())
    driver.validate()
    host, netns = make_sockets(create_errors=[NetlinkError(errno.EEXIST)] * 4)
    with pytest.raises(NetavarkError, match="^create macvlan interface: "):
        driver.setup((host, netns))
    assert len(host.created) == 4


def test_other_create_error_is_wrapped():
    driver = Vlan(make_info())
    driver.validate()
    host, netns = make_sockets(create_errors=[NetlinkError(errno.EPERM)])
    with pytest.raises(NetavarkError) as info:
        driver.setup((host, netns))
    assert str(info.value).startswith("create macvlan interface: ")
    assert len(host.created) == 1


def test_empty_host_interface_uses_default_route():
    driver = Vlan(make_info(interface=None))
    driver.validate()
    host, netns = make_sockets()
    host.routes = [{"destination": None, "oif": 2}]
    driver.setup((host, netns))
    assert host.created[0].link == 2


def test_dhcp_setup_fails_without_proxy():
    driver = Vlan(make_info(ipam={"driver": "dhcp"}))
    driver.validate()
    with pytest.raises(NetavarkError, match="unable to obtain lease"):
        driver.setup(make_sockets())


def test_teardown_removes_routes_and_link():
    routes = [{"gateway": "10.88.0.2", "destination": "10.99.0.0/24", "metric": None}]
    driver = Vlan(make_info(routes=routes))
    host, netns = make_sockets()
    netns.links.append(LinkMessage(index=7, name=IF_NAME, address=MAC))
    driver.teardown((host, netns))
    assert netns.deleted_links == [IF_NAME]
    assert netns.links == []
    assert netns.deleted_routes[0].gw == ipaddress.ip_address("10.88.0.2")


def test_get_mac_address():
    assert get_mac_address(LinkMessage(address=bytes.fromhex("0a0b0c0d0e0f"))) == "0a:0b:0c:0d:0e:0f"
    with pytest.raises(NetavarkError, match="failed to get the the container mac address"):
        get_mac_address(LinkMessage(name="x"))


def test_get_default_route_interface_skips_routes_with_destination():
    sock = FakeSocket(
        links=[LinkMessage(index=3, name="wan0"), LinkMessage(index=4, name="lan0")],
        routes=[
            {"destination": ipaddress.ip_address("10.0.0.0"), "oif": 4},
            {"destination": None, "oif": 3},
        ],
    )
    assert get_default_route_interface(sock) == "wan0"


def test_get_default_route_interface_missing():
    sock = FakeSocket(routes=[{"destination": None, "oif": None}])
    with pytest.raises(NetavarkError, match="failed to get default route interface"):
        get_default_route_interface(sock)