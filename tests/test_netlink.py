import errno
import ipaddress
import socket
import struct

import pytest

from podnet import netlink
from podnet.errors import NetavarkError, NetlinkError

HDR = struct.Struct("=IHHII")


def nlmsg(msg_type, seq, payload=b"", flags=0):
    return HDR.pack(HDR.size + len(payload), msg_type, flags, seq, 0) + payload


def ack(seq, code=0):
    return nlmsg(netlink.NLMSG_ERROR, seq, struct.pack("=i", code) + b"\0" * 16)


def done(seq):
    return nlmsg(netlink.NLMSG_DONE, seq, struct.pack("=i", 0))


def attr(kind, payload):
    length = 4 + len(payload)
    return struct.pack("=HH", length, kind) + payload + b"\0" * ((-length) % 4)


def route_payload(oif, dest=None):
    header = struct.pack("=BBBBBBBBI", 2, 24 if dest else 0, 0, 0, 254, 4, 0, 1, 0)
    body = attr(netlink.RTA_OIF, struct.pack("=I", oif))
    if dest:
        body += attr(netlink.RTA_DST, ipaddress.ip_address(dest).packed)
    return header + body


class FakeKernel:
    def __init__(self):
        self.sent = []
        self.pending = []
        self.handler = lambda msg_type, flags, seq, payload: [ack(seq)]
        self.closed = False

    def bind(self, addr):
        self.bound = addr

    def connect(self, addr):
        self.connected = addr

    def send(self, data, flags=0):
        self.sent.append(data)
        length, msg_type, msg_flags, seq, _pid = HDR.unpack_from(data)
        self.pending.extend(self.handler(msg_type, msg_flags, seq, data[HDR.size:length]))
        return len(data)

    def recv(self, size):
        return self.pending.pop(0)

    def close(self):
        self.closed = True


@pytest.fixture
def kernel(monkeypatch):
    fake = FakeKernel()
    monkeypatch.setattr(socket, "socket", lambda *args: fake)
    return fake


def test_route_str_default_metric():
    route = netlink.Route("10.0.1.0/24", "10.0.0.2")
    assert str(route) == "(dest: 10.0.1.0/24 ,gw: 10.0.0.2, metric 100)"


def test_route_str_explicit_metric_ipv6():
    route = netlink.Route("::/0", "fd00::1", 50)
    assert str(route) == "(dest: ::/0 ,gw: fd00::1, metric 50)"


def test_route_rejects_mixed_families():
    with pytest.raises(ValueError):
        netlink.Route("10.0.1.0/24", "fd00::1")


def test_link_message_name_wire_bytes():
    encoded = netlink.LinkMessage(name="lo").encode()
    assert encoded[16:] == struct.pack("=HH", 7, netlink.IFLA_IFNAME) + b"lo\x00\x00"


def test_link_message_header_wire_bytes():
    encoded = netlink.LinkMessage(index=1).encode()
    assert encoded == b"\x00\x00\x00\x00" + struct.pack("=i", 1) + b"\x00" * 8


def test_link_message_round_trip():
    msg = netlink.LinkMessage(
        index=3,
        name="test1",
        mtu=1500,
        address=b"\x02\x00\x00\x00\x00\x01",
        controller=7,
        link=9,
        netns_fd=4,
        kind=netlink.InfoKind.BRIDGE,
        extra={99: b"\x01\x02\x03\x04"},
    )
    assert netlink.LinkMessage.decode(msg.encode()) == msg


def test_veth_peer_round_trip():
    peer = netlink.build_link_message(
        netlink.CreateLinkOptions("eth0", netlink.InfoKind.VETH, mtu=1400, netns=5)
    )
    options = netlink.CreateLinkOptions(
        "", netlink.InfoKind.VETH, info_data=peer, primary_index=2
    )
    decoded = netlink.LinkMessage.decode(netlink.build_link_message(options).encode())
    assert decoded.kind == netlink.InfoKind.VETH
    assert decoded.controller == 2
    assert decoded.info_data == peer
    assert decoded.info_data.netns_fd == 5


def test_macvlan_and_ipvlan_info_round_trip():
    mac = netlink.LinkMessage(
        kind=netlink.InfoKind.MACVLAN,
        info_data={"mode": netlink.MacVlanMode.PASSTHROUGH, "bc_cutoff": -1},
    )
    assert netlink.LinkMessage.decode(mac.encode()).info_data == mac.info_data
    ipv = netlink.LinkMessage(kind=netlink.InfoKind.IPVLAN, info_data={"mode": netlink.IpVlanMode.L3S})
    assert netlink.LinkMessage.decode(ipv.encode()).info_data == {"mode": netlink.IpVlanMode.L3S}


def test_build_link_message_skips_unset_options():
    msg = netlink.build_link_message(netlink.CreateLinkOptions("", netlink.InfoKind.DUMMY))
    assert msg.kind == netlink.InfoKind.DUMMY
    assert (msg.name, msg.mtu, msg.address, msg.controller, msg.link, msg.netns_fd) == (
        None, None, None, None, None, None,
    )


def test_decode_too_short_raises():
    with pytest.raises(NetavarkError):
        netlink.LinkMessage.decode(b"\x00\x01")


def test_encode_route_message():
    data = netlink.encode_route_message(netlink.Route("10.0.1.0/24", "10.0.0.2"))
    family, dst_len, _s, _t, table, protocol, scope, kind, _f = struct.unpack_from("=BBBBBBBBI", data)
    assert (family, dst_len, table, protocol, scope, kind) == (
        netlink.AF_INET, 24, netlink.RT_TABLE_MAIN, netlink.RTPROT_STATIC,
        netlink.RT_SCOPE_UNIVERSE, netlink.RTN_UNICAST,
    )
    assert data[12:] == (
        attr(netlink.RTA_DST, ipaddress.ip_address("10.0.1.0").packed)
        + attr(netlink.RTA_GATEWAY, ipaddress.ip_address("10.0.0.2").packed)
        + attr(netlink.RTA_PRIORITY, struct.pack("=I", 100))
    )


def test_encode_address_message_v4_and_v6():
    data = netlink.encode_address_message(4, "10.0.0.2/24")
    assert struct.unpack_from("=BBBBI", data) == (netlink.AF_INET, 24, 0, 0, 4)
    assert data[8:] == attr(
        netlink.IFA_BROADCAST, ipaddress.ip_address("10.0.0.255").packed
    ) + attr(netlink.IFA_LOCAL, ipaddress.ip_address("10.0.0.2").packed)
    data6 = netlink.encode_address_message(4, "fd00::2/64")
    assert data6[8:] == attr(netlink.IFA_LOCAL, ipaddress.ip_address("fd00::2").packed)


def test_get_link_by_name(kernel):
    reply = netlink.LinkMessage(index=5, name="test1", address=b"\x02\x00\x00\x00\x00\x07")
    kernel.handler = lambda t, f, seq, p: [nlmsg(netlink.RTM_NEWLINK, seq, reply.encode())]
    with netlink.Socket() as sock:
        link = sock.get_link("test1")
    assert link == reply
    length, msg_type, flags, _seq, _pid = HDR.unpack_from(kernel.sent[0])
    assert msg_type == netlink.RTM_GETLINK
    assert flags == netlink.NLM_F_REQUEST
    assert netlink.LinkMessage.decode(kernel.sent[0][HDR.size:length]).name == "test1"
    assert kernel.closed


def test_create_link_ack_and_error(kernel):
    sock = netlink.Socket()
    sock.create_link(netlink.CreateLinkOptions("test1", netlink.InfoKind.DUMMY))
    _len, msg_type, flags, _seq, _pid = HDR.unpack_from(kernel.sent[0])
    assert msg_type == netlink.RTM_NEWLINK
    assert flags == (netlink.NLM_F_REQUEST | netlink.NLM_F_ACK | netlink.NLM_F_EXCL | netlink.NLM_F_CREATE)
    kernel.handler = lambda t, f, seq, p: [ack(seq, -errno.EEXIST)]
    with pytest.raises(NetlinkError) as info:
        sock.create_link(netlink.CreateLinkOptions("test1", netlink.InfoKind.DUMMY))
    assert info.value.errno_code == errno.EEXIST


def test_sequence_numbers_increase(kernel):
    kernel.handler = lambda t, f, seq, p: [
        nlmsg(netlink.RTM_NEWLINK, seq, netlink.LinkMessage(index=seq, name="eth1").encode())
    ]
    sock = netlink.Socket()
    first = sock.get_link(1)
    second = sock.get_link("eth1")
    assert [first.index, second.index] == [1, 2]
    seqs = [HDR.unpack_from(packet)[3] for packet in kernel.sent]
    assert seqs == [1, 2]


def test_sequence_mismatch_raises(kernel):
    kernel.handler = lambda t, f, seq, p: [ack(seq + 1)]
    sock = netlink.Socket()
    with pytest.raises(NetavarkError, match="sequence_number out of sync"):
        sock.del_link("test1")


def test_get_link_without_result(kernel):
    kernel.handler = lambda t, f, seq, p: [done(seq)]
    sock = netlink.Socket()
    with pytest.raises(NetavarkError) as info:
        sock.get_link(3)
    assert str(info.value) == "get_link: unexpected netlink result (got 0 result(s), want 1)"


def test_dump_links_across_chunks(kernel):
    def handler(t, f, seq, payload):
        first = nlmsg(netlink.RTM_NEWLINK, seq, netlink.LinkMessage(index=1, name="lo").encode())
        second = nlmsg(netlink.RTM_NEWLINK, seq, netlink.LinkMessage(index=2, name="eth0").encode())
        third = nlmsg(netlink.RTM_NEWLINK, seq, netlink.LinkMessage(index=3, name="eth1").encode())
        return [first + second, third + done(seq)]

    kernel.handler = handler
    links = netlink.Socket().dump_links({"controller": 4})
    assert [link.name for link in links] == ["lo", "eth0", "eth1"]
    length, _t, flags, _s, _p = HDR.unpack_from(kernel.sent[0])
    assert flags & netlink.NLM_F_DUMP == netlink.NLM_F_DUMP
    assert netlink.LinkMessage.decode(kernel.sent[0][HDR.size:length]).controller == 4


def test_dump_routes_decodes_attributes(kernel):
    kernel.handler = lambda t, f, seq, p: [
        nlmsg(netlink.RTM_NEWROUTE, seq, route_payload(2))
        + nlmsg(netlink.RTM_NEWROUTE, seq, route_payload(3, "10.0.1.0"))
        + done(seq)
    ]
    routes = netlink.Socket().dump_routes()
    assert [(r["destination"], r["oif"]) for r in routes] == [
        (None, 2),
        (ipaddress.ip_address("10.0.1.0"), 3),
    ]


def test_dump_rejects_unexpected_message_type(kernel):
    kernel.handler = lambda t, f, seq, p: [
        nlmsg(netlink.RTM_NEWROUTE, seq, route_payload(2)) + done(seq)
    ]
    with pytest.raises(NetavarkError, match="unexpected netlink message type"):
        netlink.Socket().dump_links()


def test_add_addr_eacces(kernel):
    kernel.handler = lambda t, f, seq, p: [ack(seq, -errno.EACCES)]
    sock = netlink.Socket()
    with pytest.raises(NetavarkError, match="is ipv6 enabled in the kernel"):
        sock.add_addr(2, "fd00::2/64")
    with pytest.raises(NetlinkError) as info:
        sock.add_addr(2, "10.0.0.2/24")
    assert info.value.errno_code == errno.EACCES


def test_noop_message_is_an_error(kernel):
    kernel.handler = lambda t, f, seq, p: [nlmsg(netlink.NLMSG_NOOP, seq)]
    with pytest.raises(NetavarkError, match="NOOP"):
        netlink.Socket().add_route(netlink.Route("10.0.1.0/24", "10.0.0.2"))