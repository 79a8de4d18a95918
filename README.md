# podnet

`podnet` is a library for configuring container networking on Linux. It
reads a JSON description of the networks a container should join, talks to
the kernel over rtnetlink to create and address interfaces inside the
container's network namespace, and returns a status block describing what
was set up.

Only the standard library is required. Operations that touch the kernel need
a Linux host and root privileges (or `CAP_NET_ADMIN`).

## What is in the package

- `podnet.types` – `Network`, `NetworkOptions`, `PerNetworkOptions`,
  `PortMapping`, `Subnet`, `Route`, `LeaseRange`, `NetAddress`,
  `NetInterface`, `StatusBlock` and `NetworkPluginExec`, each with
  `from_dict` / `to_dict` for the JSON wire format. `NetworkOptions.load`
  reads a file, or stdin when given `None`.
- `podnet.validation.ns_checks` – checks that a namespace path can be opened.
- `podnet.netlink` – `Socket`, an rtnetlink client that creates, renames,
  moves and deletes links, adds and removes addresses and routes, sets links
  up, sets MAC addresses, and dumps links, addresses and routes. Also
  `LinkMessage`, `CreateLinkOptions`, `Route`, `InfoKind`, `MacVlanMode`,
  `IpVlanMode` and the encoders `build_link_message`,
  `encode_route_message` and `encode_address_message`.
- `podnet.core_utils` – option parsing (`parse_option`), host-local IPAM
  (`get_ipam_addresses`), MAC address conversion
  (`encode_address_to_hex`, `decode_address_from_hex`), mode lookups,
  `create_network_hash`, `apply_sysctl_value`, namespace switching
  (`join_netns`, the `in_netns` context manager, `open_netlink_sockets`),
  `add_default_routes`, `create_route_list`, `disable_ipv6_autoconf` and
  `get_netavark_dns_port` (reads `NETAVARK_DNS_PORT`, default 53).
- `podnet.internal_types` – `IsolateOption`, `SetupNetwork`,
  `PortForwardConfig`, their teardown counterparts and `IPAMAddresses`.
- `podnet.driver` – `DriverInfo` and the abstract `NetworkDriver`.
- `podnet.vlan.Vlan` – the macvlan and ipvlan driver.
- `podnet.plugin_driver.PluginDriver` – runs an external plugin executable.
- `podnet.registry.get_network_driver` – picks the driver for a network.
- `podnet.plugin` – `Plugin`, `Info` and `PluginExec` for writing plugin
  executables.
- `podnet.errors` – `NetavarkError` (with `wrap` and `to_json`) and
  `NetlinkError`, which carries the kernel's errno in `errno_code`.

## Loading network options

```python
from podnet.types import NetworkOptions
from podnet.validation import ns_checks

opts = NetworkOptions.load("setup.json")   # pass None to read from stdin
print(opts.container_name)
for name, network in opts.network_info.items():
    print(name, network.driver, network.subnets)

ns_checks("/run/netns/mycontainer")        # raises NetavarkError if it cannot be opened
```

Failures raise `NetavarkError`; `to_json()` renders it as
`{"error": "..."}`.

## Talking to netlink

```python
import ipaddress
from podnet.netlink import CreateLinkOptions, InfoKind, Socket

with Socket() as sock:
    sock.create_link(CreateLinkOptions("test1", InfoKind.DUMMY))
    link = sock.get_link("test1")
    sock.add_addr(link.index, ipaddress.ip_interface("10.0.0.2/24"))
    sock.set_up(link.index)
```

Links are addressed by index (`int`) or by name (`str`).

## Choosing and running a driver

```python
from podnet.core_utils import open_netlink_sockets
from podnet.driver import DriverInfo
from podnet.registry import get_network_driver

host, container = open_netlink_sockets("/run/netns/mycontainer")
info = DriverInfo(
    network=opts.network_info["mynet"],
    per_network_opts=opts.networks["mynet"],
    container_id=opts.container_id,
    container_name=opts.container_name,
    netns_path="/run/netns/mycontainer",
    netns_host=host.file,
    netns_container=container.file,
)
driver = get_network_driver(info, ["/usr/local/lib/podnet-plugins"])
driver.validate()
status, _ = driver.setup((host.netlink, container.netlink))
print(status.to_dict())
```

`get_network_driver` returns `Vlan` for the `macvlan` and `ipvlan` drivers.
Any other driver name is looked up as a regular, executable file of that
name in the plugin directories, in order; the first match is run through
`PluginDriver`. If none matches, `NetavarkError` is raised.

`Vlan` reads the network options `mode`, `mtu`, `metric` (default 100),
`no_default_route` and, for macvlan, `bclim`. When the name of the new
interface is already taken on the host, it retries up to three times under a
temporary `mv-` name and renames the link inside the namespace.

`PluginDriver` runs `<plugin> setup <netns_path>` or
`<plugin> teardown <netns_path>` with a `NetworkPluginExec` as JSON on
stdin. On exit status 0, `setup` parses a `StatusBlock` from stdout; on any
other status the `error` field of the JSON on stdout becomes the message.

## Writing a plugin

A plugin receives a subcommand (`create`, `setup`, `teardown` or `info`) on
its command line and JSON on stdin, and writes JSON to stdout. With no
subcommand it prints its info.

```python
import sys
from podnet.plugin import API_VERSION, Info, Plugin, PluginExec
from podnet.types import StatusBlock


class MyPlugin(Plugin):
    def create(self, network):
        return network

    def setup(self, netns, opts):
        return StatusBlock(dns_search_domains=None, dns_server_ips=None, interfaces={})

    def teardown(self, netns, opts):
        pass


if __name__ == "__main__":
    PluginExec(MyPlugin(), Info(version="0.1.0", api_version=API_VERSION)).exec(sys.argv)
```

On any failure `PluginExec.exec` writes `{"error": "..."}` to stdout and
exits with status 1.

## What the package does not do

- There is no command-line program; the package is used as a library.
- There is no bridge driver. A network with driver `bridge` is treated like
  any other unknown name and is only handled if a plugin of that name exists.
- No firewall or port-forwarding rules are applied. `SetupNetwork` and
  `PortForwardConfig` describe such configuration but nothing acts on them.
- DHCP is not supported: with the `dhcp` IPAM driver, `Vlan.setup` and
  `Vlan.teardown` raise `NetavarkError` because no DHCP proxy is available.
- No DNS server is configured for containers.

## Running the tests

Install the `test` extra and run `pytest` from the project directory. Tests
that need a live netlink socket are not part of the suite.