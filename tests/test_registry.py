import pytest

from podnet.driver import DriverInfo
from podnet.errors import NetavarkError
from podnet.plugin_driver import PluginDriver
from podnet.registry import get_network_driver
from podnet.types import Network, PerNetworkOptions
from podnet.vlan import Vlan


def make_info(driver):
    network = Network.from_dict(
        {
            "dns_enabled": False,
            "driver": driver,
            "id": "abc123",
            "internal": False,
            "ipv6_enabled": False,
            "name": "testnet",
            "network_interface": None,
            "options": None,
            "ipam_options": None,
            "subnets": None,
            "routes": None,
            "network_dns_servers": None,
        }
    )
    per_net = PerNetworkOptions.from_dict(
        {"aliases": None, "interface_name": "eth0", "static_ips": None, "static_mac": None}
    )
    return DriverInfo(
        network=network, per_network_opts=per_net, container_id="abc", container_name="ctr"
    )


def write_plugin(directory, name, mode):
    path = directory / name
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(mode)
    return path


@pytest.mark.parametrize("driver", ["macvlan", "ipvlan"])
def test_builtin_vlan_drivers(driver):
    result = get_network_driver(make_info(driver), None)
    assert isinstance(result, Vlan)
    assert result.network_name() == "testnet"


def test_executable_plugin_is_found(tmp_path):
    path = write_plugin(tmp_path, "myplug", 0o755)
    result = get_network_driver(make_info("myplug"), [tmp_path])
    assert isinstance(result, PluginDriver)
    assert result.path == path


def test_first_matching_directory_wins(tmp_path):
    first = tmp_path / "a"
    second = tmp_path / "b"
    first.mkdir()
    second.mkdir()
    write_plugin(first, "myplug", 0o644)
    expected = write_plugin(second, "myplug", 0o755)
    result = get_network_driver(make_info("myplug"), [str(first), str(second)])
    assert result.path == expected


def test_non_executable_plugin_is_ignored(tmp_path):
    write_plugin(tmp_path, "myplug", 0o644)
    with pytest.raises(NetavarkError, match='unknown network driver "myplug"'):
        get_network_driver(make_info("myplug"), [tmp_path])


def test_directory_named_like_driver_is_ignored(tmp_path):
    (tmp_path / "myplug").mkdir()
    with pytest.raises(NetavarkError, match='unknown network driver "myplug"'):
        get_network_driver(make_info("myplug"), [tmp_path])


def test_unknown_driver_without_directories():
    with pytest.raises(NetavarkError) as info:
        get_network_driver(make_info("nosuch"), None)
    assert str(info.value) == 'unknown network driver "nosuch"'