import ipaddress
import json
import re
import socket
import subprocess
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from overlaynet.ipmatch import (
    IPStack,
    PublicIPOpts,
    get_ip_family,
    lookup_ext_iface,
    match_ip,
)


def _entry(family, address):
    return SimpleNamespace(family=family, address=address)


V4 = socket.AF_INET
V6 = socket.AF_INET6

ADDRS = {
    "lo": [_entry(V4, "127.0.0.1"), _entry(V6, "::1")],
    "eth0": [
        _entry(V4, "10.0.0.5"),
        _entry(V6, "2001:db8::5"),
        _entry(V6, "fe80::1%eth0"),
    ],
    "dummy0": [
        _entry(V4, "1.10.100.1"),
        _entry(V4, "192.168.200.128"),
        _entry(V4, "172.16.30.18"),
        _entry(V4, "172.16.31.200"),
        _entry(V4, "172.16.32.100"),
        _entry(V6, "2001:db8::10"),
    ],
    "nomtu0": [_entry(V4, "10.9.9.9")],
}

STATS = {
    "lo": SimpleNamespace(mtu=65536),
    "eth0": SimpleNamespace(mtu=1500),
    "dummy0": SimpleNamespace(mtu=1450),
    "nomtu0": SimpleNamespace(mtu=0),
}

INDEX = [(1, "lo"), (2, "eth0"), (3, "dummy0"), (4, "nomtu0")]


def _ip_command(routes_v4, routes_v6, route_get):
    def run(cmd, *args, **kwargs):
        if "get" in cmd:
            out = route_get
        elif "-6" in cmd:
            out = routes_v6
        else:
            out = routes_v4
        return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps(out), stderr="")

    return run


@pytest.fixture
def host():
    with patch("socket.if_nameindex", return_value=INDEX, create=True), patch(
        "psutil.net_if_addrs", return_value=ADDRS
    ), patch("psutil.net_if_stats", return_value=STATS):
        yield


def test_get_ip_family_values():
    assert get_ip_family(True, False) == IPStack.IPV4
    assert get_ip_family(False, True) == IPStack.IPV6
    assert get_ip_family(True, True) == IPStack.DUAL


def test_get_ip_family_none_raises():
    with pytest.raises(ValueError, match="none defined stack"):
        get_ip_family(False, False)


def test_match_ip_returns_first_match():
    addrs = [ipaddress.ip_address("10.0.0.1"), ipaddress.ip_address("10.0.0.2")]
    assert match_ip(re.compile(r"10\.0\.0\.\d"), addrs) == addrs[0]
    assert match_ip(re.compile(r"\.2$"), addrs) == addrs[1]
    assert match_ip(re.compile(r"192"), addrs) is None


def test_by_if_regex_for_ipv4(host):
    ext = lookup_ext_iface("", r"192\.168\.200\.\d+", "", IPStack.IPV4, PublicIPOpts())
    assert ext.iface.name == "dummy0"
    assert str(ext.iface_addr) == "192.168.200.128"
    assert str(ext.ext_addr) == "192.168.200.128"


def test_by_if_regex_for_name(host):
    ext = lookup_ext_iface("", r"dummy\d+", "", IPStack.IPV4, PublicIPOpts())
    assert ext.iface.name == "dummy0"
    assert str(ext.iface_addr) == "1.10.100.1"


def test_by_name(host):
    ext = lookup_ext_iface("dummy0", "", "", IPStack.IPV4, PublicIPOpts())
    assert ext.iface.name == "dummy0"
    assert str(ext.iface_addr) == "1.10.100.1"
    assert ext.ext_v6_addr is None


def test_by_ipv4(host):
    ext = lookup_ext_iface("172.16.30.18", "", "", IPStack.IPV4, PublicIPOpts())
    assert ext.iface.name == "dummy0"
    assert str(ext.iface_addr) == "172.16.30.18"


def test_by_if_regex_match_public_ipv4(host):
    ext = lookup_ext_iface(
        "", r"172\.16\.30\.\d+", "", IPStack.IPV4, PublicIPOpts(public_ip="172.16.31.200")
    )
    assert ext.iface.name == "dummy0"
    assert str(ext.iface_addr) == "172.16.30.18"
    assert str(ext.ext_addr) == "172.16.31.200"


def test_by_if_can_reach(host):
    route = [{"dst": "172.16.32.254", "gateway": "172.16.32.100", "dev": "dummy0", "prefsrc": "172.16.32.100"}]
    with patch("subprocess.run", side_effect=_ip_command([], [], route)):
        ext = lookup_ext_iface("", "", "172.16.32.254", IPStack.IPV4, PublicIPOpts())
    assert ext.iface.name == "dummy0"
    assert str(ext.iface_addr) == "172.16.32.100"


def test_default_route_ipv4(host):
    routes = [{"dst": "default", "gateway": "10.0.0.1", "dev": "eth0"}]
    with patch("subprocess.run", side_effect=_ip_command(routes, [], [])):
        ext = lookup_ext_iface("", "", "", IPStack.IPV4, PublicIPOpts())
    assert ext.iface.name == "eth0"
    assert str(ext.iface_addr) == "10.0.0.5"
    assert ext.iface.mtu == 1500


def test_default_route_dual_mismatch(host):
    v4 = [{"dst": "default", "dev": "eth0"}]
    v6 = [{"dst": "default", "dev": "dummy0"}]
    with patch("subprocess.run", side_effect=_ip_command(v4, v6, [])):
        with pytest.raises(ValueError, match="must be the same"):
            lookup_ext_iface("", "", "", IPStack.DUAL, PublicIPOpts())


def test_default_route_dual(host):
    v4 = [{"dst": "default", "dev": "eth0"}]
    v6 = [{"dst": "default", "dev": "eth0"}]
    with patch("subprocess.run", side_effect=_ip_command(v4, v6, [])):
        ext = lookup_ext_iface("", "", "", IPStack.DUAL, PublicIPOpts())
    assert ext.iface.name == "eth0"
    assert str(ext.iface_addr) == "10.0.0.5"
    assert str(ext.iface_v6_addr) == "2001:db8::5"
    assert str(ext.ext_v6_addr) == "2001:db8::5"


def test_ipv6_by_name(host):
    ext = lookup_ext_iface("dummy0", "", "", IPStack.IPV6, PublicIPOpts())
    assert str(ext.iface_v6_addr) == "2001:db8::10"
    assert str(ext.ext_v6_addr) == "2001:db8::10"
    assert ext.ext_addr is None


def test_dual_regex(host):
    ext = lookup_ext_iface("", r"^(10\.0\.0\.5|2001:db8::5)$", "", IPStack.DUAL, PublicIPOpts())
    assert ext.iface.name == "eth0"
    assert str(ext.iface_addr) == "10.0.0.5"
    assert str(ext.iface_v6_addr) == "2001:db8::5"


def test_dual_by_ip_with_other_v6_interface(host):
    with pytest.raises(ValueError, match="must be the same"):
        lookup_ext_iface(
            "10.0.0.5", "", "", IPStack.DUAL, PublicIPOpts(public_ipv6="2001:db8::10")
        )


def test_regex_without_match_lists_interfaces(host):
    with pytest.raises(LookupError, match="Could not match pattern nothing") as info:
        lookup_ext_iface("", "nothing", "", IPStack.IPV4, PublicIPOpts())
    assert "eth0:[10.0.0.5]" in str(info.value)
    assert "lo:[]" in str(info.value)


def test_bad_regex_raises():
    with pytest.raises(ValueError, match="could not compile"):
        lookup_ext_iface("", "(", "", IPStack.IPV4, PublicIPOpts())


def test_none_stack_raises():
    with pytest.raises(ValueError, match="none matched ip stack"):
        lookup_ext_iface("eth0", "", "", IPStack.NONE, PublicIPOpts())


def test_unknown_interface_name(host):
    with pytest.raises(LookupError, match="error looking up interface missing0"):
        lookup_ext_iface("missing0", "", "", IPStack.IPV4, PublicIPOpts())


def test_zero_mtu_raises(host):
    with pytest.raises(ValueError, match="failed to determine MTU"):
        lookup_ext_iface("nomtu0", "", "", IPStack.IPV4, PublicIPOpts())


def test_invalid_public_ip(host):
    with pytest.raises(ValueError, match="invalid public IP address: bogus"):
        lookup_ext_iface("eth0", "", "", IPStack.IPV4, PublicIPOpts(public_ip="bogus"))


def test_missing_ipv6_address(host):
    with pytest.raises(LookupError, match="failed to find IPv6 address for interface nomtu0"):
        lookup_ext_iface("nomtu0", "", "", IPStack.IPV6, PublicIPOpts())