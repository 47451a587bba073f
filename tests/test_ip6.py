import ipaddress

import pytest

from overlaynet.ip6 import (
    IP6,
    IP6Net,
    check_ipv6_subnet,
    from_ip16_bytes,
    from_ip6,
    from_ip6_network,
    get_ipv6_subnet_max,
    get_ipv6_subnet_min,
    ip6_from_json,
    ip6net_from_json,
    is_empty,
    map_ip6_to_string,
    mask,
    parse_ip6,
)


def mk_net(s, plen):
    return IP6Net(parse_ip6(s), plen)


def test_from_ip6_string():
    ip = from_ip6(ipaddress.ip_address("fc00::1"))
    assert str(ip) == "fc00::1"


def test_unspecified_is_empty():
    ip = from_ip6(ipaddress.ip_address("::"))
    assert str(ip) == "::"
    assert is_empty(ip)
    assert is_empty(None)


def test_parse_and_json():
    ip = parse_ip6("fc00::1")
    assert str(ip) == "fc00::1"
    assert str(ip.to_ip()) == "fc00::1"
    assert ip.to_json() == '"fc00::1"'
    assert ip6_from_json(ip.to_json()) == ip


@pytest.mark.parametrize(
    "address,private",
    [
        ("fc00::1", True),
        ("fcff::1", True),
        ("fd00::1", True),
        ("fdff::1", True),
        ("2001::", False),
        ("fe00::", False),
    ],
)
def test_is_private(address, private):
    assert parse_ip6(address).is_private() is private


def test_is_private_of_zero_raises():
    with pytest.raises(ValueError):
        IP6(0).is_private()


def test_ip6net():
    assert IP6Net().empty()
    assert mk_net("::", 0).empty()
    assert not mk_net("::", 64).empty()
    n1 = mk_net("fc00:1::", 64)
    assert not n1.empty()
    assert str(n1.to_ip_network()) == "fc00:1::/64"
    assert n1.overlaps(n1)
    assert n1.overlaps(mk_net("fc00::", 16))
    assert not n1.overlaps(mk_net("fc00:2::", 64))
    assert not n1.overlaps(mk_net("fb00:2::", 48))
    assert n1.contains(parse_ip6("fc00:1::"))
    assert n1.contains(parse_ip6("fc00:1::1"))
    assert not n1.contains(parse_ip6("fc00:2::"))
    assert n1.to_json() == '"fc00:1::/64"'
    n1.increment_ip()
    assert str(n1) == "fc00:1::1/64"


def test_parse_invalid():
    with pytest.raises(ValueError):
        parse_ip6("zz::1::2")


def test_ipv4_becomes_mapped():
    ip = parse_ip6("1.2.3.4")
    assert int(ip) == int(ipaddress.IPv6Address("::ffff:1.2.3.4"))
    assert str(ip) == "1.2.3.4"


def test_four_byte_value_reads_as_ipv4():
    assert IP6(0x01020304).to_ip() == ipaddress.IPv4Address("1.2.3.4")


def test_out_of_range_to_ip_raises():
    with pytest.raises(ValueError):
        IP6(1 << 128).to_ip()


def test_from_ip16_bytes():
    raw = ipaddress.IPv6Address("2001:db8::5").packed
    assert str(from_ip16_bytes(raw)) == "2001:db8::5"


def test_mask_function():
    assert mask(64) == ((1 << 64) - 1) << 64
    assert mask(0) == 0
    assert mask(128) == (1 << 128) - 1
    assert mask(200) == 0


def test_subnet_helpers():
    assert get_ipv6_subnet_min(IP6(0x100), 0x10) == 0x110
    assert get_ipv6_subnet_max(IP6(0x100), 0x10) == 0xF0
    assert check_ipv6_subnet(parse_ip6("fc00:1::"), mask(64))
    assert not check_ipv6_subnet(parse_ip6("fc00:1::1"), mask(64))


def test_network_and_next():
    assert mk_net("fc00:1::5", 64).network() == mk_net("fc00:1::", 64)
    assert mk_net("fc00:1::", 64).next() == mk_net("fc00:1:0:1::", 64)


def test_contains_cidr():
    big = mk_net("fc00::", 16)
    small = mk_net("fc00:1::", 64)
    assert big.contains_cidr(small)
    assert not small.contains_cidr(big)


def test_string_sep_ignores_hex_sep():
    assert mk_net("fc00::", 16).string_sep("-", "_") == "fc00::_16"


def test_json_round_trip_and_errors():
    assert ip6net_from_json('"fc00:1::/64"') == mk_net("fc00:1::", 64)
    assert str(ip6net_from_json(b'"fc00:1::7/64"')) == "fc00:1::/64"
    with pytest.raises(ValueError):
        ip6net_from_json('"fc00:1::"')
    with pytest.raises(ValueError):
        ip6net_from_json('"nope/64"')


def test_from_ip6_network_and_map():
    n = from_ip6_network(ipaddress.ip_network("fd00::/8"))
    i = from_ip6_network(ipaddress.ip_interface("fd00::9/8"))
    assert map_ip6_to_string([n, i]) == ["fd00::/8", "fd00::9/8"]