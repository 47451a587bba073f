"""IPv6 addresses and networks held as unbounded integers."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Iterable, Optional, Union

_ALL_ONES_128 = (1 << 128) - 1
_V4_MAPPED_PREFIX = 0xFFFF << 32

AddressLike = Union[ipaddress.IPv4Address, ipaddress.IPv6Address, bytes, bytearray, str]


def _parse_address(s: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
    if "%" in s:
        raise ValueError("Invalid IP address format")
    try:
        return ipaddress.ip_address(s)
    except ValueError:
        raise ValueError("Invalid IP address format") from None


def _as_address(ip: AddressLike) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
    if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return ip
    if isinstance(ip, (bytes, bytearray)):
        if len(ip) == 4:
            return ipaddress.IPv4Address(bytes(ip))
        if len(ip) == 16:
            return ipaddress.IPv6Address(bytes(ip))
        raise ValueError(f"invalid address length: {len(ip)}")
    if isinstance(ip, str):
        return _parse_address(ip)
    raise TypeError(f"cannot interpret {ip!r} as an IP address")


def _strip_quotes(j: str | bytes) -> str:
    if isinstance(j, (bytes, bytearray)):
        j = bytes(j).decode()
    return j.strip('"')


class IP6(int):
    """An IPv6 address as an integer."""

    def to_ip(self) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
        """The address; a value of exactly four significant bytes reads as IPv4."""
        v = int(self)
        if v < 0 or v > _ALL_ONES_128:
            raise ValueError(f"value {v} does not fit in an IPv6 address")
        if (1 << 24) <= v < (1 << 32):
            return ipaddress.IPv4Address(v)
        return ipaddress.IPv6Address(v)

    def is_private(self) -> bool:
        """Whether the address is a unique local address (RFC 4193)."""
        v = int(self)
        if v <= 0:
            raise ValueError("address has no significant bytes")
        first = v.to_bytes((v.bit_length() + 7) // 8, "big")[0]
        return first & 0xFE == 0xFC

    def to_json(self) -> str:
        return f'"{self}"'

    def __str__(self) -> str:
        address = self.to_ip()
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
            return str(address.ipv4_mapped)
        return str(address)

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)

    def __repr__(self) -> str:
        return f"IP6('{self}')"


def from_ip16_bytes(ip: bytes | bytearray) -> IP6:
    return IP6(int.from_bytes(bytes(ip), "big"))


def from_ip6(ip: AddressLike) -> IP6:
    """Build an address; IPv4 addresses become IPv4-mapped IPv6 addresses."""
    address = _as_address(ip)
    if isinstance(address, ipaddress.IPv4Address):
        return IP6(_V4_MAPPED_PREFIX | int(address))
    return IP6(int(address))


def parse_ip6(s: str) -> IP6:
    return from_ip6(_parse_address(s))


def ip6_from_json(j: str | bytes) -> IP6:
    return parse_ip6(_strip_quotes(j))


def mask(prefix_len: int) -> int:
    """The 128-bit netmask for a prefix length, or 0 when it is out of range."""
    if not 0 <= prefix_len <= 128:
        return 0
    return _ALL_ONES_128 ^ ((1 << (128 - prefix_len)) - 1)


def is_empty(subnet: Optional[int]) -> bool:
    return subnet is None or int(subnet) == 0


def get_ipv6_subnet_min(network_ip: int, subnet_size: int) -> IP6:
    return IP6(int(network_ip) + int(subnet_size))


def get_ipv6_subnet_max(network_ip: int, subnet_size: int) -> IP6:
    return IP6(int(network_ip) - int(subnet_size))


def check_ipv6_subnet(subnet_ip: int, mask: int) -> bool:
    return int(subnet_ip) == int(subnet_ip) & int(mask)


@dataclass
class IP6Net:
    """An IPv6 address with a prefix length; the address may carry host bits."""

    ip: Optional[IP6] = None
    prefix_len: int = 0

    def __post_init__(self) -> None:
        if self.ip is not None:
            self.ip = IP6(self.ip)

    @property
    def _value(self) -> int:
        return 0 if self.ip is None else int(self.ip)

    def __str__(self) -> str:
        return f"{IP6(self._value)}/{self.prefix_len}"

    def string_sep(self, hex_sep: str, prefix_sep: str) -> str:
        return f"{IP6(self._value)}{prefix_sep}{self.prefix_len}"

    def network(self) -> "IP6Net":
        return IP6Net(IP6(self._value & self.mask()), self.prefix_len)

    def next(self) -> "IP6Net":
        return IP6Net(IP6(self._value + (1 << (128 - self.prefix_len))), self.prefix_len)

    def increment_ip(self) -> None:
        self.ip = IP6(self._value + 1)

    def to_ip_network(self) -> ipaddress.IPv6Interface:
        return ipaddress.IPv6Interface((ipaddress.IPv6Address(self._value), self.prefix_len))

    def overlaps(self, other: "IP6Net") -> bool:
        m = self.mask() if self.prefix_len < other.prefix_len else other.mask()
        return (self._value & m) == (other._value & m)

    def mask(self) -> int:
        return mask(self.prefix_len)

    def contains(self, ip: int) -> bool:
        m = self.mask()
        return (self._value & m) == (int(ip) & m)

    def contains_cidr(self, other: "IP6Net") -> bool:
        return self.mask() <= other.mask() and self.contains(other._value)

    def empty(self) -> bool:
        return is_empty(self.ip) and self.prefix_len == 0

    def to_json(self) -> str:
        return f'"{self}"'


def from_ip6_network(
    n: ipaddress.IPv4Network | ipaddress.IPv4Interface | ipaddress.IPv6Network | ipaddress.IPv6Interface,
) -> IP6Net:
    if isinstance(n, (ipaddress.IPv4Interface, ipaddress.IPv6Interface)):
        address = n.ip
    else:
        address = n.network_address
    return IP6Net(from_ip6(address), n.prefixlen)


def ip6net_from_json(j: str | bytes) -> IP6Net:
    text = _strip_quotes(j)
    if "/" not in text or "%" in text:
        raise ValueError(f"invalid CIDR address: {text}")
    try:
        network = ipaddress.ip_network(text, strict=False)
    except ValueError:
        raise ValueError(f"invalid CIDR address: {text}") from None
    return from_ip6_network(network)


def map_ip6_to_string(nws: Iterable[IP6Net]) -> list[str]:
    return [str(n) for n in nws]