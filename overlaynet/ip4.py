"""IPv4 addresses and networks held as 32-bit unsigned integers."""

from __future__ import annotations

import ipaddress
import sys
from dataclasses import dataclass, field
from typing import Iterable, Union

_MAX32 = 0xFFFFFFFF

AddressLike = Union[ipaddress.IPv4Address, ipaddress.IPv6Address, bytes, bytearray, str]


def natively_little() -> bool:
    """Report whether the host stores integers little-endian."""
    return sys.byteorder == "little"


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


class IP4(int):
    """An IPv4 address as an unsigned 32-bit integer, wrapping on overflow."""

    def __new__(cls, value: int = 0) -> "IP4":
        return super().__new__(cls, int(value) & _MAX32)

    def octets(self) -> tuple[int, int, int, int]:
        v = int(self)
        return (v >> 24) & 0xFF, (v >> 16) & 0xFF, (v >> 8) & 0xFF, v & 0xFF

    def to_ip(self) -> ipaddress.IPv4Address:
        return ipaddress.IPv4Address(int(self))

    def network_order(self) -> int:
        """The address as the host would store it in network byte order."""
        if natively_little():
            return int.from_bytes(int(self).to_bytes(4, "big"), "little")
        return int(self)

    def string_sep(self, sep: str) -> str:
        return sep.join(str(octet) for octet in self.octets())

    def is_private(self) -> bool:
        """Whether the address lies in an RFC 1918 private range."""
        a, b, _, _ = self.octets()
        return a == 10 or (a == 172 and b & 0xF0 == 16) or (a == 192 and b == 168)

    def to_json(self) -> str:
        return f'"{self}"'

    def __str__(self) -> str:
        return str(self.to_ip())

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)

    def __repr__(self) -> str:
        return f"IP4('{self}')"


def from_bytes(ip: bytes | bytearray) -> IP4:
    """Build an address from the first four bytes, most significant first."""
    if len(ip) < 4:
        raise ValueError("need at least four bytes for an IPv4 address")
    return IP4(int.from_bytes(bytes(ip[:4]), "big"))


def from_ip(ip: AddressLike) -> IP4:
    address = _as_address(ip)
    if isinstance(address, ipaddress.IPv6Address):
        mapped = address.ipv4_mapped
        if mapped is None:
            raise ValueError("Address is not an IPv4 address")
        address = mapped
    return IP4(int(address))


def parse_ip4(s: str) -> IP4:
    return from_ip(_parse_address(s))


def ip4_from_json(j: str | bytes) -> IP4:
    return parse_ip4(_strip_quotes(j))


@dataclass
class IP4Net:
    """An IPv4 address with a prefix length; the address may carry host bits."""

    ip: IP4 = field(default_factory=IP4)
    prefix_len: int = 0

    def __post_init__(self) -> None:
        self.ip = IP4(self.ip)

    def __str__(self) -> str:
        return f"{self.ip}/{self.prefix_len}"

    def string_sep(self, octet_sep: str, prefix_sep: str) -> str:
        return f"{self.ip.string_sep(octet_sep)}{prefix_sep}{self.prefix_len}"

    def network(self) -> "IP4Net":
        return IP4Net(IP4(self.ip & self.mask()), self.prefix_len)

    def next(self) -> "IP4Net":
        return IP4Net(IP4(self.ip + (1 << (32 - self.prefix_len))), self.prefix_len)

    def increment_ip(self) -> None:
        self.ip = IP4(self.ip + 1)

    def to_ip_network(self) -> ipaddress.IPv4Interface:
        return ipaddress.IPv4Interface((self.ip.to_ip(), self.prefix_len))

    def overlaps(self, other: "IP4Net") -> bool:
        m = self.mask() if self.prefix_len < other.prefix_len else other.mask()
        return (self.ip & m) == (other.ip & m)

    def mask(self) -> int:
        return (_MAX32 << (32 - self.prefix_len)) & _MAX32

    def contains(self, ip: int) -> bool:
        m = self.mask()
        return (self.ip & m) == (int(ip) & m)

    def contains_cidr(self, other: "IP4Net") -> bool:
        return self.mask() <= other.mask() and self.contains(other.ip)

    def empty(self) -> bool:
        return self.ip == 0 and self.prefix_len == 0

    def to_json(self) -> str:
        return f'"{self}"'


def from_ip_network(
    n: ipaddress.IPv4Network | ipaddress.IPv4Interface | ipaddress.IPv6Network | ipaddress.IPv6Interface,
) -> IP4Net:
    if isinstance(n, (ipaddress.IPv4Interface, ipaddress.IPv6Interface)):
        address = n.ip
    else:
        address = n.network_address
    return IP4Net(from_ip(address), n.prefixlen)


def ip4net_from_json(j: str | bytes) -> IP4Net:
    text = _strip_quotes(j)
    if "/" not in text or "%" in text:
        raise ValueError(f"invalid CIDR address: {text}")
    try:
        network = ipaddress.ip_network(text, strict=False)
    except ValueError:
        raise ValueError(f"invalid CIDR address: {text}") from None
    return from_ip_network(network)


def map_ip4_to_string(nws: Iterable[IP4Net]) -> list[str]:
    return [str(n) for n in nws]